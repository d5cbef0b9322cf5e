from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

import yaml


@dataclass(slots=True)
class PathsConfig:
    db: Path
    log: Path


@dataclass(slots=True)
class PollConfig:
    interval_seconds: float = 5.0
    error_backoff_seconds: float = 30.0


@dataclass(slots=True)
class WorkerPoolConfig:
    count: int = 1
    name_prefix: str = "worker"

    def names(self) -> list[str]:
        return [f"{self.name_prefix}-{index}" for index in range(1, self.count + 1)]


@dataclass(slots=True)
class BuildConfig:
    command_template: str = "make test"
    timeout_seconds: int = 3600
    max_output_chars: int = 65536
    workdir: Path | None = None


@dataclass(slots=True)
class NotificationConfig:
    channel_capacity: int = 100


@dataclass(slots=True)
class AppConfig:
    paths: PathsConfig
    poll: PollConfig = field(default_factory=PollConfig)
    workers: WorkerPoolConfig = field(default_factory=WorkerPoolConfig)
    build: BuildConfig = field(default_factory=BuildConfig)
    notifications: NotificationConfig = field(default_factory=NotificationConfig)


def _require(mapping: dict, key: str, section: str) -> object:
    if key not in mapping:
        raise ValueError(f"Missing `{section}.{key}` in config")
    return mapping[key]


def _section(raw: dict, key: str) -> dict:
    value = raw.get(key, {})
    if not isinstance(value, dict):
        raise ValueError(f"`{key}` must be a mapping")
    return value


def load_config(path: str | Path) -> AppConfig:
    config_path = Path(path).expanduser().resolve()
    raw = yaml.safe_load(config_path.read_text(encoding="utf-8")) or {}
    if not isinstance(raw, dict):
        raise ValueError("Config root must be a mapping")

    paths_raw = _require(raw, "paths", "root")
    if not isinstance(paths_raw, dict):
        raise ValueError("`paths` must be a mapping")
    poll_raw = _section(raw, "poll")
    workers_raw = _section(raw, "workers")
    build_raw = _section(raw, "build")
    notifications_raw = _section(raw, "notifications")

    def resolve(value: object) -> Path:
        output = Path(str(value)).expanduser()
        if not output.is_absolute():
            output = config_path.parent / output
        return output

    paths = PathsConfig(
        db=resolve(_require(paths_raw, "db", "paths")),
        log=resolve(_require(paths_raw, "log", "paths")),
    )

    poll = PollConfig(
        interval_seconds=float(poll_raw.get("interval_seconds", 5.0)),
        error_backoff_seconds=float(poll_raw.get("error_backoff_seconds", 30.0)),
    )
    if poll.interval_seconds <= 0:
        raise ValueError("`poll.interval_seconds` must be > 0")
    if poll.error_backoff_seconds < 0:
        raise ValueError("`poll.error_backoff_seconds` must be >= 0")

    workers = WorkerPoolConfig(
        count=int(workers_raw.get("count", 1)),
        name_prefix=str(workers_raw.get("name_prefix", "worker")),
    )
    if workers.count < 1:
        raise ValueError("`workers.count` must be >= 1")

    workdir_raw = build_raw.get("workdir")
    build = BuildConfig(
        command_template=str(build_raw.get("command_template", "make test")),
        timeout_seconds=int(build_raw.get("timeout_seconds", 3600)),
        max_output_chars=int(build_raw.get("max_output_chars", 65536)),
        workdir=resolve(workdir_raw) if workdir_raw else None,
    )
    if build.timeout_seconds < 1:
        raise ValueError("`build.timeout_seconds` must be >= 1")

    notifications = NotificationConfig(
        channel_capacity=int(notifications_raw.get("channel_capacity", 100)),
    )
    if notifications.channel_capacity < 1:
        raise ValueError("`notifications.channel_capacity` must be >= 1")

    return AppConfig(
        paths=paths,
        poll=poll,
        workers=workers,
        build=build,
        notifications=notifications,
    )


def ensure_local_paths(config: AppConfig) -> None:
    config.paths.db.parent.mkdir(parents=True, exist_ok=True)
    config.paths.log.parent.mkdir(parents=True, exist_ok=True)
    if config.build.workdir is not None:
        config.build.workdir.mkdir(parents=True, exist_ok=True)
