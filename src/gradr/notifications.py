from __future__ import annotations

import json
import logging
import queue as channel
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Generic, TextIO, TypeVar

from .app_logging import get_logger, log_with_fields
from .models import BuildRequest
from .queue import BuildQueue

EventT = TypeVar("EventT")

BRANCH_REF_PREFIX = "refs/heads/"
NULL_COMMIT = "0" * 40


@dataclass(frozen=True, slots=True)
class PushNotification:
    clone_url: str
    branch: str
    commit: str | None = None
    pusher: str | None = None

    @classmethod
    def from_github_payload(cls, payload: dict[str, Any]) -> PushNotification:
        repository = payload.get("repository")
        if not isinstance(repository, dict) or not repository.get("clone_url"):
            raise ValueError("push payload has no `repository.clone_url`")
        ref = payload.get("ref")
        if not isinstance(ref, str) or not ref:
            raise ValueError("push payload has no `ref`")
        if not ref.startswith(BRANCH_REF_PREFIX) or ref == BRANCH_REF_PREFIX:
            raise ValueError(f"push to `{ref}` is not a branch push")
        if payload.get("deleted") or payload.get("after") == NULL_COMMIT:
            raise ValueError(f"push deleted `{ref}`")
        branch = ref[len(BRANCH_REF_PREFIX):]
        pusher = payload.get("pusher")
        return cls(
            clone_url=str(repository["clone_url"]),
            branch=branch,
            commit=str(payload["after"]) if payload.get("after") else None,
            pusher=str(pusher.get("name")) if isinstance(pusher, dict) and pusher.get("name") else None,
        )

    def to_request(self) -> BuildRequest:
        return BuildRequest(clone_url=self.clone_url, branch=self.branch, commit=self.commit)


class NotificationSource(ABC, Generic[EventT]):
    """Pull-style source of externally originated events.

    `get_notification` returning None means the source is finished for good;
    sources with nothing to deliver yet must block instead.
    """

    @abstractmethod
    def get_notification(self) -> EventT | None:
        raise NotImplementedError

    @abstractmethod
    def to_request(self, event: EventT) -> BuildRequest:
        raise NotImplementedError

    def notification_event_loop_step(
        self,
        queue: BuildQueue,
        logger: logging.Logger | None = None,
    ) -> bool:
        """Move one event into the queue. Returns False once the source is exhausted."""
        event = self.get_notification()
        if event is None:
            return False
        request = self.to_request(event)
        entry = queue.add_pending(request)
        log_with_fields(
            get_logger(logger),
            logging.INFO,
            "entry_enqueued",
            entry_id=entry.entry_id,
            clone_url=request.clone_url,
            branch=request.branch,
            commit=request.commit,
        )
        return True


def run_producer(
    source: NotificationSource[Any],
    queue: BuildQueue,
    logger: logging.Logger | None = None,
) -> int:
    logger = get_logger(logger)
    enqueued = 0
    while source.notification_event_loop_step(queue, logger):
        enqueued += 1
    log_with_fields(
        logger,
        logging.INFO,
        "source_exhausted",
        source=type(source).__name__,
        enqueued=enqueued,
    )
    return enqueued


class ChannelNotificationSource(NotificationSource[PushNotification]):
    """Bridges a push-style transport callback to a blocking pull.

    The transport calls `receive_push_notification` from its own thread;
    `send_finish` closes the source, after which `get_notification` returns
    None once everything queued before it has been delivered.
    """

    def __init__(self, capacity: int = 100) -> None:
        self._channel: channel.Queue[PushNotification | None] = channel.Queue(maxsize=capacity)

    def receive_push_notification(self, notification: PushNotification) -> None:
        self._channel.put(notification)

    def receive_payload(self, payload: dict[str, Any]) -> PushNotification:
        notification = PushNotification.from_github_payload(payload)
        self.receive_push_notification(notification)
        return notification

    def send_finish(self) -> None:
        self._channel.put(None)

    def get_notification(self) -> PushNotification | None:
        return self._channel.get()

    def to_request(self, event: PushNotification) -> BuildRequest:
        return event.to_request()


class StreamNotificationSource(NotificationSource[PushNotification]):
    """Reads one JSON push payload per line until end of stream."""

    def __init__(self, stream: TextIO, logger: logging.Logger | None = None) -> None:
        self.stream = stream
        self.logger = get_logger(logger)
        self.line_number = 0

    def get_notification(self) -> PushNotification | None:
        for line in self.stream:
            self.line_number += 1
            if not line.strip():
                continue
            try:
                payload = json.loads(line)
                if not isinstance(payload, dict):
                    raise ValueError("payload must be a JSON object")
                return PushNotification.from_github_payload(payload)
            except ValueError as exc:
                log_with_fields(
                    self.logger,
                    logging.WARNING,
                    "notification_rejected",
                    line=self.line_number,
                    error=str(exc),
                )
        return None

    def to_request(self, event: PushNotification) -> BuildRequest:
        return event.to_request()


def feed_channel(
    stream: TextIO,
    source: ChannelNotificationSource,
    logger: logging.Logger | None = None,
) -> int:
    """Play the transport side of a channel from JSON lines, then close it."""
    reader = StreamNotificationSource(stream, logger)
    delivered = 0
    try:
        while (notification := reader.get_notification()) is not None:
            source.receive_push_notification(notification)
            delivered += 1
    finally:
        source.send_finish()
    return delivered
