from pathlib import Path
from tempfile import TemporaryDirectory
import unittest

from gradr.config import load_config


class ConfigTest(unittest.TestCase):
    def test_load_config(self) -> None:
        with TemporaryDirectory() as temp_dir:
            root = Path(temp_dir)
            config_path = root / "gradr.yaml"
            config_path.write_text(
                """
paths:
  db: "./state/gradr.db"
  log: "./state/gradr.log"
workers:
  count: 3
  name_prefix: builder
build:
  command_template: "make -C {workdir} check"
  workdir: "./scratch"
""".strip(),
                encoding="utf-8",
            )
            config = load_config(config_path)
            self.assertEqual(config.poll.interval_seconds, 5.0)
            self.assertEqual(config.workers.names(), ["builder-1", "builder-2", "builder-3"])
            self.assertEqual(config.build.command_template, "make -C {workdir} check")
            self.assertEqual(config.build.timeout_seconds, 3600)
            self.assertEqual(config.notifications.channel_capacity, 100)
            self.assertEqual(config.paths.db.resolve(), (root / "state" / "gradr.db").resolve())
            assert config.build.workdir is not None
            self.assertEqual(config.build.workdir.resolve(), (root / "scratch").resolve())

    def test_rejects_invalid_values(self) -> None:
        with TemporaryDirectory() as temp_dir:
            config_path = Path(temp_dir) / "gradr.yaml"
            cases = {
                "paths:\n  log: gradr.log\n": "paths.db",
                "paths:\n  db: gradr.db\n  log: gradr.log\nworkers:\n  count: 0\n": "workers.count",
                "paths:\n  db: gradr.db\n  log: gradr.log\npoll:\n  interval_seconds: 0\n": "poll.interval_seconds",
                "paths:\n  db: gradr.db\n  log: gradr.log\nbuild: []\n": "build",
                "- just\n- a list\n": "root",
            }
            for text, key in cases.items():
                config_path.write_text(text, encoding="utf-8")
                with self.subTest(key=key):
                    with self.assertRaises(ValueError):
                        load_config(config_path)


if __name__ == "__main__":
    unittest.main()
