from __future__ import annotations

import io
import json
import logging
import threading
import unittest

from gradr.models import BuildRequest, EntryStatus
from gradr.notifications import (
    ChannelNotificationSource,
    PushNotification,
    StreamNotificationSource,
    feed_channel,
    run_producer,
)
from gradr.queue import MemoryQueue


def push_payload(branch: str, commit: str = "a1b2c3d4" * 5) -> dict[str, object]:
    return {
        "ref": f"refs/heads/{branch}",
        "after": commit,
        "repository": {"clone_url": "https://github.com/acme/widgets.git"},
        "pusher": {"name": "octocat"},
    }


def quiet_logger() -> logging.Logger:
    logger = logging.getLogger("test_gradr")
    logger.handlers.clear()
    logger.addHandler(logging.NullHandler())
    logger.propagate = False
    return logger


class PushNotificationTest(unittest.TestCase):
    def test_from_github_payload(self) -> None:
        notification = PushNotification.from_github_payload(push_payload("feature/login", "abc123"))
        self.assertEqual(notification.branch, "feature/login")
        self.assertEqual(notification.commit, "abc123")
        self.assertEqual(notification.pusher, "octocat")
        self.assertEqual(
            notification.to_request(),
            BuildRequest("https://github.com/acme/widgets.git", "feature/login", "abc123"),
        )

    def test_branch_deletion_rejected(self) -> None:
        payload = push_payload("gone")
        payload["deleted"] = True
        with self.assertRaises(ValueError):
            PushNotification.from_github_payload(payload)
        with self.assertRaises(ValueError):
            PushNotification.from_github_payload(push_payload("gone", "0" * 40))

    def test_non_branch_refs_rejected(self) -> None:
        for ref in ("refs/tags/v1.0.0", "refs/heads/", "main"):
            payload = push_payload("main")
            payload["ref"] = ref
            with self.subTest(ref=ref):
                with self.assertRaises(ValueError):
                    PushNotification.from_github_payload(payload)

    def test_missing_fields_rejected(self) -> None:
        with self.assertRaises(ValueError):
            PushNotification.from_github_payload({"ref": "refs/heads/main"})
        with self.assertRaises(ValueError):
            PushNotification.from_github_payload({"repository": {"clone_url": "x"}})


class ChannelNotificationSourceTest(unittest.TestCase):
    def test_two_events_then_stop(self) -> None:
        queue = MemoryQueue()
        source = ChannelNotificationSource(capacity=4)
        source.receive_payload(push_payload("main"))
        source.receive_payload(push_payload("feat"))
        source.send_finish()
        logger = quiet_logger()

        self.assertTrue(source.notification_event_loop_step(queue, logger))
        self.assertTrue(source.notification_event_loop_step(queue, logger))
        self.assertFalse(source.notification_event_loop_step(queue, logger))

        first = queue.get_entry(1)
        second = queue.get_entry(2)
        assert first is not None and second is not None
        self.assertEqual(first.status, EntryStatus.PENDING)
        self.assertEqual(first.request.branch, "main")
        self.assertEqual(second.request.branch, "feat")
        self.assertIsNone(queue.get_entry(3))

    def test_producer_blocks_until_transport_delivers(self) -> None:
        queue = MemoryQueue()
        source = ChannelNotificationSource(capacity=1)
        enqueued: list[int] = []
        producer = threading.Thread(target=lambda: enqueued.append(run_producer(source, queue, quiet_logger())))
        producer.start()

        for branch in ("a", "b", "c"):
            source.receive_push_notification(PushNotification("https://example.com/r.git", branch))
        self.assertTrue(producer.is_alive())
        source.send_finish()
        producer.join(5)

        self.assertFalse(producer.is_alive())
        self.assertEqual(enqueued, [3])
        claimed = queue.get_pending()
        assert claimed is not None
        self.assertEqual(claimed.request.branch, "a")


class StreamNotificationSourceTest(unittest.TestCase):
    def test_reads_until_end_of_stream(self) -> None:
        lines = [
            json.dumps(push_payload("main")),
            "",
            "not json",
            json.dumps({"ref": "refs/heads/orphan"}),
            json.dumps(["not", "an", "object"]),
            json.dumps({**push_payload("gone"), "deleted": True}),
            json.dumps({**push_payload("main"), "ref": "refs/tags/v2"}),
            json.dumps(push_payload("feat")),
        ]
        source = StreamNotificationSource(io.StringIO("\n".join(lines) + "\n"), quiet_logger())
        queue = MemoryQueue()

        self.assertEqual(run_producer(source, queue, quiet_logger()), 2)
        self.assertIsNone(source.get_notification())
        branches = []
        while (entry := queue.get_pending()) is not None:
            branches.append(entry.request.branch)
        self.assertEqual(branches, ["main", "feat"])

    def test_feed_channel_closes_source_at_end_of_stream(self) -> None:
        lines = [json.dumps(push_payload("main")), "garbage", json.dumps(push_payload("feat"))]
        source = ChannelNotificationSource(capacity=1)
        queue = MemoryQueue()
        feeder = threading.Thread(
            target=feed_channel,
            args=(io.StringIO("\n".join(lines)), source, quiet_logger()),
        )
        feeder.start()

        self.assertEqual(run_producer(source, queue, quiet_logger()), 2)
        feeder.join(5)
        self.assertFalse(feeder.is_alive())


if __name__ == "__main__":
    unittest.main()
