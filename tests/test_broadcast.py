import asyncio
import tempfile
import time
import unittest
from pathlib import Path

from chathub.broadcast import Broadcaster, normalize_chat_envelope
from chathub.store import IssueStore, StoreError


class FakeSocket:
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.sent = []
        self.accepted = False
        self.closed_with = None

    async def accept(self):
        self.accepted = True

    async def send_json(self, message):
        if self.fail:
            raise RuntimeError("socket gone")
        self.sent.append(message)

    async def close(self, code=1000):
        self.closed_with = code


class StalledSocket(FakeSocket):
    """A client that stopped reading: sends never complete."""

    async def send_json(self, message):
        await asyncio.sleep(10)


class FlakyStore:
    """Feed reads fail a fixed number of times before succeeding."""

    def __init__(self, failures: int):
        self.failures = failures
        self.reads = 0
        self.path = Path("flaky.json")

    async def feed(self):
        self.reads += 1
        if self.reads <= self.failures:
            raise StoreError("partial write")
        return {"comments": [], "master_comment": None}


class TestEnvelope(unittest.TestCase):
    def test_text_aliases_collapse_to_text(self):
        envelope = normalize_chat_envelope({"message": "oi", "author": "auto"})
        self.assertEqual(envelope["text"], "oi")
        self.assertEqual(envelope["type"], "chat_message")
        self.assertFalse(envelope["is_system_message"])
        self.assertNotIn("message", envelope)
        self.assertIn("timestamp", envelope)

    def test_unknown_type_falls_back_and_author_defaults(self):
        envelope = normalize_chat_envelope({"type": "weird", "body": "x"})
        self.assertEqual(envelope["type"], "chat_message")
        self.assertEqual(envelope["author"], "Sistema")

    def test_system_types_are_flagged(self):
        envelope = normalize_chat_envelope({"type": "error", "text": "falhou"})
        self.assertTrue(envelope["is_system_message"])


class TestBroadcaster(unittest.IsolatedAsyncioTestCase):
    async def test_dead_connections_are_dropped(self):
        broadcaster = Broadcaster()
        alive, dead = FakeSocket(), FakeSocket(fail=True)
        await broadcaster.connect(alive)
        await broadcaster.connect(dead)
        delivered = await broadcaster.broadcast_opinion("s1", "model_completed", model_id="m1")
        self.assertEqual(delivered, 1)
        self.assertEqual(broadcaster.connections, {alive})
        message = alive.sent[0]
        self.assertEqual(message["type"], "opinion_update")
        self.assertEqual(message["event"], "model_completed")
        self.assertEqual(message["session_id"], "s1")
        self.assertEqual(message["model_id"], "m1")

    async def test_stalled_client_is_dropped_without_holding_others(self):
        broadcaster = Broadcaster(send_timeout=0.05)
        alive, stalled = FakeSocket(), StalledSocket()
        await broadcaster.connect(stalled)
        await broadcaster.connect(alive)
        started = time.monotonic()
        delivered = await broadcaster.broadcast_chat(text="olá")
        self.assertLess(time.monotonic() - started, 1.0)
        self.assertEqual(delivered, 1)
        self.assertEqual(broadcaster.connections, {alive})
        self.assertEqual(alive.sent[0]["text"], "olá")

    async def test_broadcast_without_clients_is_a_noop(self):
        broadcaster = Broadcaster()
        self.assertEqual(await broadcaster.broadcast_chat(text="ninguém"), 0)

    async def test_issue_feed_retries_transient_failures(self):
        broadcaster = Broadcaster(read_attempts=3, read_backoff=0)
        socket = FakeSocket()
        await broadcaster.connect(socket)
        store = FlakyStore(failures=2)
        self.assertEqual(await broadcaster.broadcast_issues(store), 1)
        self.assertEqual(store.reads, 3)
        self.assertEqual(socket.sent[0]["type"], "issues_update")

    async def test_issue_feed_gives_up_after_attempts(self):
        broadcaster = Broadcaster(read_attempts=2, read_backoff=0)
        socket = FakeSocket()
        await broadcaster.connect(socket)
        with self.assertLogs("chathub.broadcast", level="CRITICAL"):
            self.assertEqual(await broadcaster.broadcast_issues(FlakyStore(failures=5)), 0)
        self.assertEqual(socket.sent, [])

    async def test_issue_feed_skipped_without_clients(self):
        store = FlakyStore(failures=0)
        self.assertEqual(await Broadcaster().broadcast_issues(store), 0)
        self.assertEqual(store.reads, 0)

    async def test_send_issues_reads_real_store(self):
        with tempfile.TemporaryDirectory() as tmp:
            store = IssueStore(Path(tmp) / "issues.json")
            await store.create_issue("Tema", "corpo")
            await store.append_comment(1, "m1", "primeira")
            socket = FakeSocket()
            await Broadcaster().send_issues(socket, store)
            self.assertEqual(socket.sent[0]["comments"][0]["issue_title"], "Tema")

    async def test_close_all(self):
        broadcaster = Broadcaster()
        sockets = [FakeSocket(), FakeSocket()]
        for socket in sockets:
            await broadcaster.connect(socket)
        await broadcaster.close_all()
        self.assertEqual(broadcaster.connections, set())
        self.assertTrue(all(s.closed_with == 1000 for s in sockets))


if __name__ == "__main__":
    unittest.main()
