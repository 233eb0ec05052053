import asyncio
import tempfile
import time
import unittest
from types import SimpleNamespace

from fastapi.testclient import TestClient

from chathub.config import Config
from chathub.hub import Hub
from chathub.models.gateway import InvocationResult
from chathub.server import _install_loop_handler, app

from fakes import MODELS_CONFIG, FakeGateway, make_registry


class TestServer(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        config = Config({
            "data_dir": self.tmp.name,
            "models": MODELS_CONFIG,
            "availability": {"probe_on_startup": False, "probe_delay_seconds": 0},
            "opinions": {"concurrency": 2, "retention_seconds": 600},
        })
        registry = make_registry()
        registry.refresh(["xai"])
        self.gateway = FakeGateway(registry)
        self.hub = Hub.build(config, gateway=self.gateway)
        app.state.hub = self.hub
        self.client = TestClient(app)
        self.client.__enter__()

    def tearDown(self):
        self.client.__exit__(None, None, None)
        app.state.hub = None
        self.tmp.cleanup()

    def _wait_for_session(self, session_id: str, timeout: float = 5.0) -> dict:
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            snapshot = self.client.get(f"/api/models/opinions/{session_id}").json()
            if snapshot.get("complete"):
                return snapshot
            time.sleep(0.02)
        self.fail(f"session {session_id} did not complete")

    def test_health(self):
        response = self.client.get("/health")
        self.assertEqual(response.json(), {"status": "healthy", "service": "chathub"})

    def test_status_lists_working_models(self):
        data = self.client.get("/api/status").json()
        self.assertIn("xai/grok-3", data["working_apis"])
        self.assertEqual(data["available_models"]["external"], ["xai/grok-3"])
        self.assertEqual(data["mediator"], "auto")
        self.assertIn("openai", data["providers"])

    def test_models_list_groups_by_provider(self):
        data = self.client.get("/api/models-list").json()
        self.assertEqual(data["external"]["xai"]["working"], ["xai/grok-3"])
        self.assertIn("openai/gpt-4o", data["external"]["openai"]["failed"])
        self.assertIn("gpt-5", data["builtin"])
        self.assertEqual(data["working_providers"], ["xai"])

    def test_opinions_requires_topic(self):
        response = self.client.post("/api/models/opinions", json={"issueId": 1})
        self.assertEqual(response.status_code, 400)
        self.assertFalse(response.json()["success"])

    def test_opinions_rejects_bad_issue_id(self):
        response = self.client.post("/api/models/opinions", json={"topic": "x", "issueId": "abc"})
        self.assertEqual(response.status_code, 400)

    def test_opinion_session_lifecycle(self):
        response = self.client.post("/api/models/opinions", json={
            "topic": "cache", "issueId": 1, "targetModels": ["grok-3", "gpt-5", "grok-3"],
        })
        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body["models"], ["xai/grok-3", "gpt-5"])
        self.assertEqual(body["total_models"], 2)
        snapshot = self._wait_for_session(body["session_id"])
        self.assertEqual(snapshot["progress"]["percentage"], 100)
        self.assertEqual(sorted(snapshot["completed_models"]), ["gpt-5", "xai/grok-3"])
        issues = self.client.get("/api/issues").json()
        self.assertEqual(len(issues["issues"][0]["comments"]), 2)

    def test_opinions_default_to_working_models(self):
        body = self.client.post("/api/models/opinions", json={"topic": "cache"}).json()
        self.assertEqual(body["models"], ["gpt-5", "sonnet-4", "xai/grok-3"])
        self._wait_for_session(body["session_id"])

    def test_mediator_request_is_shortlisted(self):
        self.gateway.replies["auto"] = '{"models": ["grok-3"]}'
        body = self.client.post("/api/models/opinions", json={"topic": "cache", "requestedBy": "auto"}).json()
        self.assertEqual(body["models"], ["xai/grok-3"])
        self._wait_for_session(body["session_id"])

    def test_unknown_session_is_404(self):
        response = self.client.get("/api/models/opinions/session_0_missing")
        self.assertEqual(response.status_code, 404)

    def test_option_route(self):
        self.assertEqual(self.client.post("/api/models/option", json={"topic": "x"}).status_code, 400)
        body = self.client.post("/api/models/option", json={"topic": "x", "modelId": "grok-3"}).json()
        self.assertEqual(body["model_id"], "xai/grok-3")
        self.assertTrue(body["session_id"].startswith("option_"))
        self._wait_for_session(body["session_id"])

    def test_model_route_status_codes(self):
        self.assertEqual(self.client.post("/api/model", json={"prompt": "oi"}).status_code, 400)
        self.assertEqual(self.client.post("/api/model", json={"model_id": "nope", "prompt": "oi"}).status_code, 404)

        ok = self.client.post("/api/model", json={"model_id": "grok-3", "prompt": "Opine"})
        self.assertEqual(ok.status_code, 200)
        self.assertTrue(ok.json()["response"].startswith("Como xai/grok-3"))

        self.gateway.replies["gpt-5"] = "Como claude-3-opus-latest, eu diria que a proposta está correta."
        rejected = self.client.post("/api/model", json={"model_id": "gpt-5", "prompt": "Opine"})
        self.assertEqual(rejected.status_code, 422)
        self.assertFalse(rejected.json()["validation"]["valid"])

        self.gateway.replies["sonnet-4"] = InvocationResult(model_id="sonnet-4", text="", outcome="error",
                                                           error="exit 1")
        failed = self.client.post("/api/model", json={"model_id": "sonnet-4", "prompt": "Opine"})
        self.assertEqual(failed.status_code, 502)

    def test_create_issue(self):
        self.assertEqual(self.client.post("/api/create-issue", json={"title": "Sem corpo"}).status_code, 400)
        response = self.client.post("/api/create-issue", json={
            "title": "Cache", "body": "Detalhes", "labels": ["perf"], "priority": "high",
        })
        self.assertEqual(response.status_code, 201)
        self.assertEqual(response.json()["issue_id"], 1)
        issue = self.client.get("/api/issues").json()["issues"][0]
        self.assertEqual(issue["labels"], ["perf"])
        self.assertEqual(issue["priority"], "high")

    def test_create_issue_on_corrupt_store(self):
        self.hub.store.path.write_text("{broken")
        response = self.client.post("/api/create-issue", json={"title": "T", "body": "B"})
        self.assertEqual(response.status_code, 500)

    def test_comment_route(self):
        self.assertEqual(self.client.post("/api/comment", json={}).status_code, 400)
        body = self.client.post("/api/comment", json={"text": "Registre isto", "model": "grok-3"}).json()
        self.assertTrue(body["success"])
        self.assertEqual(body["comment"]["author"], "xai/grok-3")

    def test_costs_route(self):
        data = self.client.get("/api/costs").json()
        self.assertEqual(data["models_tracked"], 0)

    def test_retest_refreshes_snapshot(self):
        data = self.client.post("/api/retest").json()
        self.assertTrue(data["success"])
        self.assertEqual(data["working_providers"], [])
        self.assertFalse(data["from_cache"])

    def test_websocket_feed(self):
        with self.client.websocket_connect("/ws") as websocket:
            first = websocket.receive_json()
            self.assertEqual(first["type"], "issues_update")
            websocket.send_text("not json")
            websocket.send_json({"type": "user_comment", "text": "Olá, tudo bem?"})
            seen = []
            for _ in range(10):
                message = websocket.receive_json()
                seen.append(message["type"])
                if message["type"] == "simple_response":
                    self.assertEqual(message["author"], "auto")
                    break
            self.assertIn("typing", seen)
            self.assertEqual(seen[-1], "simple_response")


class FakeHub:
    def __init__(self):
        self.shutdowns = 0

    async def shutdown(self):
        self.shutdowns += 1


class TestLoopHandler(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.loop = asyncio.get_running_loop()
        self.previous_server = getattr(app.state, "server", None)
        self.server = SimpleNamespace(should_exit=False)
        app.state.server = self.server
        self.hub = FakeHub()
        _install_loop_handler(self.hub)

    async def asyncTearDown(self):
        self.loop.set_exception_handler(None)
        app.state.server = self.previous_server

    async def _settle(self):
        for _ in range(20):
            await asyncio.sleep(0)

    async def test_uncaught_exception_stops_hub_and_server(self):
        with self.assertLogs("chathub.server", "CRITICAL"):
            self.loop.call_exception_handler({"message": "boom", "exception": RuntimeError("boom")})
        await self._settle()
        self.assertEqual(self.hub.shutdowns, 1)
        self.assertTrue(self.server.should_exit)

    async def test_report_without_exception_goes_to_default_handler(self):
        with self.assertLogs("asyncio", "ERROR") as logs:
            self.loop.call_exception_handler({"message": "slow callback"})
        await self._settle()
        self.assertIn("slow callback", logs.output[0])
        self.assertEqual(self.hub.shutdowns, 0)
        self.assertFalse(self.server.should_exit)


if __name__ == "__main__":
    unittest.main()
