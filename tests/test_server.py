"""Tests for server.ApiHandler against a real ThreadingHTTPServer on an ephemeral port."""

import asyncio
import json
import threading
from http.server import ThreadingHTTPServer
from unittest.mock import MagicMock, patch

import pytest
import requests

import server
from agents.errors import GenerationError
from pipeline import GenerationOrchestrator
from sandbox.diagnostics import DiagnosticsChannel

from conftest import SAMPLE_HTML

USER = {"id": "u1", "api_key": "sk-user"}


@pytest.fixture
def api(store, refiner, builder):
    orch = GenerationOrchestrator(store, refiner, builder, api_key="sk-server",
                                  default_model="x-ai/grok-4.1-fast:free")
    httpd = ThreadingHTTPServer(("127.0.0.1", 0), server.ApiHandler)
    thread = threading.Thread(target=httpd.serve_forever, daemon=True)
    with patch.object(server, "orchestrator", orch), patch.object(server, "channels", {}):
        thread.start()
        yield f"http://127.0.0.1:{httpd.server_address[1]}", orch
        httpd.shutdown()
    httpd.server_close()
    orch.close()


def _ready_post(base, orch):
    resp = requests.post(f"{base}/posts", json={"prompt": "a tap counter", "user": USER})
    assert resp.status_code == 202
    post_id = resp.json()["post"]["id"]
    assert orch.wait(post_id, timeout=5)
    return post_id


class TestPostsApi:
    def test_create_and_poll(self, api):
        base, orch = api
        resp = requests.post(f"{base}/posts", json={"prompt": "a tap counter", "user": USER})
        assert resp.status_code == 202
        assert resp.json()["status"] == "pending"

        post_id = resp.json()["post"]["id"]
        orch.wait(post_id, timeout=5)
        body = requests.get(f"{base}/posts/{post_id}").json()["post"]
        assert body["status"] == "ready"
        assert body["html_content"] == SAMPLE_HTML
        assert body["edit_count"] == 0

    def test_create_requires_prompt(self, api):
        base, _ = api
        assert requests.post(f"{base}/posts", json={"user": USER}).status_code == 400

    def test_create_requires_user(self, api):
        base, _ = api
        assert requests.post(f"{base}/posts", json={"prompt": "x"}).status_code == 401

    def test_invalid_json(self, api):
        base, _ = api
        resp = requests.post(f"{base}/posts", data="{nope",
                             headers={"Content-Type": "application/json"})
        assert resp.status_code == 400

    def test_unknown_post(self, api):
        base, _ = api
        assert requests.get(f"{base}/posts/{'0' * 32}").status_code == 404

    def test_list(self, api):
        base, orch = api
        _ready_post(base, orch)
        assert len(requests.get(f"{base}/posts").json()["posts"]) == 1

    def test_failed_post_reports_reason(self, api, builder):
        base, orch = api
        builder.generate.side_effect = GenerationError(
            "Generation failed: Request timeout after 300s", "timeout")
        post_id = _ready_post(base, orch)
        body = requests.get(f"{base}/posts/{post_id}").json()["post"]
        assert body["status"] == "failed"
        assert body["failure"]["kind"] == "timeout"

    def test_retry_ready_conflicts(self, api):
        base, orch = api
        post_id = _ready_post(base, orch)
        assert requests.post(f"{base}/posts/{post_id}/retry", json={"user": USER}).status_code == 409


class TestReviseApi:
    def test_edit(self, api, builder):
        base, orch = api
        post_id = _ready_post(base, orch)
        builder.generate.return_value = "<html>blue</html>"

        resp = requests.post(f"{base}/posts/{post_id}/edit",
                             json={"editPrompt": "make it blue", "user": USER})

        assert resp.status_code == 200
        assert resp.json() == {"success": True, "html_content": "<html>blue</html>",
                               "edit_count": 1}

    def test_edit_requires_instruction(self, api):
        base, orch = api
        post_id = _ready_post(base, orch)
        assert requests.post(f"{base}/posts/{post_id}/edit", json={}).status_code == 400

    def test_fix_falls_back_to_channel_digest(self, api, builder):
        """Without an errors field the captured diagnostics are sent."""
        base, orch = api
        post_id = _ready_post(base, orch)
        server.channel_for(post_id).handle({"channel": "iframe-debug", "payload": {
            "type": "error", "category": "ReferenceError", "message": "foo is not defined"}})
        builder.generate.return_value = "<html>fixed</html>"

        resp = requests.post(f"{base}/posts/{post_id}/fix", json={"user": USER})

        assert resp.status_code == 200
        assert "ReferenceError: foo is not defined" in builder.generate.call_args.args[0]

    def test_fix_without_errors(self, api):
        base, orch = api
        post_id = _ready_post(base, orch)
        assert requests.post(f"{base}/posts/{post_id}/fix", json={}).status_code == 400

    def test_generation_failure_is_bad_gateway(self, api, builder):
        base, orch = api
        post_id = _ready_post(base, orch)
        builder.generate.side_effect = GenerationError("Generation failed: Network error", "transport")

        resp = requests.post(f"{base}/posts/{post_id}/fix", json={"errors": "TypeError: x"})

        assert resp.status_code == 502
        assert resp.json()["stage"] == "generate"
        assert resp.json()["cause"] == "transport"


class TestPreviewApi:
    def test_preview_clears_channel(self, api):
        base, orch = api
        post_id = _ready_post(base, orch)
        channel = server.channel_for(post_id)
        channel.handle({"channel": "iframe-debug", "payload": {"type": "error", "message": "old"}})

        resp = requests.get(f"{base}/posts/{post_id}/preview")

        assert resp.status_code == 200
        assert resp.headers["Content-Type"].startswith("text/html")
        assert 'sandbox="allow-scripts' in resp.text
        assert f'post: "{post_id}"' in resp.text
        assert channel.errors == []

    def test_diagnostics_snapshot(self, api):
        base, orch = api
        post_id = _ready_post(base, orch)
        server.channel_for(post_id).handle({"channel": "iframe-debug",
                                            "payload": {"type": "ready"}})
        body = requests.get(f"{base}/posts/{post_id}/diagnostics").json()
        assert body["isReady"] is True
        assert body["hasErrors"] is False
        assert body["summary"] == ""

    def test_diagnose_runs_tester(self, api):
        base, orch = api
        post_id = _ready_post(base, orch)
        fake = MagicMock()
        fake.test.side_effect = lambda html, channel: channel
        with patch.object(server, "tester", fake):
            resp = requests.post(f"{base}/posts/{post_id}/diagnose")
        assert resp.status_code == 200
        assert fake.test.call_args.args[0] == SAMPLE_HTML


class TestChannelLifecycle:
    def test_retry_drops_old_channel(self, api, builder):
        base, orch = api
        builder.generate.side_effect = GenerationError("Generation failed: boom", "transport")
        old_id = _ready_post(base, orch)
        server.channel_for(old_id)
        builder.generate.side_effect = None

        resp = requests.post(f"{base}/posts/{old_id}/retry", json={"user": USER})

        assert resp.status_code == 202
        orch.wait(resp.json()["post"]["id"], timeout=5)
        assert old_id not in server.channels

    def test_fix_unknown_post_creates_no_channel(self, api):
        base, _ = api
        unknown = "f" * 32
        assert requests.post(f"{base}/posts/{unknown}/fix", json={}).status_code == 404
        assert unknown not in server.channels


class TestNonStringInput:
    @pytest.mark.parametrize("route, body", [
        ("fix", {"errors": ["TypeError: x"]}),
        ("edit", {"editPrompt": 42}),
    ])
    def test_revise_rejects_non_string(self, api, builder, route, body):
        base, orch = api
        post_id = _ready_post(base, orch)
        builder.generate.reset_mock()

        resp = requests.post(f"{base}/posts/{post_id}/{route}", json=body)

        assert resp.status_code == 400
        builder.generate.assert_not_called()

    def test_create_rejects_non_string_title(self, api):
        base, _ = api
        resp = requests.post(f"{base}/posts", json={"prompt": "x", "user": USER, "title": 7})
        assert resp.status_code == 400


class _FakeSocket:
    def __init__(self, frames):
        self.frames = frames

    def __aiter__(self):
        return self._gen()

    async def _gen(self):
        for f in self.frames:
            yield f


class TestWebSocketIntake:
    def test_messages_feed_post_channel(self, store):
        post = store.create_post("t", "p")
        frames = [
            json.dumps({"post": post.id, "channel": "iframe-debug",
                        "payload": {"type": "error", "message": "boom"}}),
            "not json",
            json.dumps({"channel": "iframe-debug", "payload": {"type": "ready"}}),
        ]
        orch = MagicMock(store=store)

        with patch.object(server, "orchestrator", orch), patch.object(server, "channels", {}):
            asyncio.run(server.ws_handler(_FakeSocket(frames)))
            channel = server.channels[post.id]
            assert isinstance(channel, DiagnosticsChannel)
            assert [e.message for e in channel.errors] == ["boom"]
            assert list(server.channels) == [post.id]

    def test_unknown_or_malformed_ids_are_dropped(self, store):
        """Clients cannot grow the channel map with made-up ids."""
        frames = [json.dumps({"post": pid, "channel": "iframe-debug",
                              "payload": {"type": "ready"}})
                  for pid in ["a" * 32, "not-an-id", "../../etc", 12345, None]]
        orch = MagicMock(store=store)

        with patch.object(server, "orchestrator", orch), patch.object(server, "channels", {}):
            asyncio.run(server.ws_handler(_FakeSocket(frames)))
            assert server.channels == {}
