"""Tests for agents.llm — LLMClient.request() and its failure causes."""

import json
import threading
import time
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from unittest.mock import MagicMock, patch

import pytest
import requests

from agents import llm
from agents.llm import LLMClient, LLMError


def _response(status=200, payload=None, text=""):
    resp = MagicMock()
    resp.ok = 200 <= status < 300
    resp.status_code = status
    resp.text = text
    resp.json.return_value = payload
    return resp


def _completion(content):
    return {"id": "gen-1", "choices": [{"message": {"role": "assistant", "content": content}}],
            "usage": {"prompt_tokens": 10, "completion_tokens": 20, "total_tokens": 30}}


@pytest.fixture
def client():
    return LLMClient("https://example.test/api/v1/", "http://app.test", "MiniForge")


class TestRequestSuccess:
    @patch("agents.llm.requests.post")
    def test_returns_stripped_content(self, mock_post, client):
        """Reply content is returned without surrounding whitespace."""
        mock_post.return_value = _response(payload=_completion("  <html></html>\n"))
        assert client.request("sys", "user", "m/x", "sk", 5) == "<html></html>"

    @patch("agents.llm.requests.post")
    def test_posts_to_chat_completions(self, mock_post, client):
        """URL, auth and attribution headers are set."""
        mock_post.return_value = _response(payload=_completion("ok"))
        client.request("sys", "user", "m/x", "sk-1", 7, temperature=0.8, max_tokens=2000)

        args, kwargs = mock_post.call_args
        assert args[0] == "https://example.test/api/v1/chat/completions"
        assert kwargs["timeout"] == 7
        assert kwargs["headers"]["Authorization"] == "Bearer sk-1"
        assert kwargs["headers"]["HTTP-Referer"] == "http://app.test"
        assert kwargs["headers"]["X-Title"] == "MiniForge"
        body = kwargs["json"]
        assert body["model"] == "m/x"
        assert body["temperature"] == 0.8
        assert body["max_tokens"] == 2000
        assert body["messages"] == [{"role": "system", "content": "sys"},
                                    {"role": "user", "content": "user"}]
        assert "reasoning" not in body

    @patch("agents.llm.requests.post")
    def test_reasoning_flag(self, mock_post, client):
        """Reasoning models get a high-effort reasoning block."""
        mock_post.return_value = _response(payload=_completion("ok"))
        client.request("sys", "user", "m/x", "sk", 5, reasoning=True)
        assert mock_post.call_args.kwargs["json"]["reasoning"] == {"effort": "high"}


class TestRequestFailures:
    def test_missing_key(self, client):
        """No key means no request at all."""
        with patch("agents.llm.requests.post") as mock_post:
            with pytest.raises(LLMError) as exc:
                client.request("sys", "user", "m/x", None, 5)
        assert exc.value.cause == llm.AUTH
        mock_post.assert_not_called()

    @patch("agents.llm.requests.post", side_effect=requests.Timeout("slow"))
    def test_timeout(self, mock_post, client):
        """requests.Timeout maps to the timeout cause."""
        with pytest.raises(LLMError) as exc:
            client.request("sys", "user", "m/x", "sk", 5)
        assert exc.value.cause == llm.TIMEOUT
        assert "timeout" in str(exc.value).lower()

    @patch("agents.llm.requests.post", side_effect=requests.ConnectionError("refused"))
    def test_transport(self, mock_post, client):
        """Other request failures map to transport."""
        with pytest.raises(LLMError) as exc:
            client.request("sys", "user", "m/x", "sk", 5)
        assert exc.value.cause == llm.TRANSPORT
        assert "Network error" in str(exc.value)

    @patch("agents.llm.requests.post")
    def test_http_status(self, mock_post, client):
        """Non-2xx replies carry the status and body text."""
        mock_post.return_value = _response(status=429, text="rate limit exceeded")
        with pytest.raises(LLMError) as exc:
            client.request("sys", "user", "m/x", "sk", 5)
        assert exc.value.cause == llm.HTTP_STATUS
        assert exc.value.status == 429
        assert "API error (429): rate limit exceeded" in str(exc.value)

    @pytest.mark.parametrize("payload", [
        {"choices": []},
        {"choices": [{"message": {"content": None}}]},
        {"choices": [{"message": {"content": "   "}}]},
        {"error": "nope"},
    ])
    @patch("agents.llm.requests.post")
    def test_empty_response(self, mock_post, payload, client):
        """Missing choices or blank content is an empty response."""
        mock_post.return_value = _response(payload=payload)
        with pytest.raises(LLMError) as exc:
            client.request("sys", "user", "m/x", "sk", 5)
        assert exc.value.cause == llm.EMPTY_RESPONSE

    @patch("agents.llm.requests.post")
    def test_non_json_body(self, mock_post, client):
        """A 200 with an unparseable body is an empty response too."""
        resp = _response()
        resp.json.side_effect = ValueError("no json")
        mock_post.return_value = resp
        with pytest.raises(LLMError) as exc:
            client.request("sys", "user", "m/x", "sk", 5)
        assert exc.value.cause == llm.EMPTY_RESPONSE


# ---------------------------------------------------------------------------
# Wall-clock limit
# ---------------------------------------------------------------------------


class _TricklingHandler(BaseHTTPRequestHandler):
    """Sends keep-alive whitespace for a while, then a valid completion."""

    def log_message(self, *a):
        pass

    def do_POST(self):
        self.rfile.read(int(self.headers.get("Content-Length", 0)))
        body = json.dumps(_completion("<html>late</html>")).encode()
        self.send_response(200)
        self.send_header("Content-Type", "application/json")
        self.end_headers()
        try:
            for _ in range(10):
                self.wfile.write(b" ")
                self.wfile.flush()
                time.sleep(0.3)
            self.wfile.write(body)
        except OSError:
            pass


@pytest.fixture
def trickling_server():
    httpd = ThreadingHTTPServer(("127.0.0.1", 0), _TricklingHandler)
    threading.Thread(target=httpd.serve_forever, daemon=True).start()
    yield f"http://127.0.0.1:{httpd.server_address[1]}/api/v1"
    httpd.shutdown()
    httpd.server_close()


class TestWallClockTimeout:
    def test_trickling_server_times_out(self, trickling_server):
        """Bytes arriving steadily do not extend the total limit."""
        client = LLMClient(trickling_server)
        start = time.monotonic()
        with pytest.raises(LLMError) as exc:
            client.request("sys", "user", "m/x", "sk", 1)
        assert exc.value.cause == llm.TIMEOUT
        assert time.monotonic() - start < 2.5

    @patch("agents.llm.requests.post")
    def test_slow_call_abandoned(self, mock_post, client):
        """The caller stops waiting at the deadline; the late reply is closed."""
        late = _response(payload=_completion("late"))
        release = threading.Event()

        def slow(*args, **kwargs):
            release.wait(5)
            return late

        mock_post.side_effect = slow
        with pytest.raises(LLMError) as exc:
            client.request("sys", "user", "m/x", "sk", 0.2)
        assert exc.value.cause == llm.TIMEOUT

        release.set()
        for _ in range(50):
            if late.close.called:
                break
            time.sleep(0.05)
        late.close.assert_called_once()

    @patch("agents.llm.requests.post")
    def test_fast_call_within_limit(self, mock_post, client):
        mock_post.return_value = _response(payload=_completion("quick"))
        assert client.request("sys", "user", "m/x", "sk", 0.5) == "quick"
