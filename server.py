#!/usr/bin/env python3
"""
MiniForge Server  —  HTTP :7824  |  WebSocket :7825
- POST /posts starts a detached generation and answers 202 immediately
- Clients poll GET /posts/<id> for pending → ready | failed
- /preview serves the instrumented artifact in a sandboxed frame; its
  diagnostics come back over the WebSocket into a per-post channel
- /fix and /edit revise the artifact, /diagnose runs it in headless Chromium
"""
import sys, json, asyncio, logging, re, threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Dict, Optional

import websockets

import config
from agents.errors import (ConfigurationError, NotFoundError, PipelineError,
                           PostStateError, PreviewError)
from agents.tester import TesterAgent
from pipeline import GenerationOrchestrator, build_orchestrator, describe_failure, setup_logging
from sandbox.diagnostics import DiagnosticsChannel
from sandbox.surface import render_host_page, websocket_bridge
from store import FAILED, READY, Post, User

log = logging.getLogger("server")

orchestrator: Optional[GenerationOrchestrator] = None
tester        = TesterAgent()
channels: Dict[str, DiagnosticsChannel] = {}
channels_lock = threading.Lock()

POST_ID    = r"[0-9a-fA-F]{32}"
POST_ROUTE = re.compile(rf"^/posts/({POST_ID})(?:/([a-z]+))?/?$")
POST_ID_RE = re.compile(rf"^{POST_ID}$")


def channel_for(post_id: str) -> DiagnosticsChannel:
    with channels_lock:
        if post_id not in channels:
            channels[post_id] = DiagnosticsChannel()
        return channels[post_id]


def known_channel(post_id) -> Optional[DiagnosticsChannel]:
    """Channel for an existing post; None for malformed or unknown ids."""
    if not isinstance(post_id, str) or not POST_ID_RE.match(post_id):
        return None
    with channels_lock:
        if post_id in channels:
            return channels[post_id]
    try:
        orchestrator.store.get_post(post_id)
    except NotFoundError:
        return None
    return channel_for(post_id)


def drop_channel(post_id: str):
    with channels_lock:
        channels.pop(post_id, None)


def post_view(post: Post) -> dict:
    data = post.model_dump(mode="json")
    if post.status == FAILED:
        data["failure"] = describe_failure(post.generation_error)._asdict()
    if post.status == READY and post.artifact_id:
        artifact = orchestrator.store.get_artifact(post.artifact_id)
        data["html_content"] = artifact.content
        data["edit_count"]   = artifact.revision_count
    return data


def parse_user(body: dict) -> Optional[User]:
    raw = body.get("user")
    if not isinstance(raw, dict) or raw.get("id") in (None, ""):
        return None
    return User(id=str(raw["id"]), api_key=raw.get("api_key"))


# ── HTTP handler ──────────────────────────────────────────────────────────────

class ApiHandler(BaseHTTPRequestHandler):
    def log_message(self, *a): pass

    def _send(self, status: int, body: bytes, content_type: str):
        self.send_response(status)
        self.send_header("Content-Type", content_type)
        self.send_header("Content-Length", str(len(body)))
        self.send_header("Access-Control-Allow-Origin", "*")
        self.send_header("Cache-Control", "no-store")
        self.end_headers()
        self.wfile.write(body)

    def _json(self, status: int, data):
        self._send(status, json.dumps(data, ensure_ascii=False).encode(), "application/json")

    def _html(self, status: int, text: str):
        self._send(status, text.encode(), "text/html; charset=utf-8")

    def _body(self) -> dict:
        length = int(self.headers.get("Content-Length", 0))
        if not length:
            return {}
        try:
            data = json.loads(self.rfile.read(length))
        except json.JSONDecodeError as e:
            raise ValueError(f"Invalid JSON payload: {e}") from e
        if not isinstance(data, dict):
            raise ValueError("JSON object expected")
        return data

    def _guard(self, fn, *args):
        """Run a route and map domain errors to HTTP statuses."""
        try:
            fn(*args)
        except NotFoundError as e:
            self._json(404, {"error": str(e)})
        except PostStateError as e:
            self._json(409, {"error": str(e)})
        except (ValueError, ConfigurationError) as e:
            self._json(400, {"error": str(e)})
        except PipelineError as e:
            log.warning(f"{e.stage} failed ({e.cause}): {e}")
            self._json(502, {"error": str(e), "stage": e.stage, "cause": e.cause,
                             "failure": describe_failure(str(e))._asdict()})
        except PreviewError as e:
            self._json(502, {"error": str(e)})
        except Exception as e:
            log.exception(f"{self.command} {self.path} failed")
            self._json(500, {"error": str(e)})

    def do_OPTIONS(self):
        self.send_response(204)
        self.send_header("Access-Control-Allow-Origin", "*")
        self.send_header("Access-Control-Allow-Methods", "GET, POST, OPTIONS")
        self.send_header("Access-Control-Allow-Headers", "Content-Type")
        self.end_headers()

    def do_GET(self):
        path = self.path.split("?", 1)[0]
        if path == "/health":
            self._json(200, {"ok": True})
        elif path == "/posts":
            self._guard(self.list_posts)
        elif (m := POST_ROUTE.match(path)) and m.group(2) in (None, "preview", "diagnostics"):
            self._guard({None:          self.get_post,
                         "preview":     self.preview,
                         "diagnostics": self.diagnostics}[m.group(2)], m.group(1))
        else:
            self._json(404, {"error": "Not found"})

    def do_POST(self):
        path = self.path.split("?", 1)[0]
        if path == "/posts":
            self._guard(self.create_post)
        elif (m := POST_ROUTE.match(path)) and m.group(2) in ("retry", "fix", "edit", "diagnose"):
            self._guard(getattr(self, f"{m.group(2)}_post"), m.group(1))
        else:
            self._json(404, {"error": "Not found"})

    # ── Routes ────────────────────────────────────────────────────────────────

    def list_posts(self):
        posts = orchestrator.store.list_posts()
        self._json(200, {"posts": [p.model_dump(mode="json") for p in posts]})

    def get_post(self, post_id):
        self._json(200, {"post": post_view(orchestrator.store.get_post(post_id))})

    def create_post(self):
        body   = self._body()
        prompt = body.get("prompt")
        if not prompt or not isinstance(prompt, str):
            raise ValueError("Prompt is required")
        user = parse_user(body)
        if not user:
            self._json(401, {"error": "User authentication is required for generation"})
            return
        for field in ("model", "title"):
            if body.get(field) is not None and not isinstance(body[field], str):
                raise ValueError(f"{field} must be a string")
        result = orchestrator.create(prompt, user, body.get("model"), body.get("title"))
        post   = orchestrator.store.get_post(result.post_id)
        self._json(202, {"post": post.model_dump(mode="json"), "status": post.status})

    def retry_post(self, post_id):
        result = orchestrator.retry(post_id, parse_user(self._body()))
        drop_channel(post_id)
        post   = orchestrator.store.get_post(result.post_id)
        self._json(202, {"post": post.model_dump(mode="json"), "status": post.status})

    def fix_post(self, post_id):
        body   = self._body()
        orchestrator.store.get_post(post_id)
        errors = body.get("errors")
        if errors is None:
            errors = channel_for(post_id).summary()
        if not errors:
            raise ValueError("Error description is required")
        artifact = orchestrator.fix(post_id, errors, parse_user(body))
        self._json(200, {"success": True, "html_content": artifact.content,
                         "edit_count": artifact.revision_count})

    def edit_post(self, post_id):
        body     = self._body()
        artifact = orchestrator.edit(post_id, body.get("editPrompt", ""), parse_user(body))
        self._json(200, {"success": True, "html_content": artifact.content,
                         "edit_count": artifact.revision_count})

    def preview(self, post_id):
        post   = orchestrator.store.get_post(post_id)
        mounted = orchestrator.mount_post(post_id, channel_for(post_id))
        host   = self.headers.get("Host", "127.0.0.1").split(":")[0]
        bridge = websocket_bridge(f"ws://{host}:{config.WS_PORT}", post_id)
        self._html(200, render_host_page(mounted, bridge, title=post.title))

    def diagnostics(self, post_id):
        orchestrator.store.get_post(post_id)
        channel = channel_for(post_id)
        self._json(200, {**channel.snapshot(), "summary": channel.summary()})

    def diagnose_post(self, post_id):
        artifact = orchestrator.store.artifact_for(post_id)
        channel  = tester.test(artifact.content, channel_for(post_id))
        self._json(200, {**channel.snapshot(), "summary": channel.summary()})


# ── WebSocket handler ─────────────────────────────────────────────────────────

async def ws_handler(websocket, path=None):
    """Preview pages forward {post, channel, payload} for every frame message."""
    log.info("WS preview connected")
    try:
        async for raw in websocket:
            try:
                msg = json.loads(raw)
            except json.JSONDecodeError:
                log.warning("WS: dropping non-JSON message")
                continue
            channel = known_channel(msg.get("post")) if isinstance(msg, dict) else None
            if channel is None:
                log.warning("WS: dropping message for an unknown post")
                continue
            channel.handle(msg)
    except websockets.exceptions.ConnectionClosed:
        pass
    finally:
        log.info("WS preview disconnected")


def start_http():
    httpd = ThreadingHTTPServer(("127.0.0.1", config.UI_PORT), ApiHandler)
    log.info(f"HTTP server listening on 127.0.0.1:{config.UI_PORT}")
    httpd.serve_forever()


async def main():
    global orchestrator
    orchestrator = build_orchestrator()
    threading.Thread(target=start_http, daemon=True).start()
    log.info(f"{'━'*46}")
    log.info(f"  ⚡ MiniForge starting...")
    log.info(f"  ⚡ HTTP        →  http://127.0.0.1:{config.UI_PORT}")
    log.info(f"  🔌 WebSocket   →  ws://127.0.0.1:{config.WS_PORT}")
    log.info(f"  🧠 Expand      :  {config.EXPAND_MODEL}")
    log.info(f"  🏗️  Build       :  {config.DEFAULT_MODEL}")
    if not config.OPENROUTER_API_KEY:
        log.warning("  ⚠ OPENROUTER_API_KEY not set — only users with their own key can generate")
    log.info(f"{'━'*46}")
    async with websockets.serve(ws_handler, "127.0.0.1", config.WS_PORT):
        await asyncio.Future()


if __name__ == "__main__":
    setup_logging("server")
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        log.info("\n⛔ Stopped.")
    finally:
        if orchestrator:
            orchestrator.close()
    sys.exit(0)
