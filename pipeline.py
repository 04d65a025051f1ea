#!/usr/bin/env python3
"""
Generation pipeline: idea → expanded spec → HTML artifact.

create() persists a pending post and hands the slow part to a worker pool;
a completion callback performs the single terminal transition. Run this
module directly to watch ideas/ and generate an artifact for every .txt
file dropped there.
"""
import sys, time, logging, threading
from concurrent.futures import Future, ThreadPoolExecutor
from pathlib import Path
from typing import Dict, NamedTuple, Optional

from watchdog.observers import Observer
from watchdog.events import FileSystemEventHandler

import config
from agents.builder import BuilderAgent
from agents.errors import ConfigurationError, PostStateError
from agents.llm import LLMClient
from agents.refiner import RefinerAgent
from agents.reviser import ReviserAgent
from sandbox.instrument import instrument
from store import FAILED, READY, Artifact, ModelInfo, ProjectStore, User

log = logging.getLogger("pipeline")

MAX_ERROR_LEN = 500
TITLE_LEN     = 90
MAX_TITLE_LEN = 120


class CreateResult(NamedTuple):
    post_id: str
    accepted: bool = True


class FailureInfo(NamedTuple):
    kind: str
    title: str
    message: str


# ── Failure classification ────────────────────────────────────────────────────

def classify_failure(exc: BaseException) -> str:
    """Error string stored on a failed post."""
    message = str(exc) or type(exc).__name__
    lower   = message.lower()
    if "abort" in lower or "cancel" in lower:
        message = f"Generation cancelled: {message}"
    return message[:MAX_ERROR_LEN]


def describe_failure(error: Optional[str]) -> FailureInfo:
    """Human-readable reason for a stored error string."""
    if not error:
        return FailureInfo("generic", "Generation failed", "Unknown error occurred")
    e = error.lower()
    if "abort" in e or "cancel" in e:
        return FailureInfo("cancelled", "Generation cancelled", "The request was cancelled")
    if "timeout" in e or "timed out" in e:
        return FailureInfo("timeout", "Request timeout", "Generation took too long. Try a simpler prompt.")
    if "rate limit" in e or "429" in e:
        return FailureInfo("rate-limited", "Rate limited", "Too many requests. Please wait a moment.")
    if "api key" in e or "unauthorized" in e or "401" in e:
        return FailureInfo("auth", "API key error", "Check your API key in Settings")
    if "insufficient" in e or "credits" in e or "balance" in e or "402" in e:
        return FailureInfo("credits", "Insufficient credits", "Add credits to your OpenRouter account")
    if "network" in e or "fetch" in e or "connection" in e:
        return FailureInfo("network", "Network error", "Check your internet connection")
    return FailureInfo("generic", "Generation failed", error[:150])


def build_title(prompt: str, custom: Optional[str] = None) -> str:
    custom = (custom or "").strip()
    if custom:
        return custom[:MAX_TITLE_LEN]
    clean = " ".join(prompt.split())
    return f"{clean[:TITLE_LEN]}…" if len(clean) > TITLE_LEN else clean


# ── Orchestrator ──────────────────────────────────────────────────────────────

class GenerationOrchestrator:
    def __init__(self, store: ProjectStore, refiner: RefinerAgent, builder: BuilderAgent,
                 reviser: Optional[ReviserAgent] = None, api_key: Optional[str] = None,
                 default_model: str = config.DEFAULT_MODEL,
                 max_workers: int = config.MAX_WORKERS):
        self.store         = store
        self.refiner       = refiner
        self.builder       = builder
        self.reviser       = reviser or ReviserAgent(builder)
        self.api_key       = api_key
        self.default_model = default_model
        self.pool          = ThreadPoolExecutor(max_workers=max_workers,
                                                thread_name_prefix="generate")
        # post_id → event set once the terminal status is written
        self._done: Dict[str, threading.Event] = {}

    # ── Helpers ───────────────────────────────────────────────────────────────

    def resolve_api_key(self, user: User, model: str) -> str:
        """Free models run on the server key; paid ones prefer the user's own key."""
        key = self.api_key if config.is_free_model(model) else (user.api_key or self.api_key)
        if not key:
            raise ConfigurationError(
                "OpenRouter API key is not configured. Add your key in Settings "
                "or use a free model")
        return key

    def register_model(self, model_id: str) -> Optional[str]:
        """Upsert model metadata, then verify it. Returns the id only when verified."""
        known    = config.find_model(model_id) or {}
        provider = model_id.split("/")[0]
        info = ModelInfo(
            id=model_id,
            name=known.get("name") or (model_id.split("/")[1] if "/" in model_id else model_id),
            provider=provider[:1].upper() + provider[1:],
            description=known.get("description"),
            is_free=config.is_free_model(model_id),
        )
        try:
            self.store.upsert_model(info)
            if self.store.get_model(model_id):
                return model_id
            log.error(f"   model not found after upsert: {model_id}")
        except Exception:
            log.exception(f"   failed to register model {model_id}")
        return None

    # ── create / retry ────────────────────────────────────────────────────────

    def create(self, raw_idea: str, user: User, model_id: Optional[str] = None,
               title: Optional[str] = None) -> CreateResult:
        idea = (raw_idea or "").strip()
        if not idea:
            raise ValueError("Prompt is required")
        model   = model_id or self.default_model
        api_key = self.resolve_api_key(user, model)

        post = self.store.create_post(
            title=build_title(idea, title),
            prompt=idea,
            user_id=user.id,
            model_id=self.register_model(model),
        )
        log.info(f"💡 Post {post.id} accepted: {idea[:80]}")

        self._done[post.id] = threading.Event()
        future = self.pool.submit(self._generate, post.id, idea, api_key, model)
        future.add_done_callback(lambda f, pid=post.id: self._finish(pid, f))
        return CreateResult(post.id)

    def retry(self, post_id: str, user: Optional[User] = None) -> CreateResult:
        post = self.store.get_post(post_id)
        if post.status != FAILED:
            raise PostStateError(f"Only failed posts can be retried (post is {post.status})")
        user = user or User(id=post.user_id or "anonymous")
        log.info(f"🔄 Retrying post {post_id}")
        # The failed post stays until its replacement is saved
        result = self.create(post.prompt, user, post.model_id, post.title)
        self.store.delete_post(post_id)
        return result

    # ── Detached task ─────────────────────────────────────────────────────────

    def _generate(self, post_id: str, idea: str, api_key: str, model: str):
        log.info(f"🧠 [{post_id}] expanding…")
        spec = self.refiner.expand(idea, api_key)
        log.info(f"🏗️  [{post_id}] generating with {model}…")
        html = self.builder.generate(spec, api_key, model)
        return spec, html

    def _finish(self, post_id: str, future: Future):
        try:
            if future.cancelled():
                raise RuntimeError("task was cancelled")
            spec, html = future.result()
            artifact = self.store.save_artifact(post_id, html, description=spec)
            self.store.set_status(post_id, READY, artifact_id=artifact.id)
            log.info(f"🎉 [{post_id}] ready ({len(html)} chars)")
        except Exception as e:
            log.exception(f"❌ [{post_id}] generation failed")
            try:
                self.store.set_status(post_id, FAILED, error=classify_failure(e))
            except Exception:
                log.exception(f"   [{post_id}] failed to mark post as failed")
        finally:
            done = self._done.pop(post_id, None)
            if done:
                done.set()

    def wait(self, post_id: str, timeout: Optional[float] = None) -> bool:
        """Block until the post's detached task has written its terminal status."""
        done = self._done.get(post_id)
        return done.wait(timeout) if done else True

    def close(self):
        self.pool.shutdown(wait=True)

    # ── fix / edit / mount ────────────────────────────────────────────────────

    def _revise(self, post_id: str, user: Optional[User], apply) -> Artifact:
        post = self.store.get_post(post_id)
        if post.status != READY:
            raise PostStateError(f"Post {post_id} has no artifact to revise ({post.status})")
        artifact = self.store.artifact_for(post_id)
        model    = post.model_id or self.default_model
        api_key  = self.resolve_api_key(user or User(id=post.user_id or "anonymous"), model)

        revised = apply(artifact.content, api_key, model)
        artifact = self.store.revise_artifact(artifact.id, revised)
        log.info(f"   ✓ [{post_id}] revision {artifact.revision_count} saved ({len(revised)} chars)")
        return artifact

    def fix(self, post_id: str, diagnostics_summary: str, user: Optional[User] = None) -> Artifact:
        return self._revise(post_id, user,
                            lambda html, key, model: self.reviser.fix(html, diagnostics_summary, key, model))

    def edit(self, post_id: str, instruction: str, user: Optional[User] = None) -> Artifact:
        return self._revise(post_id, user,
                            lambda html, key, model: self.reviser.edit(html, instruction, key, model))

    def mount(self, content: str) -> str:
        return instrument(content)

    def mount_post(self, post_id: str, channel) -> str:
        """Instrument the post's current artifact, clearing stale diagnostics first."""
        artifact = self.store.artifact_for(post_id)
        channel.clear()
        return self.mount(artifact.content)


def build_orchestrator(data_dir: Path = config.DATA_DIR) -> GenerationOrchestrator:
    client = LLMClient(config.OPENROUTER_URL, config.APP_URL, config.APP_TITLE)
    return GenerationOrchestrator(
        store=ProjectStore(data_dir),
        refiner=RefinerAgent(client, config.EXPAND_MODEL, config.EXPAND_TIMEOUT),
        builder=BuilderAgent(client, config.GENERATE_TIMEOUT),
        api_key=config.OPENROUTER_API_KEY,
    )


# ── Idea folder watcher ───────────────────────────────────────────────────────

class IdeaFileHandler(FileSystemEventHandler):
    def __init__(self, orchestrator: GenerationOrchestrator, user: User):
        self.orchestrator = orchestrator
        self.user         = user
        self.processing   = set()

    def on_created(self, event):  self._handle(event.src_path)
    def on_modified(self, event): self._handle(event.src_path)

    def _handle(self, path):
        p = Path(path)
        if p.suffix != ".txt" or p in self.processing:
            return
        self.processing.add(p)
        try:
            raw_idea = p.read_text(encoding="utf-8").strip()
            if not raw_idea:
                log.warning(f"Idea file {p.name} is empty. Skipping.")
                return
            result = self.orchestrator.create(raw_idea, self.user)
            log.info(f"📥 {p.name} → post {result.post_id}")
        except Exception:
            log.exception(f"Failed to queue idea {p.name}")
        finally:
            self.processing.discard(p)


def setup_logging(name: str):
    config.LOGS_DIR.mkdir(parents=True, exist_ok=True)
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(message)s",
        handlers=[
            logging.FileHandler(config.LOGS_DIR / f"{name}.log"),
            logging.StreamHandler(sys.stdout),
        ],
    )


if __name__ == "__main__":
    config.IDEAS_DIR.mkdir(parents=True, exist_ok=True)
    setup_logging("pipeline")

    orchestrator = build_orchestrator()
    log.info("🤖 MiniForge pipeline")
    log.info(f"   👁️  Watching : {config.IDEAS_DIR}")
    log.info(f"   📦 Data     : {config.DATA_DIR}")
    log.info(f"   🧠 Expand   : {config.EXPAND_MODEL}")
    log.info(f"   🏗️  Build    : {config.DEFAULT_MODEL}")
    log.info("\nDrop a .txt file into ideas/ to start!")

    handler  = IdeaFileHandler(orchestrator, User(id="local"))
    observer = Observer()
    observer.schedule(handler, str(config.IDEAS_DIR), recursive=False)
    observer.start()
    try:
        while True: time.sleep(1)
    except KeyboardInterrupt:
        log.info("\n⛔ Stopping...")
        observer.stop()
    observer.join()
    orchestrator.close()
