"""
File-backed records for posts, artifacts and model metadata.

Layout under the data directory:
    posts/<post_id>.json
    artifacts/<artifact_id>.json
    models.json
"""
import json, logging, os, threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Literal, Optional
from uuid import uuid4

from pydantic import BaseModel, Field

from agents.errors import NotFoundError, PostStateError

log = logging.getLogger("store")

PENDING = "pending"
READY   = "ready"
FAILED  = "failed"

Status = Literal["pending", "ready", "failed"]


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid4().hex


class User(BaseModel):
    id: str
    api_key: Optional[str] = None


class Post(BaseModel):
    id: str = Field(default_factory=_new_id)
    title: str
    prompt: str
    status: Status = PENDING
    generation_error: Optional[str] = None
    model_id: Optional[str] = None
    user_id: Optional[str] = None
    likes_count: int = 0
    is_published: bool = False
    artifact_id: Optional[str] = None
    created_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)


class Artifact(BaseModel):
    id: str = Field(default_factory=_new_id)
    post_id: str
    content: str
    description: Optional[str] = None
    revision_count: int = 0
    created_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)


class ModelInfo(BaseModel):
    id: str
    name: str
    provider: str
    description: Optional[str] = None
    is_free: bool = False


class ProjectStore:
    def __init__(self, data_dir: Path):
        self.data_dir      = Path(data_dir)
        self.posts_dir     = self.data_dir / "posts"
        self.artifacts_dir = self.data_dir / "artifacts"
        self.models_file   = self.data_dir / "models.json"
        self._lock = threading.RLock()
        for d in [self.posts_dir, self.artifacts_dir]:
            d.mkdir(parents=True, exist_ok=True)

    # ── File I/O ──────────────────────────────────────────────────────────────

    def _write(self, path: Path, text: str):
        tmp = path.with_suffix(path.suffix + ".tmp")
        tmp.write_text(text, encoding="utf-8")
        os.replace(tmp, path)

    def _post_path(self, post_id: str) -> Path:
        return self.posts_dir / f"{Path(post_id).name}.json"

    def _artifact_path(self, artifact_id: str) -> Path:
        return self.artifacts_dir / f"{Path(artifact_id).name}.json"

    def _save_post(self, post: Post):
        post.updated_at = _now()
        self._write(self._post_path(post.id), post.model_dump_json(indent=2))

    def _save_artifact(self, artifact: Artifact):
        artifact.updated_at = _now()
        self._write(self._artifact_path(artifact.id), artifact.model_dump_json(indent=2))

    # ── Posts ─────────────────────────────────────────────────────────────────

    def create_post(self, title: str, prompt: str, user_id: Optional[str] = None,
                    model_id: Optional[str] = None) -> Post:
        post = Post(title=title, prompt=prompt, user_id=user_id, model_id=model_id)
        with self._lock:
            self._save_post(post)
        log.info(f"   ✎ post {post.id} (pending)")
        return post

    def get_post(self, post_id: str) -> Post:
        fp = self._post_path(post_id)
        with self._lock:
            if not fp.exists():
                raise NotFoundError(f"Post not found: {post_id}")
            return Post.model_validate_json(fp.read_text(encoding="utf-8"))

    def list_posts(self, user_id: Optional[str] = None) -> List[Post]:
        with self._lock:
            posts = [Post.model_validate_json(fp.read_text(encoding="utf-8"))
                     for fp in self.posts_dir.glob("*.json")]
        if user_id is not None:
            posts = [p for p in posts if p.user_id == user_id]
        return sorted(posts, key=lambda p: p.created_at, reverse=True)

    def set_status(self, post_id: str, status: Status, error: Optional[str] = None,
                   artifact_id: Optional[str] = None) -> Post:
        """Terminal transition. Only a pending post may change status."""
        with self._lock:
            post = self.get_post(post_id)
            if post.status != PENDING:
                raise PostStateError(f"Post {post_id} is already {post.status}")
            post.status           = status
            post.generation_error = error
            if artifact_id:
                post.artifact_id = artifact_id
            self._save_post(post)
        log.info(f"   ✎ post {post_id} → {status}")
        return post

    def delete_post(self, post_id: str):
        with self._lock:
            post = self.get_post(post_id)
            if post.artifact_id:
                self._artifact_path(post.artifact_id).unlink(missing_ok=True)
            self._post_path(post_id).unlink()
        log.info(f"   🗑️  post {post_id} deleted")

    # ── Artifacts ─────────────────────────────────────────────────────────────

    def save_artifact(self, post_id: str, content: str,
                      description: Optional[str] = None) -> Artifact:
        artifact = Artifact(post_id=post_id, content=content, description=description)
        with self._lock:
            self._save_artifact(artifact)
        return artifact

    def get_artifact(self, artifact_id: str) -> Artifact:
        fp = self._artifact_path(artifact_id)
        with self._lock:
            if not fp.exists():
                raise NotFoundError(f"Artifact not found: {artifact_id}")
            return Artifact.model_validate_json(fp.read_text(encoding="utf-8"))

    def artifact_for(self, post_id: str) -> Artifact:
        post = self.get_post(post_id)
        if not post.artifact_id:
            raise NotFoundError(f"Post {post_id} has no artifact")
        return self.get_artifact(post.artifact_id)

    def revise_artifact(self, artifact_id: str, content: str) -> Artifact:
        """Replace the content and bump revision_count by one. Last write wins."""
        with self._lock:
            artifact = self.get_artifact(artifact_id)
            artifact.content        = content
            artifact.revision_count += 1
            self._save_artifact(artifact)
        return artifact

    # ── Models ────────────────────────────────────────────────────────────────

    def _load_models(self) -> Dict[str, dict]:
        if not self.models_file.exists():
            return {}
        return json.loads(self.models_file.read_text(encoding="utf-8"))

    def upsert_model(self, info: ModelInfo) -> ModelInfo:
        with self._lock:
            models = self._load_models()
            models[info.id] = info.model_dump()
            self._write(self.models_file, json.dumps(models, indent=2))
        return info

    def get_model(self, model_id: str) -> Optional[ModelInfo]:
        with self._lock:
            data = self._load_models().get(model_id)
        return ModelInfo.model_validate(data) if data else None
