"""
Host side of the sandbox message protocol.

Frame → host messages are parsed into a closed union of payload kinds at the
boundary; anything else is dropped. DiagnosticsChannel aggregates the parsed
events of one mounted artifact and must be cleared before a new revision is
mounted.
"""
import logging, threading
from typing import Annotated, Any, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from sandbox.instrument import COMMAND_CHANNEL, DEBUG_CHANNEL

log = logging.getLogger("diagnostics")


class _Payload(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    timestamp: Optional[int] = None


class ErrorPayload(_Payload):
    type: Literal["error"]
    category: Optional[str] = None
    message: Optional[str] = None
    line: Optional[int] = None
    column: Optional[int] = None
    stack: Optional[str] = None
    source: Optional[str] = None


class ResourceErrorPayload(_Payload):
    type: Literal["resource-error"]
    category: Optional[str] = "ResourceLoadError"
    message: Optional[str] = None
    tag_name: Optional[str] = Field(default=None, alias="tagName")


class ConsolePayload(_Payload):
    type: Literal["console"]
    level: Literal["log", "warn", "info", "error", "debug"] = "log"
    message: Optional[str] = None
    args: List[Any] = Field(default_factory=list)

    def text(self) -> str:
        if self.message:
            return self.message
        return " ".join(a if isinstance(a, str) else str(a) for a in self.args)


class ReadyPayload(_Payload):
    type: Literal["ready"]
    errors_count: int = Field(default=0, alias="errorsCount")


ErrorLike = Annotated[Union[ErrorPayload, ResourceErrorPayload], Field(discriminator="type")]


class AllErrorsPayload(_Payload):
    type: Literal["all-errors"]
    errors: List[ErrorLike] = Field(default_factory=list)
    logs: List[ConsolePayload] = Field(default_factory=list)


DebugPayload = Annotated[
    Union[ErrorPayload, ResourceErrorPayload, ConsolePayload, ReadyPayload, AllErrorsPayload],
    Field(discriminator="type"),
]

_payload_adapter = TypeAdapter(DebugPayload)


class FrameCommand(BaseModel):
    channel: Literal["iframe-command"] = COMMAND_CHANNEL
    command: Literal["getErrors", "clear"]


def parse_message(data: Any) -> Optional[BaseModel]:
    """Parse raw window-message data. Returns None for foreign or malformed messages."""
    if not isinstance(data, dict) or data.get("channel") != DEBUG_CHANNEL:
        return None
    try:
        return _payload_adapter.validate_python(data.get("payload"))
    except ValidationError as e:
        log.warning(f"Dropping malformed {DEBUG_CHANNEL} payload: {e.errors()[:1]}")
        return None


def promote_console_error(entry: ConsolePayload) -> ErrorPayload:
    return ErrorPayload(type="error", category="ConsoleError",
                        message=entry.text(), timestamp=entry.timestamp)


class DiagnosticsChannel:
    def __init__(self):
        self._lock   = threading.Lock()
        self._errors: List[BaseModel] = []
        self._logs: List[ConsolePayload] = []
        self._ready  = False

    # ── Inbound ───────────────────────────────────────────────────────────────

    def handle(self, data: Any) -> bool:
        """Dispatch one raw message. Returns True if it was ours and well-formed."""
        msg = parse_message(data)
        if msg is None:
            return False
        with self._lock:
            if isinstance(msg, (ErrorPayload, ResourceErrorPayload)):
                self._errors.append(msg)
            elif isinstance(msg, ConsolePayload):
                self._logs.append(msg)
                if msg.level == "error":
                    self._errors.append(promote_console_error(msg))
            elif isinstance(msg, ReadyPayload):
                self._ready = True
            elif isinstance(msg, AllErrorsPayload):
                self._errors = list(msg.errors)
                self._logs   = list(msg.logs)
        return True

    def clear(self):
        with self._lock:
            self._errors = []
            self._logs   = []
            self._ready  = False

    # ── Outbound ──────────────────────────────────────────────────────────────

    @staticmethod
    def command(name: str) -> dict:
        return FrameCommand(command=name).model_dump()

    @property
    def errors(self) -> list:
        with self._lock:
            return list(self._errors)

    @property
    def logs(self) -> list:
        with self._lock:
            return list(self._logs)

    @property
    def is_ready(self) -> bool:
        return self._ready

    @property
    def has_errors(self) -> bool:
        with self._lock:
            return bool(self._errors)

    def summary(self) -> str:
        """Flattened digest of the error list, the payload handed to a fix pass."""
        parts = []
        for e in self.errors:
            text = f"{e.category or 'Error'}: {e.message}"
            line = getattr(e, "line", None)
            if line:
                text += f" (line {line})"
            stack = getattr(e, "stack", None)
            if stack:
                text += f"\nStack: {stack}"
            parts.append(text)
        return "\n\n".join(parts)

    def snapshot(self) -> dict:
        with self._lock:
            return {
                "errors":    [e.model_dump(by_alias=True, exclude_none=True) for e in self._errors],
                "logs":      [l.model_dump(by_alias=True, exclude_none=True) for l in self._logs],
                "isReady":   self._ready,
                "hasErrors": bool(self._errors),
            }
