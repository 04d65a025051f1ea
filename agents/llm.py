"""
OpenRouter chat-completions client.

One POST per call, no retries. The timeout is a wall-clock limit on the whole
exchange: the POST runs on a daemon thread and the caller stops waiting once
it expires, whatever the server is still sending. Replies are validated
against a strict schema so a malformed or empty reply fails fast as
"empty-response" instead of being probed field by field.
"""
import logging, threading, time
from concurrent.futures import Future, TimeoutError as FuturesTimeout
from typing import List, Optional

import requests
from pydantic import BaseModel, Field, ValidationError

log = logging.getLogger("llm")

# Causes reported by LLMError.cause
TIMEOUT        = "timeout"
TRANSPORT      = "transport"
HTTP_STATUS    = "http-status"
EMPTY_RESPONSE = "empty-response"
AUTH           = "auth"


class LLMError(Exception):
    def __init__(self, message: str, cause: str, status: Optional[int] = None):
        super().__init__(message)
        self.cause  = cause
        self.status = status


# ── Reply schema ──────────────────────────────────────────────────────────────

class ChatMessage(BaseModel):
    role: str = "assistant"
    content: Optional[str] = None


class ChatChoice(BaseModel):
    message: ChatMessage
    finish_reason: Optional[str] = None


class Usage(BaseModel):
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


class ChatCompletion(BaseModel):
    id: Optional[str] = None
    choices: List[ChatChoice] = Field(min_length=1)
    usage: Optional[Usage] = None


# ── Client ────────────────────────────────────────────────────────────────────

def _close_late_response(future: Future):
    if future.exception() is None:
        future.result().close()


class LLMClient:
    def __init__(self, base_url: str, app_url: str = "", app_title: str = ""):
        self.url       = f"{base_url.rstrip('/')}/chat/completions"
        self.app_url   = app_url
        self.app_title = app_title

    def _post_within(self, body: dict, headers: dict, timeout: float) -> requests.Response:
        """POST and wait at most `timeout` seconds in total.

        requests only bounds each socket read, so a server trickling bytes
        would never time out. An abandoned call finishes on its own thread
        and its response is closed and discarded.
        """
        outcome: Future = Future()

        def run():
            try:
                outcome.set_result(requests.post(self.url, json=body, headers=headers,
                                                 timeout=timeout))
            except Exception as e:
                outcome.set_exception(e)

        threading.Thread(target=run, daemon=True, name="llm-call").start()
        try:
            return outcome.result(timeout=timeout)
        except FuturesTimeout:
            outcome.add_done_callback(_close_late_response)
            raise

    def request(self, system_prompt: str, user_prompt: str, model: str,
                api_key: Optional[str], timeout: float, *,
                temperature: float = 0.7, max_tokens: int = 4000,
                reasoning: bool = False, label: str = "llm") -> str:
        """Send one chat completion and return the reply text.

        Raises LLMError with cause timeout / transport / http-status /
        empty-response / auth.
        """
        if not api_key:
            raise LLMError("OpenRouter API key is required", AUTH)

        body = {
            "model":       model,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user",   "content": user_prompt},
            ],
            "temperature": temperature,
            "max_tokens":  max_tokens,
        }
        if reasoning:
            body["reasoning"] = {"effort": "high"}

        headers = {
            "Authorization": f"Bearer {api_key}",
            "Content-Type":  "application/json",
        }
        if self.app_url:
            headers["HTTP-Referer"] = self.app_url
        if self.app_title:
            headers["X-Title"] = self.app_title

        log.info(f"[{label}] → {model} (timeout {int(timeout)}s)")
        start = time.monotonic()
        try:
            resp = self._post_within(body, headers, timeout)
        except (requests.Timeout, FuturesTimeout) as e:
            elapsed = round(time.monotonic() - start)
            log.error(f"[{label}] timeout after {elapsed}s")
            raise LLMError(f"Request timeout after {elapsed}s: took too long", TIMEOUT) from e
        except requests.RequestException as e:
            log.error(f"[{label}] network error: {e}")
            raise LLMError(f"Network error: {e}", TRANSPORT) from e

        if not resp.ok:
            text = (resp.text or "")[:500]
            log.error(f"[{label}] API error ({resp.status_code}): {text[:200]}")
            raise LLMError(f"API error ({resp.status_code}): {text}", HTTP_STATUS, resp.status_code)

        try:
            data = ChatCompletion.model_validate(resp.json())
        except (ValueError, ValidationError) as e:
            raise LLMError(f"No response from model {model}: {e}", EMPTY_RESPONSE) from e

        content = (data.choices[0].message.content or "").strip()
        if not content:
            raise LLMError(f"No response from model {model}: empty content", EMPTY_RESPONSE)

        elapsed = round(time.monotonic() - start)
        usage = data.usage or Usage()
        log.info(f"[{label}] ✅ {len(content)} chars in {elapsed}s "
                 f"(tokens in={usage.prompt_tokens} out={usage.completion_tokens})")
        return content
