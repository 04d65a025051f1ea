import logging, re, textwrap
from typing import Callable, List, Optional, Tuple

import config
from agents.errors import GenerationError
from agents.llm import LLMError

log = logging.getLogger("builder")

# ── System prompt ─────────────────────────────────────────────────────────────

SYSTEM_PROMPT = textwrap.dedent("""\
    You are an expert Frontend Engineer specializing in building mini apps and games.
    Your goal is to generate a fully functional, interactive UI html page based on the user's request.

    TECHNICAL CONSTRAINTS:
    - Mobile-First Design: Responsive for 320-420px. Use flex/grid, avoid fixed px widths, use touchscreen actions
    - Avoid scrollbars
    - Viewport Height: Fit within 100vh or scroll gracefully.
    - Single Page: Keep everything on one page.
    - No Clarifying Questions: If something is unclear, pick reasonable defaults and ship a complete UI.
      Never ask the user for more info.
    Wrap everything in a single <html>...</html> document with inline <script> tags.

    You can load these libraries from the CDN when they help:
      react       https://cdn.jsdelivr.net/npm/react@18/umd/react.production.min.js
      react-dom   https://cdn.jsdelivr.net/npm/react-dom@18/umd/react-dom.production.min.js
      tailwind    https://cdn.jsdelivr.net/npm/tailwindcss@2.2.19/dist/tailwind.min.css
      three       https://cdn.jsdelivr.net/npm/three@0.160.0/build/three.min.js
      cannon-es   https://cdn.jsdelivr.net/npm/cannon-es@0.20.0/dist/cannon-es.js
      howler      https://cdn.jsdelivr.net/npm/howler@2.2.4/dist/howler.min.js
      hammerjs    https://cdn.jsdelivr.net/npm/hammerjs@2.0.8/hammer.min.js

    OUTPUT FORMAT:
    Return executable HTML code. Do not include markdown explanations outside the code blocks.
    If data is missing, invent sensible sample data and return the finished UI without questions.
    """)


# ── HTML extraction ───────────────────────────────────────────────────────────
# Each strategy returns the document or None. Order matters: first match wins.

_DOC_MARKERS   = ("<!doctype", "<html")
_HTML_FENCE_RE = re.compile(r"```html[ \t]*\n?([\s\S]*?)```", re.IGNORECASE)
_ANY_FENCE_RE  = re.compile(r"```[\w+-]*[ \t]*\n?([\s\S]*?)```")


def _looks_like_document(text: str) -> bool:
    return text.lower().startswith(_DOC_MARKERS)


def fenced_html(text: str) -> Optional[str]:
    """```html ... ``` block."""
    m = _HTML_FENCE_RE.search(text)
    if m and m.group(1).strip():
        return m.group(1).strip()
    return None


def fenced_document(text: str) -> Optional[str]:
    """Any fenced block whose body is a full document."""
    for m in _ANY_FENCE_RE.finditer(text):
        body = m.group(1).strip()
        if _looks_like_document(body):
            return body
    return None


def bare_document(text: str) -> Optional[str]:
    t = text.strip()
    return t if _looks_like_document(t) else None


def embedded_document(text: str) -> Optional[str]:
    """From the first <!DOCTYPE / <html to the last </html>, or to the end."""
    lower  = text.lower()
    starts = [i for i in (lower.find(m) for m in _DOC_MARKERS) if i >= 0]
    if not starts:
        return None
    start = min(starts)
    end   = lower.rfind("</html>")
    if end > start:
        return text[start:end + len("</html>")].strip()
    return text[start:].strip()


def passthrough(text: str) -> Optional[str]:
    return text


EXTRACTION_STRATEGIES: List[Tuple[str, Callable[[str], Optional[str]]]] = [
    ("fenced_html",       fenced_html),
    ("fenced_document",   fenced_document),
    ("bare_document",     bare_document),
    ("embedded_document", embedded_document),
    ("passthrough",       passthrough),
]


def extract_html(text: str) -> str:
    """Best-effort extraction of an HTML document from a free-form reply. Never raises."""
    for name, strategy in EXTRACTION_STRATEGIES:
        found = strategy(text)
        if found is not None:
            log.debug(f"   extract_html → {name}")
            return found
    return text


# ── BuilderAgent ──────────────────────────────────────────────────────────────

class BuilderAgent:
    def __init__(self, client, timeout: float = 300):
        self.client  = client
        self.timeout = timeout

    def generate(self, prompt: str, api_key: str, model: str,
                 system_prompt: Optional[str] = None) -> str:
        """Call the model once and return the extracted HTML document."""
        known     = config.find_model(model)
        reasoning = bool(known and known["reasoning"])

        log.info(f"🏗️  Generating with {model} ({len(prompt)} chars of prompt)")
        try:
            reply = self.client.request(
                system_prompt or SYSTEM_PROMPT, prompt, model, api_key, self.timeout,
                temperature=0.7,
                max_tokens=16000 if reasoning else 4000,
                reasoning=reasoning,
                label="generate",
            )
        except LLMError as e:
            raise GenerationError(f"Generation failed: {e}", e.cause) from e

        html = extract_html(reply)
        log.info(f"   ✅ HTML extracted ({len(html)} chars)")
        return html
