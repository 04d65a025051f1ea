import os
from pathlib import Path

BASE_DIR = Path(__file__).parent

# ── Directories ───────────────────────────────────────────────────────────────
DATA_DIR  = Path(os.environ.get("MINIFORGE_DATA_DIR", BASE_DIR / "data"))
IDEAS_DIR = Path(os.environ.get("MINIFORGE_IDEAS_DIR", BASE_DIR / "ideas"))
LOGS_DIR  = Path(os.environ.get("MINIFORGE_LOGS_DIR", BASE_DIR / "logs"))

# ── Text generation ───────────────────────────────────────────────────────────
OPENROUTER_URL     = os.environ.get("OPENROUTER_URL", "https://openrouter.ai/api/v1")
OPENROUTER_API_KEY = os.environ.get("OPENROUTER_API_KEY") or os.environ.get("OPENROUTER_API")
APP_URL            = os.environ.get("APP_URL", "http://127.0.0.1:7824")
APP_TITLE          = "MiniForge"

FREE_MODEL       = "x-ai/grok-4.1-fast:free"
DEFAULT_MODEL    = os.environ.get("MINIFORGE_MODEL", FREE_MODEL)
EXPAND_MODEL     = FREE_MODEL
EXPAND_TIMEOUT   = 120   # seconds
GENERATE_TIMEOUT = 300   # seconds

MAX_WORKERS     = int(os.environ.get("MINIFORGE_WORKERS", "4"))
PREVIEW_TIMEOUT = 15     # seconds the headless tester waits for "ready"

# ── Servers ───────────────────────────────────────────────────────────────────
UI_PORT = int(os.environ.get("MINIFORGE_UI_PORT", "7824"))
WS_PORT = int(os.environ.get("MINIFORGE_WS_PORT", "7825"))

# Known models, cheapest first. Unknown ids are still accepted and registered.
KNOWN_MODELS = [
    {"id": "x-ai/grok-4.1-fast:free",               "name": "xAI: Grok 4.1 Fast (free)",
     "description": "Free, 2M context, great for testing",  "reasoning": True},
    {"id": "google/gemini-2.0-flash-exp:free",      "name": "Google: Gemini 2.0 Flash (free)",
     "description": "Free, fast, 1M context",               "reasoning": True},
    {"id": "meta-llama/llama-3.3-70b-instruct:free", "name": "Meta: Llama 3.3 70B (free)",
     "description": "Free, powerful open model",            "reasoning": False},
    {"id": "qwen/qwen3-235b-a22b:free",             "name": "Qwen: Qwen3 235B (free)",
     "description": "Free, massive 235B model",             "reasoning": True},
    {"id": "deepseek/deepseek-v3.1-terminus",       "name": "DeepSeek: V3.1 Terminus",
     "description": "Very cheap, excellent reasoning",      "reasoning": True},
    {"id": "anthropic/claude-haiku-4.5",            "name": "Anthropic: Claude Haiku 4.5",
     "description": "Fast and cheap, good quality",         "reasoning": True},
    {"id": "anthropic/claude-sonnet-4.5",           "name": "Anthropic: Claude Sonnet 4.5",
     "description": "Balanced speed and capability",        "reasoning": True},
    {"id": "openai/gpt-5.1",                        "name": "OpenAI: GPT-5.1",
     "description": "Frontier model, adaptive reasoning",   "reasoning": True},
    {"id": "google/gemini-3-pro-preview",           "name": "Google: Gemini 3 Pro",
     "description": "1M context, multimodal reasoning",     "reasoning": True},
]


def find_model(model_id: str):
    return next((m for m in KNOWN_MODELS if m["id"] == model_id), None)


def is_free_model(model_id: str) -> bool:
    return model_id.endswith(":free")
