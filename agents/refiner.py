import logging
from agents.errors import ExpansionError
from agents.llm import LLMError

log = logging.getLogger("refiner")

# ── LLM system prompt ─────────────────────────────────────────────────────────
SYSTEM_PROMPT = """\
You are a creative game/app designer. Your task is to expand a brief user idea into a \
detailed, implementation-ready specification for a mobile mini-app or game.

INPUT: A short idea (1-2 sentences)

OUTPUT: A structured specification containing:

1. **CONCEPT** (2-3 sentences)
   - Core gameplay/functionality loop
   - What makes it engaging

2. **MECHANICS**
   - Primary user interactions (tap, swipe, hold, drag)
   - Game rules or app logic flow
   - Win/lose conditions OR success states

3. **VISUAL STYLE**
   - Color palette (specific hex codes or descriptive theme)
   - UI elements needed (buttons, counters, progress bars, etc.)
   - Animation suggestions (transitions, feedback effects)

4. **FEATURES**
   - Core features (must-have for MVP)
   - Bonus features (nice-to-have)
   - Sound/haptic feedback triggers

5. **USER FLOW**
   - Start screen → main interaction → end state
   - How user progresses or loops back

GUIDELINES:
- Keep scope realistic for a single-page HTML app
- Prioritize touch-friendly, mobile-first interactions
- Make it instantly playable without tutorials
- If the idea is vague, pick the most fun/engaging interpretation
- Be specific enough that a developer could build it without questions
- Target 320-420px viewport width

Respond ONLY with the structured specification. No preamble."""


class RefinerAgent:
    """Turns a terse idea into a build specification with one LLM call."""

    def __init__(self, client, model: str, timeout: float = 120):
        self.client  = client
        self.model   = model
        self.timeout = timeout

    def expand(self, raw_idea: str, api_key: str) -> str:
        idea = (raw_idea or "").strip()
        if not idea:
            raise ValueError("Idea must not be empty")

        log.info(f"🧠 Expanding idea with {self.model}: {idea[:80]}")
        try:
            spec = self.client.request(
                SYSTEM_PROMPT, idea, self.model, api_key, self.timeout,
                temperature=0.8, max_tokens=2000, label="expand",
            )
        except LLMError as e:
            raise ExpansionError(f"Expansion failed: {e}", e.cause) from e

        log.info(f"   ✅ Expanded spec: {len(spec)} chars")
        return spec
