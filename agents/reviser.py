"""
Fix and edit passes over an existing artifact.

Both re-run the builder with the full current document plus either the
diagnostics digest captured from the running page or a free-form
instruction. The result is returned, never persisted here.
"""
import logging, textwrap

log = logging.getLogger("reviser")

FIX_SYSTEM_PROMPT = textwrap.dedent("""\
    You are an expert Frontend Engineer and debugger. You will receive HTML code that contains
    JavaScript/runtime errors, along with the error messages.

    Your task is to FIX the errors while preserving the original functionality and design.

    IMPORTANT RULES:
    1. Fix ONLY the specific errors mentioned - do not refactor unrelated code
    2. Preserve all existing functionality and visual design
    3. If an error is about undefined variables/functions, add proper definitions or imports
    4. If an error is about syntax, fix the syntax error
    5. If an error is about missing resources, either add a fallback or remove the broken reference
    6. Return the COMPLETE fixed HTML document
    7. Do not include markdown explanations - return ONLY the HTML code

    COMMON FIXES:
    - "X is not defined" → Add missing import/definition or use a fallback
    - "Cannot read property of undefined" → Add null checks or initialize the variable
    - "Unexpected token" → Fix the syntax error
    - "Failed to load resource" → Remove or fix the broken resource URL

    OUTPUT: Return the complete fixed HTML wrapped in <html>...</html>
    """)

EDIT_SYSTEM_PROMPT = textwrap.dedent("""\
    You are an expert Frontend Engineer. You will receive the current HTML code of a mini app/game
    and a user's edit request.

    Your task is to modify the HTML according to the user's request while preserving the overall
    structure and functionality.

    IMPORTANT:
    - Keep all existing functionality unless explicitly asked to remove it
    - Maintain the same visual style unless asked to change it
    - Return ONLY the complete modified HTML code
    - Do not include markdown explanations outside the code
    - Make sure the result is a complete, working HTML document

    OUTPUT: Return the full modified HTML wrapped in <html>...</html>
    """)


def build_fix_prompt(current: str, errors: str) -> str:
    return (
        f"## Errors to Fix:\n{errors}\n\n"
        f"## Current HTML Code (with errors):\n```html\n{current}\n```\n\n"
        f"Please fix all the errors listed above and return the corrected HTML code."
    )


def build_edit_prompt(current: str, instruction: str) -> str:
    return (
        f"## User's Edit Request:\n{instruction}\n\n"
        f"## Current HTML Code:\n```html\n{current}\n```\n\n"
        f"Please modify the HTML according to the user's request above."
    )


class ReviserAgent:
    def __init__(self, builder):
        self.builder = builder

    def fix(self, current: str, errors: str, api_key: str, model: str) -> str:
        if not isinstance(errors, str) or not errors.strip():
            raise ValueError("Error description is required")
        log.info(f"🔧 Fix pass with {model}")
        log.info(f"   Errors:\n{errors[:500]}")
        return self.builder.generate(build_fix_prompt(current, errors), api_key, model,
                                     system_prompt=FIX_SYSTEM_PROMPT)

    def edit(self, current: str, instruction: str, api_key: str, model: str) -> str:
        if not isinstance(instruction, str) or not instruction.strip():
            raise ValueError("Edit prompt is required")
        log.info(f"✏️  Edit pass with {model}: {instruction[:80]}")
        return self.builder.generate(build_edit_prompt(current, instruction), api_key, model,
                                     system_prompt=EDIT_SYSTEM_PROMPT)
