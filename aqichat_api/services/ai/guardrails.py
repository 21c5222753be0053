"""
Input Guardrails and Persona for the AQI Assistant

Layer 1: Size caps on the user message and resupplied history
Layer 2: Domain-restricted system persona (the model decides tool use)
"""

from typing import Any, Dict, List

from aqichat_core.config import settings


SOURCE_CITATION = "Source: OpenAQ via Esri Living Atlas (latest hour)"

# Only these roles may be resupplied by the client
HISTORY_ROLES = ("user", "assistant")


def get_system_prompt() -> str:
    """
    Layer 2: AQI-only persona

    Returns:
        System prompt for every completion request
    """
    return f"""
You are "AQI Assistant", an air-quality (PM2.5/AQI) specialist embedded in a map dashboard.
Answer ONLY air-quality questions. Be concise (1–4 sentences), factual, and avoid made-up numbers.
Use the available tools to fetch live PM2.5 when helpful.
Include: "{SOURCE_CITATION}" when citing live values.
If a tool returns a 'centerOn' action, mention it briefly; the UI may handle it.
""".strip()


def clip_message(text: Any, max_chars: int = None) -> str:
    """Layer 1: cap a user message and trim surrounding whitespace"""
    max_chars = max_chars or settings.chat_max_chars
    return str(text or "")[:max_chars].strip()


def sanitize_history(history: Any, max_turns: int = None, max_chars: int = None) -> List[Dict[str, str]]:
    """
    Layer 1: keep only recent user/assistant turns with string content

    Args:
        history: Client-supplied history (any JSON value)
        max_turns: Most recent entries to keep
        max_chars: Per-message character cap

    Returns:
        List of {"role", "content"} messages, oldest first
    """
    max_turns = max_turns or settings.chat_max_turns
    max_chars = max_chars or settings.chat_max_chars

    if not isinstance(history, list):
        return []

    turns = [
        {"role": m["role"], "content": m["content"][:max_chars]}
        for m in history
        if isinstance(m, dict)
        and m.get("role") in HISTORY_ROLES
        and isinstance(m.get("content"), str)
    ]
    return turns[-max_turns:]
