"""Prompt builders."""
from __future__ import annotations

from typing import Any, Sequence


DEFAULT_SYSTEM = "You are a helpful assistant."

# Families whose chat template rejects a system message.
_NO_SYSTEM_FAMILIES = {"mistral"}

_FALLBACK_TEMPLATES = {
    "stablelm": ("<|user|>\n{content}<|endoftext|>\n", "<|assistant|>\n{content}<|endoftext|>\n", "<|assistant|>\n"),
    "mistral": ("[INST] {content} [/INST]", "{content}</s>", ""),
}


def build_chat_messages(
    history: Sequence[tuple[str, str]],
    user_message: str,
    family_hint: str | None = None,
) -> list[dict[str, str]]:
    messages: list[dict[str, str]] = []
    if family_hint not in _NO_SYSTEM_FAMILIES:
        messages.append({"role": "system", "content": DEFAULT_SYSTEM})
    for user, assistant in history:
        messages.append({"role": "user", "content": user})
        messages.append({"role": "assistant", "content": assistant})
    messages.append({"role": "user", "content": user_message})
    return messages


def render_prompt(tokenizer: Any, messages: list[dict[str, str]], family_hint: str | None = None) -> str:
    if getattr(tokenizer, "chat_template", None) and hasattr(tokenizer, "apply_chat_template"):
        return tokenizer.apply_chat_template(messages, tokenize=False, add_generation_prompt=True)

    template = _FALLBACK_TEMPLATES.get(family_hint or "")
    if template is not None:
        user_tpl, assistant_tpl, generation_prompt = template
        parts = []
        for msg in messages:
            if msg.get("role") == "user":
                parts.append(user_tpl.format(content=msg.get("content", "")))
            elif msg.get("role") == "assistant":
                parts.append(assistant_tpl.format(content=msg.get("content", "")))
        parts.append(generation_prompt)
        return "".join(parts)

    lines = []
    for msg in messages:
        role = msg.get("role", "user").capitalize()
        lines.append(f"{role}: {msg.get('content', '')}")
    lines.append("Assistant:")
    return "\n".join(lines)
