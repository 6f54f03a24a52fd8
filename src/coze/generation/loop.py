"""Autoregressive generation loop."""
from __future__ import annotations

import enum
import logging
import threading
from dataclasses import dataclass, field
from typing import Iterator

import torch

from ..engines.base import ModelAdapter
from .sampler import Deterministic, GenerationMode, apply_repeat_penalty, sample
from .token_stream import TokenStream

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GenerationRequest:
    request_id: int
    prompt: str
    mode: GenerationMode = field(default_factory=Deterministic)
    max_new_tokens: int = 2048
    cancel: threading.Event = field(default_factory=threading.Event, compare=False, repr=False)
    seed: int = 0
    repeat_penalty: float = 1.0
    repeat_last_n: int = 64
    turns: tuple[tuple[str, str], ...] = ()


class StopReason(enum.Enum):
    EOS = "eos"
    BUDGET = "budget"
    CANCELLED = "cancelled"


class GenerationLoop:
    """Lazy, single-use sequence of reply fragments.

    Iterating drives the model one step at a time. The cancellation flag is
    checked before every step, so a cancel is observed within one forward
    pass. Errors from the adapter or sampler propagate to the caller;
    fragments already yielded stand.
    """

    def __init__(self, request: GenerationRequest, adapter: ModelAdapter) -> None:
        self.request = request
        self.adapter = adapter
        self.stop_reason: StopReason | None = None
        self.prompt_tokens = 0
        self.generated_tokens = 0
        self._fragments: list[str] = []
        self._started = False

    @property
    def reply(self) -> str:
        return "".join(self._fragments)

    def __iter__(self) -> Iterator[str]:
        if self._started:
            raise RuntimeError("GenerationLoop cannot be restarted")
        self._started = True
        return self._run()

    def _emit(self, text: str | None) -> Iterator[str]:
        if text:
            self._fragments.append(text)
            yield text

    def _run(self) -> Iterator[str]:
        request = self.request
        adapter = self.adapter

        adapter.reset()
        rendered = adapter.format_prompt(request.prompt, request.turns)
        tokens = adapter.encode(rendered)
        self.prompt_tokens = len(tokens)
        eos = adapter.end_of_sequence_id()
        stream = TokenStream(adapter.decode)
        generator = torch.Generator().manual_seed(request.seed)

        logger.debug(
            "Request %d: %d prompt tokens, budget %d, %s",
            request.request_id,
            len(tokens),
            request.max_new_tokens,
            request.mode.describe(),
        )

        start_pos = 0
        for _ in range(request.max_new_tokens):
            if request.cancel.is_set():
                self.stop_reason = StopReason.CANCELLED
                return

            logits = adapter.forward_step(tokens, start_pos)
            start_pos = len(tokens)
            if request.repeat_penalty != 1.0:
                recent = tokens[-request.repeat_last_n:] if request.repeat_last_n > 0 else []
                logits = apply_repeat_penalty(logits, request.repeat_penalty, recent)

            token = sample(logits, request.mode, generator)
            if token == eos:
                self.stop_reason = StopReason.EOS
                break

            tokens.append(token)
            self.generated_tokens += 1
            yield from self._emit(stream.next_token(token))
        else:
            self.stop_reason = StopReason.BUDGET

        yield from self._emit(stream.decode_rest())
