"""Shared fixtures: a scripted model adapter and controller helpers."""
from __future__ import annotations

import time
from typing import Sequence

import pytest
import torch

from coze.errors import EncodingError, InferenceError
from coze.history.store import HistoryStore
from coze.session.controller import SessionController, SessionState

VOCAB = ["<eos>", "world", "!", " again", "<unk>"]
EOS_ID = 0
WORLD_ID = 1
UNK_ID = len(VOCAB) - 1


class StubAdapter:
    """Deterministic stand-in for a loaded model.

    Each forward step returns logits strongly favouring the next id of
    ``script``; once the script runs out it favours end-of-sequence. With
    ``script=None`` it produces ``repeat_id`` forever.
    """

    def __init__(
        self,
        script: Sequence[int] | None = (WORLD_ID,),
        repeat_id: int = WORLD_ID,
        delay: float = 0.0,
        fail_at: int | None = None,
        fail_encode: bool = False,
    ) -> None:
        self.script = list(script) if script is not None else None
        self.repeat_id = repeat_id
        self.delay = delay
        self.fail_at = fail_at
        self.fail_encode = fail_encode
        self.steps = 0
        self.forward_calls = 0
        self.last_turns: tuple = ()
        self.unloaded = False

    def format_prompt(self, prompt: str, turns) -> str:
        self.last_turns = tuple(turns)
        return prompt

    def encode(self, text: str) -> list[int]:
        if self.fail_encode:
            raise EncodingError("malformed input")
        return [UNK_ID] * max(1, len(text.split()))

    def decode(self, token_ids: Sequence[int]) -> str:
        return "".join(VOCAB[i] for i in token_ids)

    def forward_step(self, tokens: Sequence[int], start_pos: int) -> torch.Tensor:
        step = self.steps
        self.steps += 1
        self.forward_calls += 1
        if self.delay:
            time.sleep(self.delay)
        if self.fail_at is not None and step == self.fail_at:
            raise InferenceError("backend exploded")
        if self.script is None:
            token = self.repeat_id
        else:
            token = self.script[step] if step < len(self.script) else EOS_ID
        logits = torch.full((len(VOCAB),), -10.0)
        logits[token] = 10.0
        return logits

    def end_of_sequence_id(self) -> int:
        return EOS_ID

    def reset(self) -> None:
        self.steps = 0

    def unload(self) -> None:
        self.unloaded = True


def drain(controller: SessionController, timeout: float = 5.0) -> list:
    """Poll until the controller leaves GENERATING/LOADING, returning every event."""
    events: list = []
    deadline = time.monotonic() + timeout
    while True:
        events.extend(controller.poll_events())
        if controller.state not in (SessionState.GENERATING, SessionState.LOADING):
            return events
        if time.monotonic() > deadline:
            raise AssertionError(f"controller stuck in {controller.state}")
        time.sleep(0.005)


@pytest.fixture
def history(tmp_path) -> HistoryStore:
    return HistoryStore(str(tmp_path / "history.jsonl"))


@pytest.fixture
def stub() -> StubAdapter:
    return StubAdapter()


@pytest.fixture
def controller(history, stub):
    ctl = SessionController(history, adapter=stub, model_key="stub")
    yield ctl
    ctl.shutdown(timeout=5.0)
