"""Model adapter protocol and dataclasses."""
from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Literal, Protocol, Sequence

if TYPE_CHECKING:
    import torch


@dataclass
class DeviceSpec:
    kind: Literal["cuda", "cpu"]
    gpu_index: int | None


class ModelAdapter(Protocol):
    """Opaque capability over a loaded model and its tokenizer.

    Implementations hold per-session inference state and are not safe to
    drive from two threads at once.
    """

    def format_prompt(self, prompt: str, turns: Sequence[tuple[str, str]]) -> str:
        ...

    def encode(self, text: str) -> list[int]:
        ...

    def decode(self, token_ids: Sequence[int]) -> str:
        ...

    def forward_step(self, tokens: Sequence[int], start_pos: int) -> "torch.Tensor":
        """Return next-token logits; ``tokens[start_pos:]`` is the unseen suffix."""
        ...

    def end_of_sequence_id(self) -> int:
        ...

    def reset(self) -> None:
        ...

    def unload(self) -> None:
        ...
