"""Token sampling.

Selects the next token id from next-token logits according to a
generation mode. Stochastic modes draw from a caller supplied, seeded
``torch.Generator`` so a fixed seed reproduces the same reply.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence, Union

import torch

from ..config import GenerationDefaults
from ..errors import SamplingError


@dataclass(frozen=True)
class Deterministic:
    """Always pick the most likely token."""

    def describe(self) -> str:
        return "deterministic"


@dataclass(frozen=True)
class Temperature:
    temperature: float

    def __post_init__(self) -> None:
        if not self.temperature > 0:
            raise ValueError(f"temperature must be positive, got {self.temperature}")

    def describe(self) -> str:
        return f"temperature={self.temperature:g}"


@dataclass(frozen=True)
class TopP:
    p: float
    temperature: float = 1.0

    def __post_init__(self) -> None:
        if not 0 < self.p <= 1:
            raise ValueError(f"top-p must be in (0, 1], got {self.p}")
        if not self.temperature > 0:
            raise ValueError(f"temperature must be positive, got {self.temperature}")

    def describe(self) -> str:
        return f"top-p={self.p:g}, temperature={self.temperature:g}"


@dataclass(frozen=True)
class TopK:
    k: int
    temperature: float = 1.0

    def __post_init__(self) -> None:
        if self.k < 1:
            raise ValueError(f"top-k must be at least 1, got {self.k}")
        if not self.temperature > 0:
            raise ValueError(f"temperature must be positive, got {self.temperature}")

    def describe(self) -> str:
        return f"top-k={self.k}, temperature={self.temperature:g}"


GenerationMode = Union[Deterministic, Temperature, TopP, TopK]


@dataclass(frozen=True)
class ModePreset:
    name: str
    mode: GenerationMode
    repeat_penalty: float
    repeat_last_n: int


PRESETS: dict[str, ModePreset] = {
    "careful": ModePreset("Careful", Deterministic(), 1.2, 64),
    "creative": ModePreset("Creative", TopK(5, 2.0), 1.2, 64),
    "deranged": ModePreset("Deranged", TopK(10, 5.0), 2.0, 128),
}

MODE_NAMES = ["careful", "creative", "deranged", "deterministic", "temperature", "top_p", "top_k"]


def resolve_mode(gen: GenerationDefaults) -> ModePreset:
    """Build the sampling setup described by a generation config section.

    Preset names bring their own repeat penalty; explicit
    ``repeat_penalty``/``repeat_last_n`` values override it.
    """
    name = gen.mode.lower()
    if name in PRESETS:
        preset = PRESETS[name]
    elif name == "deterministic":
        preset = ModePreset("Deterministic", Deterministic(), 1.0, 64)
    elif name == "temperature":
        preset = ModePreset("Temperature", Temperature(gen.temperature), 1.0, 64)
    elif name == "top_p":
        preset = ModePreset("Top-p", TopP(gen.top_p, gen.temperature), 1.0, 64)
    elif name == "top_k":
        preset = ModePreset("Top-k", TopK(gen.top_k, gen.temperature), 1.0, 64)
    else:
        raise ValueError(f"Unknown generation mode: {gen.mode}")

    penalty = preset.repeat_penalty if gen.repeat_penalty is None else gen.repeat_penalty
    last_n = preset.repeat_last_n if gen.repeat_last_n is None else gen.repeat_last_n
    return ModePreset(preset.name, preset.mode, penalty, last_n)


def apply_repeat_penalty(logits: torch.Tensor, penalty: float, recent_tokens: Sequence[int]) -> torch.Tensor:
    """Damp the logits of recently produced tokens."""
    if penalty == 1.0 or not recent_tokens:
        return logits
    logits = logits.clone()
    vocab = logits.shape[-1]
    ids = torch.tensor(sorted({t for t in recent_tokens if 0 <= t < vocab}), dtype=torch.long)
    if ids.numel() == 0:
        return logits
    scores = logits[ids]
    logits[ids] = torch.where(scores < 0, scores * penalty, scores / penalty)
    return logits


def _check_logits(logits: torch.Tensor) -> torch.Tensor:
    if logits.ndim != 1:
        logits = logits.reshape(-1)
    if logits.numel() == 0:
        raise SamplingError("Empty logits")
    logits = logits.float()
    if torch.isnan(logits).any():
        raise SamplingError("Logits contain NaN")
    if not torch.isfinite(logits.max()):
        raise SamplingError("Logits carry no finite maximum")
    return logits


def _probabilities(logits: torch.Tensor, temperature: float) -> torch.Tensor:
    probs = torch.softmax(logits / temperature, dim=-1)
    total = probs.sum()
    if not torch.isfinite(total) or total <= 0:
        raise SamplingError("Probability mass underflowed")
    return probs


def _draw(probs: torch.Tensor, generator: torch.Generator) -> int:
    total = probs.sum()
    if not torch.isfinite(total) or total <= 0 or not torch.isfinite(probs).all():
        raise SamplingError("Probability mass underflowed after filtering")
    return int(torch.multinomial(probs / total, 1, generator=generator).item())


def sample(logits: torch.Tensor, mode: GenerationMode, generator: torch.Generator | None = None) -> int:
    logits = _check_logits(logits)

    if isinstance(mode, Deterministic):
        return int(torch.argmax(logits).item())

    if generator is None:
        raise SamplingError(f"Mode {mode.describe()} requires a seeded random source")

    if isinstance(mode, Temperature):
        return _draw(_probabilities(logits, mode.temperature), generator)

    if isinstance(mode, TopK):
        k = min(mode.k, logits.shape[-1])
        values, indices = torch.topk(logits, k)
        choice = _draw(_probabilities(values, mode.temperature), generator)
        return int(indices[choice].item())

    if isinstance(mode, TopP):
        probs = _probabilities(logits, mode.temperature)
        sorted_probs, indices = torch.sort(probs, descending=True)
        cumulative = torch.cumsum(sorted_probs, dim=-1)
        # Keep the smallest prefix whose mass reaches p, always at least one token.
        keep = int(torch.searchsorted(cumulative, torch.tensor([mode.p])).item()) + 1
        keep = max(1, min(keep, sorted_probs.numel()))
        choice = _draw(sorted_probs[:keep], generator)
        return int(indices[choice].item())

    raise SamplingError(f"Unsupported generation mode: {mode!r}")
