"""Events sent from worker threads to the interactive thread."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Union

from ..metrics.instrumentation import GenerationStats


@dataclass(frozen=True)
class TokenFragment:
    request_id: int
    text: str


@dataclass(frozen=True)
class Completed:
    request_id: int
    reply: str
    stats: GenerationStats | None = None


@dataclass(frozen=True)
class Cancelled:
    request_id: int
    partial_reply: str = ""


@dataclass(frozen=True)
class Failed:
    request_id: int
    reason: str


@dataclass(frozen=True)
class LoadStarted:
    model_key: str


@dataclass(frozen=True)
class LoadProgress:
    model_key: str
    fraction: float
    message: str


@dataclass(frozen=True)
class LoadCompleted:
    model_key: str


@dataclass(frozen=True)
class LoadFailed:
    model_key: str
    reason: str


@dataclass(frozen=True)
class Notice:
    message: str


GenerationEvent = Union[TokenFragment, Completed, Cancelled, Failed]
TerminalEvent = Union[Completed, Cancelled, Failed]
SessionEvent = Union[GenerationEvent, LoadStarted, LoadProgress, LoadCompleted, LoadFailed, Notice]

GENERATION_EVENTS = (TokenFragment, Completed, Cancelled, Failed)
