"""Instrumentation around a generation run."""
from __future__ import annotations

import time
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Iterator

from .monitors import RamMonitor, VramMonitor


@dataclass(frozen=True)
class GenerationStats:
    prompt_tokens: int
    generated_tokens: int
    decode_time_s: float
    tokens_per_s: float
    ram_peak_mb: float | None
    vram_peak_mb: float | None


@dataclass
class Measurement:
    prompt_tokens: int = 0
    generated_tokens: int = 0
    decode_time_s: float = 0.0
    ram_peak_mb: float | None = None
    vram_peak_mb: float | None = None

    def stats(self) -> GenerationStats:
        tokens_per_s = 0.0
        if self.decode_time_s > 0:
            tokens_per_s = self.generated_tokens / self.decode_time_s
        return GenerationStats(
            prompt_tokens=self.prompt_tokens,
            generated_tokens=self.generated_tokens,
            decode_time_s=self.decode_time_s,
            tokens_per_s=tokens_per_s,
            ram_peak_mb=self.ram_peak_mb,
            vram_peak_mb=self.vram_peak_mb,
        )


class Instrumentation:
    def __init__(self, sampling_interval_ms: int, gpu_index: int | None, enabled: bool = True) -> None:
        self._interval = sampling_interval_ms
        self._gpu_index = gpu_index
        self._enabled = enabled

    @contextmanager
    def measure(self) -> Iterator[Measurement]:
        """Time the enclosed block and sample memory peaks while it runs.

        The caller fills in token counts on the yielded measurement.
        """
        measurement = Measurement()
        ram = vram = None
        if self._enabled:
            ram = RamMonitor(self._interval)
            vram = VramMonitor(self._interval, self._gpu_index)
            ram.start()
            vram.start()
        start = time.perf_counter()
        try:
            yield measurement
        finally:
            measurement.decode_time_s = time.perf_counter() - start
            if ram is not None:
                measurement.ram_peak_mb = ram.stop()
            if vram is not None:
                measurement.vram_peak_mb = vram.stop()


def format_stats(stats: GenerationStats | None) -> str:
    if stats is None:
        return "No metrics yet."
    ram = f"{stats.ram_peak_mb:.2f}" if stats.ram_peak_mb is not None else "n/a"
    vram = f"{stats.vram_peak_mb:.2f}" if stats.vram_peak_mb is not None else "n/a"
    return (
        f"**tokens/s:** {stats.tokens_per_s:.2f}\n"
        f"**prompt_tokens:** {stats.prompt_tokens}\n"
        f"**generated_tokens:** {stats.generated_tokens}\n"
        f"**ram_peak_mb:** {ram}\n"
        f"**vram_peak_mb:** {vram}\n"
        f"**decode_time_s:** {stats.decode_time_s:.4f}"
    )
