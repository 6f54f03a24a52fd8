"""Peak memory samplers running on daemon threads."""
from __future__ import annotations

import logging
import threading

import psutil

try:
    import pynvml  # provided by nvidia-ml-py
except Exception:  # pragma: no cover
    pynvml = None

logger = logging.getLogger(__name__)

_MB = 1024 * 1024


class PeakSampler:
    """Polls ``_read()`` every interval and remembers the largest value."""

    def __init__(self, interval_ms: int) -> None:
        self._interval = max(interval_ms, 1) / 1000.0
        self._peak = 0
        self._stopped = threading.Event()
        self._thread: threading.Thread | None = None

    def _read(self) -> int:
        raise NotImplementedError

    def _sample(self) -> None:
        value = self._read()
        if value > self._peak:
            self._peak = value

    def start(self) -> None:
        self._stopped.clear()
        self._sample()
        self._thread = threading.Thread(target=self._run, name=type(self).__name__, daemon=True)
        self._thread.start()

    def stop(self) -> float | None:
        self._stopped.set()
        if self._thread:
            self._thread.join(timeout=1.0)
            self._thread = None
        return self._peak / _MB

    def _run(self) -> None:
        while not self._stopped.wait(self._interval):
            self._sample()


class RamMonitor(PeakSampler):
    def __init__(self, interval_ms: int) -> None:
        super().__init__(interval_ms)
        self._proc = psutil.Process()

    def _read(self) -> int:
        return self._proc.memory_info().rss


class VramMonitor(PeakSampler):
    """GPU memory through NVML; inert when NVML is missing or fails."""

    def __init__(self, interval_ms: int, gpu_index: int | None) -> None:
        super().__init__(interval_ms)
        self._gpu_index = gpu_index if gpu_index is not None else 0
        self._enabled = pynvml is not None and gpu_index is not None
        self._handle = None

    def _read(self) -> int:
        try:
            return pynvml.nvmlDeviceGetMemoryInfo(self._handle).used
        except Exception:
            return 0

    def start(self) -> None:
        if not self._enabled:
            return
        try:
            pynvml.nvmlInit()
            self._handle = pynvml.nvmlDeviceGetHandleByIndex(self._gpu_index)
        except Exception:
            logger.debug("NVML unavailable, VRAM will not be sampled", exc_info=True)
            self._enabled = False
            return
        super().start()

    def stop(self) -> float | None:
        if not self._enabled:
            return None
        peak = super().stop()
        try:
            pynvml.nvmlShutdown()
        except Exception:
            logger.debug("nvmlShutdown failed", exc_info=True)
        return peak
