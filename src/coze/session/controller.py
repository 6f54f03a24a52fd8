"""Generation session controller.

Owns the loaded model adapter and at most one worker thread at a time.
Workers report through an event queue which the interactive thread drains
with :meth:`SessionController.poll_events` once per UI tick; every state
transition and every history write happens during that drain.
"""
from __future__ import annotations

import enum
import logging
import queue
import random
import threading
import time
from typing import Callable

from ..config import GenerationDefaults, ModelSpec
from ..engines.base import ModelAdapter
from ..errors import GenerationError, HistoryWriteError, LoadError
from ..generation.loop import GenerationLoop, GenerationRequest, StopReason
from ..generation.sampler import GenerationMode, ModePreset, resolve_mode
from ..history.store import HistoryStore
from ..metrics.instrumentation import GenerationStats, Instrumentation
from .events import (
    GENERATION_EVENTS,
    Cancelled,
    Completed,
    Failed,
    LoadCompleted,
    LoadFailed,
    LoadProgress,
    LoadStarted,
    Notice,
    SessionEvent,
    TerminalEvent,
    TokenFragment,
)

logger = logging.getLogger(__name__)

ProgressFn = Callable[[float, str], None]
ModelLoader = Callable[[ModelSpec, ProgressFn], ModelAdapter]


class SessionState(enum.Enum):
    IDLE = "idle"
    LOADING = "loading"
    GENERATING = "generating"
    DONE = "done"
    CANCELLED = "cancelled"
    ERRORED = "errored"


FINISHED_STATES = (SessionState.DONE, SessionState.CANCELLED, SessionState.ERRORED)


class SessionController:
    def __init__(
        self,
        history: HistoryStore,
        loader: ModelLoader | None = None,
        defaults: GenerationDefaults | None = None,
        instrumentation: Instrumentation | None = None,
        history_turns: int = 0,
        stall_timeout_s: float | None = None,
        adapter: ModelAdapter | None = None,
        model_key: str | None = None,
    ) -> None:
        self.history = history
        self._loader = loader
        self._defaults = defaults or GenerationDefaults()
        self._preset = resolve_mode(self._defaults)
        self._instrumentation = instrumentation or Instrumentation(50, None, enabled=False)
        self._history_turns = max(0, history_turns)
        self._stall_timeout_s = stall_timeout_s if stall_timeout_s and stall_timeout_s > 0 else None

        self._events: queue.SimpleQueue = queue.SimpleQueue()
        self._state = SessionState.IDLE
        self._adapter = adapter
        self._model_key = model_key
        self._model_lock = threading.Lock()
        self._poll_lock = threading.Lock()
        self._worker: threading.Thread | None = None

        self._request: GenerationRequest | None = None
        self._request_model: str | None = None
        self._terminal_seen = True
        self._loading_key: str | None = None
        self._next_request_id = 0
        self._last_event_at = time.monotonic()

        self.last_stats: GenerationStats | None = None
        self.last_error: str | None = None

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def model_key(self) -> str | None:
        return self._model_key

    @property
    def current_request(self) -> GenerationRequest | None:
        return self._request

    # -- user actions -------------------------------------------------

    def _reject(self, message: str) -> None:
        logger.info("Rejected: %s", message)
        self._events.put(Notice(message))
        return None

    def _leave_finished_state(self) -> None:
        if self._state in FINISHED_STATES:
            self._state = SessionState.IDLE

    def dismiss(self) -> None:
        self._leave_finished_state()

    def load_model(self, spec: ModelSpec) -> bool:
        if self._state is SessionState.GENERATING:
            self._reject("Stop the current reply before loading another model")
            return False
        if self._state is SessionState.LOADING:
            self._reject(f"Already loading {self._loading_key}")
            return False
        if self._loader is None:
            self._reject("No model loader configured")
            return False

        self._leave_finished_state()
        self._state = SessionState.LOADING
        self._loading_key = spec.key
        self._last_event_at = time.monotonic()
        self._worker = threading.Thread(
            target=self._load,
            args=(spec,),
            name=f"coze-load-{spec.key}",
            daemon=True,
        )
        self._worker.start()
        return True

    def submit(
        self,
        prompt: str,
        mode: GenerationMode | None = None,
        max_new_tokens: int | None = None,
        seed: int | None = None,
        preset: ModePreset | None = None,
    ) -> int | None:
        """Start generating a reply on a worker thread; returns the request id.

        ``preset`` carries the mode together with its repeat penalty and
        defaults to the configured one; an explicit ``mode`` overrides only
        the sampling mode.

        Returns ``None`` (and queues a :class:`Notice`) when the prompt is
        empty, no model is loaded, or another load or generation is running.
        """
        prompt = prompt.strip()
        if not prompt:
            return self._reject("Prompt is empty")
        if self._state is SessionState.GENERATING:
            return self._reject("A reply is still being generated, press Stop first")
        if self._state is SessionState.LOADING:
            return self._reject("Wait for the model to finish loading")
        if self._adapter is None:
            return self._reject("No model loaded")

        self._leave_finished_state()

        preset = preset or self._preset
        if seed is None:
            seed = self._defaults.seed if self._defaults.seed is not None else random.randrange(2**63)
        turns: tuple[tuple[str, str], ...] = ()
        if self._history_turns:
            recent = self.history.entries()[-self._history_turns:]
            turns = tuple((entry.prompt, entry.reply) for entry in recent)

        self._next_request_id += 1
        request = GenerationRequest(
            request_id=self._next_request_id,
            prompt=prompt,
            mode=mode if mode is not None else preset.mode,
            max_new_tokens=self._defaults.max_new_tokens if max_new_tokens is None else max(0, max_new_tokens),
            seed=seed,
            repeat_penalty=preset.repeat_penalty,
            repeat_last_n=preset.repeat_last_n,
            turns=turns,
        )
        self._request = request
        self._request_model = self._model_key
        self._terminal_seen = False
        self._state = SessionState.GENERATING
        self._last_event_at = time.monotonic()

        self._worker = threading.Thread(
            target=self._generate,
            args=(request, self._adapter),
            name=f"coze-generate-{request.request_id}",
            daemon=True,
        )
        self._worker.start()
        logger.info("Request %d submitted (%s)", request.request_id, request.mode.describe())
        return request.request_id

    def cancel(self) -> bool:
        """Ask the running generation to stop; ``True`` if the flag was newly set."""
        request = self._request
        if self._state is not SessionState.GENERATING or request is None:
            return False
        if request.cancel.is_set():
            return False
        request.cancel.set()
        logger.info("Request %d cancellation requested", request.request_id)
        return True

    def join(self, timeout: float | None = None) -> bool:
        worker = self._worker
        if worker is None:
            return True
        worker.join(timeout)
        return not worker.is_alive()

    def shutdown(self, timeout: float | None = 5.0) -> None:
        self.cancel()
        if not self.join(timeout):
            logger.warning("Worker thread did not stop within %s seconds", timeout)
            return
        with self._model_lock:
            adapter, self._adapter = self._adapter, None
            self._model_key = None
        if adapter is not None:
            adapter.unload()

    # -- worker side --------------------------------------------------

    def _load(self, spec: ModelSpec) -> None:
        self._events.put(LoadStarted(spec.key))
        result: SessionEvent | None = None

        def progress(fraction: float, message: str) -> None:
            self._events.put(LoadProgress(spec.key, fraction, message))

        try:
            adapter = self._loader(spec, progress)
            with self._model_lock:
                previous, self._adapter = self._adapter, adapter
                self._model_key = spec.key
            if previous is not None and previous is not adapter:
                previous.unload()
            logger.info("Model %s loaded", spec.key)
            result = LoadCompleted(spec.key)
        except LoadError as exc:
            logger.warning("Loading %s failed: %s", spec.key, exc)
            result = LoadFailed(spec.key, str(exc))
        except Exception as exc:
            logger.exception("Unexpected error loading %s", spec.key)
            result = LoadFailed(spec.key, f"Unexpected error: {exc}")
        finally:
            if result is None:
                result = LoadFailed(spec.key, "Model loading was interrupted")
            self._events.put(result)

    def _generate(self, request: GenerationRequest, adapter: ModelAdapter) -> None:
        terminal: TerminalEvent | None = None
        try:
            with self._model_lock:
                terminal = self._run_loop(request, adapter)
        except GenerationError as exc:
            logger.warning("Request %d failed: %s", request.request_id, exc)
            terminal = Failed(request.request_id, str(exc))
        except Exception as exc:
            logger.exception("Request %d crashed", request.request_id)
            terminal = Failed(request.request_id, f"Unexpected error: {exc}")
        finally:
            # Sent after the model lock is released.
            if terminal is None:
                terminal = Failed(request.request_id, "Generation was interrupted")
            self._events.put(terminal)

    def _run_loop(self, request: GenerationRequest, adapter: ModelAdapter) -> TerminalEvent:
        loop = GenerationLoop(request, adapter)
        with self._instrumentation.measure() as measurement:
            try:
                for fragment in loop:
                    self._events.put(TokenFragment(request.request_id, fragment))
            finally:
                measurement.prompt_tokens = loop.prompt_tokens
                measurement.generated_tokens = loop.generated_tokens

        if loop.stop_reason is StopReason.CANCELLED:
            logger.info("Request %d cancelled after %d tokens", request.request_id, loop.generated_tokens)
            return Cancelled(request.request_id, loop.reply)
        logger.info(
            "Request %d completed (%s, %d tokens)",
            request.request_id,
            loop.stop_reason.value if loop.stop_reason else "done",
            loop.generated_tokens,
        )
        return Completed(request.request_id, loop.reply, measurement.stats())

    # -- interactive side ---------------------------------------------

    def poll_events(self) -> list[SessionEvent]:
        """Drain pending events without blocking, applying their transitions.

        Safe to call from several threads; each event is returned to exactly
        one caller, in arrival order.
        """
        with self._poll_lock:
            events = self._drain()
            events.extend(self._watchdog())
            return events

    def _drain(self) -> list[SessionEvent]:
        events: list[SessionEvent] = []
        while True:
            try:
                event = self._events.get_nowait()
            except queue.Empty:
                break
            if self._is_stale(event):
                logger.debug("Dropping stale event %r", event)
                continue
            events.append(event)
            events.extend(self._apply(event))
        return events

    def _is_stale(self, event: SessionEvent) -> bool:
        if not isinstance(event, GENERATION_EVENTS):
            return False
        request = self._request
        return request is None or event.request_id != request.request_id or self._terminal_seen

    def _apply(self, event: SessionEvent) -> list[SessionEvent]:
        if isinstance(event, (TokenFragment, LoadStarted, LoadProgress)):
            self._last_event_at = time.monotonic()
        elif isinstance(event, Completed):
            self._terminal_seen = True
            self._state = SessionState.DONE
            self.last_stats = event.stats
            return self._record(event)
        elif isinstance(event, Cancelled):
            self._terminal_seen = True
            self._state = SessionState.CANCELLED
        elif isinstance(event, Failed):
            self._terminal_seen = True
            self._state = SessionState.ERRORED
            self.last_error = event.reason
        elif isinstance(event, LoadCompleted):
            self._state = SessionState.IDLE
            self._loading_key = None
        elif isinstance(event, LoadFailed):
            self._state = SessionState.IDLE
            self._loading_key = None
            self.last_error = event.reason
        return []

    def _record(self, event: Completed) -> list[SessionEvent]:
        request = self._request
        if request is None:
            return []
        try:
            self.history.append(request.prompt, event.reply, self._request_model)
        except HistoryWriteError as exc:
            self.last_error = str(exc)
            return [Notice(f"Reply was not saved to history: {exc}")]
        return []

    def _watchdog(self) -> list[SessionEvent]:
        if self._state not in (SessionState.GENERATING, SessionState.LOADING):
            return []

        worker = self._worker
        if worker is not None and not worker.is_alive():
            # The worker may have queued its last event after the drain above.
            events = self._drain()
            if self._state in (SessionState.GENERATING, SessionState.LOADING):
                events.extend(self._abandon("Worker thread exited without a result"))
            return events

        # Downloads report no progress, so only generation is timed.
        if self._state is SessionState.GENERATING and self._stall_timeout_s is not None:
            idle = time.monotonic() - self._last_event_at
            if idle > self._stall_timeout_s:
                return self._abandon(f"No progress for {idle:.0f} seconds")
        return []

    def _abandon(self, reason: str) -> list[SessionEvent]:
        logger.error("Abandoning %s: %s", self._state.value, reason)
        if self._state is SessionState.LOADING:
            event: SessionEvent = LoadFailed(self._loading_key or "", reason)
        else:
            request = self._request
            request.cancel.set()
            event = Failed(request.request_id, reason)
        return [event] + self._apply(event)
