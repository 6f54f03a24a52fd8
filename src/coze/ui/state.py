"""UI session state."""
from __future__ import annotations

import threading
from dataclasses import dataclass, field

from ..history.fuzzy import FuzzyMatcher
from ..history.navigator import HistoryNavigator
from ..session.controller import SessionController
from ..session.events import (
    Cancelled,
    Completed,
    Failed,
    LoadCompleted,
    LoadFailed,
    LoadProgress,
    LoadStarted,
    Notice,
    SessionEvent,
    TokenFragment,
)


@dataclass
class AppState:
    controller: SessionController
    matcher: FuzzyMatcher
    navigator: HistoryNavigator = field(default_factory=HistoryNavigator)
    reply: str = ""
    status: str = "No model loaded."
    notices: list[str] = field(default_factory=list)
    _lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False, compare=False)

    def poll(self) -> bool:
        """Drain the controller and fold the events in, one handler at a time."""
        with self._lock:
            return self.apply(self.controller.poll_events())

    def apply(self, events: list[SessionEvent]) -> bool:
        """Fold drained events into the view; ``True`` once a terminal event is seen."""
        finished = False
        for event in events:
            if isinstance(event, TokenFragment):
                self.reply += event.text
            elif isinstance(event, Completed):
                self.reply = event.reply
                finished = True
            elif isinstance(event, Cancelled):
                self.reply = event.partial_reply + " [stopped]"
                finished = True
            elif isinstance(event, Failed):
                self.reply = f"{self.reply}\n[error] {event.reason}".lstrip()
                finished = True
            elif isinstance(event, LoadStarted):
                self.status = f"Loading {event.model_key}..."
            elif isinstance(event, LoadProgress):
                self.status = f"{event.message} ({event.fraction:.0%})"
            elif isinstance(event, LoadCompleted):
                self.status = f"Loaded {event.model_key}."
                finished = True
            elif isinstance(event, LoadFailed):
                self.status = f"**error:** {event.reason}"
                finished = True
            elif isinstance(event, Notice):
                self.notices.append(event.message)
        return finished

    def take_notices(self) -> str:
        text = "\n".join(f"**notice:** {message}" for message in self.notices)
        self.notices = []
        return text
