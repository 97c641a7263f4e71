"""Lifecycle hooks fired by the chunker, search engine, context builder and RAG engine."""

import logging
from typing import Any, Dict, Optional


logger = logging.getLogger(__name__)


class LifecycleObserver:
    """Base observer. Subclasses override whichever callbacks they care about.

    Each callback receives an event name (e.g. ``"chunk"``, ``"search"``,
    ``"build_context"``, ``"query"``) and a payload dict.
    """

    def on_start(self, event: str, payload: Dict[str, Any]):
        pass

    def on_complete(self, event: str, payload: Dict[str, Any]):
        pass

    def on_error(self, event: str, payload: Dict[str, Any]):
        pass


class LoggingObserver(LifecycleObserver):
    """Writes every lifecycle event to a logger."""

    def __init__(self, log: Optional[logging.Logger] = None, level=logging.DEBUG):
        self.log = log or logger
        self.level = level

    def on_start(self, event, payload):
        self.log.log(self.level, "%s started: %s", event, payload)

    def on_complete(self, event, payload):
        self.log.log(self.level, "%s completed: %s", event, payload)

    def on_error(self, event, payload):
        self.log.warning("%s failed: %s", event, payload)


class ObserverMixin:
    """Gives a component a ``_notify`` helper that never lets observer errors escape."""

    observer: LifecycleObserver

    def _notify(self, phase: str, event: str, **payload):
        callback = getattr(self.observer, f"on_{phase}", None)
        if callback is None:
            return
        try:
            callback(event, payload)
        except Exception as e:
            logger.warning("Observer %s.on_%s raised for %s: %s",
                           type(self.observer).__name__, phase, event, e)
