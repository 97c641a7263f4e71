"""Tests for lifecycle observers, conversation history, deadlines and logging setup."""

import logging
import time

import pytest

from context_engine.errors import InvalidInput
from context_engine.logging_utils import get_logger, setup_logging
from context_engine.observer import LifecycleObserver, LoggingObserver, ObserverMixin
from context_engine.rag.history import ConversationHistory
from context_engine.rag.models import ConversationTurn
from context_engine.rag.timeouts import DeadlineExceeded, call_with_deadline


class Component(ObserverMixin):
    def __init__(self, observer):
        self.observer = observer


class TestObservers:
    def test_observer_errors_are_contained(self, caplog):
        class Broken(LifecycleObserver):
            def on_start(self, event, payload):
                raise RuntimeError("observer bug")

        with caplog.at_level(logging.WARNING, logger="context_engine.observer"):
            Component(Broken())._notify("start", "search", query="q")
        assert "observer bug" in caplog.text

    def test_logging_observer(self, caplog):
        observer = LoggingObserver(level=logging.INFO)
        with caplog.at_level(logging.DEBUG, logger="context_engine.observer"):
            Component(observer)._notify("complete", "search", result_count=3)
            Component(observer)._notify("error", "search", error="boom")
        assert "search completed" in caplog.text
        assert "search failed" in caplog.text

    def test_unknown_phase_is_ignored(self):
        Component(LifecycleObserver())._notify("progress", "search")


class TestConversationHistory:
    def test_evicts_oldest(self):
        history = ConversationHistory(max_turns=2)
        for i in range(3):
            history.append(ConversationTurn(query=f"q{i}", response=f"r{i}"))
        assert [t.query for t in history.recent()] == ["q1", "q2"]
        assert len(history) == 2

    def test_recent_limits(self):
        history = ConversationHistory(max_turns=5)
        for i in range(3):
            history.append(ConversationTurn(query=f"q{i}", response=""))
        assert [t.query for t in history.recent(2)] == ["q1", "q2"]
        assert history.recent(0) == []

    def test_snapshot_is_independent(self):
        history = ConversationHistory()
        snapshot = history.recent()
        history.append(ConversationTurn(query="q", response="r"))
        assert snapshot == []

    def test_rejects_zero_capacity(self):
        with pytest.raises(InvalidInput):
            ConversationHistory(max_turns=0)


class TestDeadlines:
    def test_inline_without_timeout(self):
        assert call_with_deadline(lambda x: x * 2, None, 21) == 42

    def test_returns_within_deadline(self):
        assert call_with_deadline(lambda: "ok", 1.0) == "ok"

    def test_raises_on_overrun(self):
        with pytest.raises(DeadlineExceeded):
            call_with_deadline(time.sleep, 0.05, 0.5)

    def test_propagates_errors(self):
        def fail():
            raise KeyError("missing")

        with pytest.raises(KeyError):
            call_with_deadline(fail, 1.0)


class TestLogging:
    def test_setup_is_idempotent(self, tmp_path):
        log_file = tmp_path / "logs" / "engine.log"
        logger = setup_logging("DEBUG", str(log_file))
        logger = setup_logging("DEBUG", str(log_file))

        assert len(logger.handlers) == 2
        assert logger.level == logging.DEBUG
        get_logger("search").debug("hello from search")
        for handler in logger.handlers:
            handler.flush()
        assert "context_engine.search | hello from search" in log_file.read_text()

        for handler in list(logger.handlers):
            logger.removeHandler(handler)
            handler.close()
        logger.propagate = True
        logger.setLevel(logging.NOTSET)

    def test_get_logger_nesting(self):
        assert get_logger("rag").name == "context_engine.rag"
        assert get_logger("context_engine.rag").name == "context_engine.rag"
