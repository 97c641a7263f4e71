"""Bounded conversation history owned by a RAGEngine."""

import threading
from collections import deque
from typing import List, Optional

from ..config import MAX_CONVERSATION_HISTORY
from ..errors import InvalidInput
from .models import ConversationTurn


class ConversationHistory:
    """Fixed-capacity turn log; appending past capacity evicts the oldest turn."""

    def __init__(self, max_turns: int = MAX_CONVERSATION_HISTORY):
        if max_turns <= 0:
            raise InvalidInput(f"max_turns must be positive, got {max_turns}")
        self.max_turns = max_turns
        self._turns = deque(maxlen=max_turns)
        self._lock = threading.Lock()

    def append(self, turn: ConversationTurn):
        with self._lock:
            self._turns.append(turn)

    def recent(self, limit: Optional[int] = None) -> List[ConversationTurn]:
        """Snapshot of the newest ``limit`` turns (all when None), oldest first."""
        with self._lock:
            turns = list(self._turns)
        if limit is None:
            return turns
        if limit <= 0:
            return []
        return turns[-limit:]

    def clear(self):
        with self._lock:
            self._turns.clear()

    def __len__(self):
        with self._lock:
            return len(self._turns)
