"""
Conversation State

In-memory conversation history for chat sessions.

Design choices
--------------
- Append-only per session: `append` is the only mutator besides `reset`.
- Sequence numbers are assigned by the conversation, never by callers.
- Thread-safe access using a re-entrant lock.
- Copy-on-read semantics (callers cannot mutate internal state).
- In-memory only (no persistence across process restarts).
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from threading import RLock
from typing import Dict, List, Literal, Optional

Role = Literal["user", "assistant"]


@dataclass(frozen=True)
class ConversationTurn:
    seq: int
    role: Role
    text: str
    created_at: float = field(default_factory=time.time)


class Conversation:
    """Ordered, append-only list of turns for one session."""

    def __init__(self, session_id: str) -> None:
        self.session_id = session_id
        self._turns: List[ConversationTurn] = []
        self._next_seq = 1
        self._lock = RLock()

    def append(self, role: Role, text: str) -> ConversationTurn:
        with self._lock:
            turn = ConversationTurn(seq=self._next_seq, role=role, text=text)
            self._next_seq += 1
            self._turns.append(turn)
            return turn

    def history(self, limit: Optional[int] = None) -> List[ConversationTurn]:
        """
        Return the most recent `limit` turns in chronological order.

        `limit=None` returns every turn; a non-positive limit returns none.
        """
        with self._lock:
            if limit is None:
                return list(self._turns)
            if limit <= 0:
                return []
            return list(self._turns[-limit:])

    def reset(self) -> None:
        with self._lock:
            self._turns.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._turns)


class ConversationStore:
    """
    Map of session IDs to `Conversation` objects.

    Conversations are created lazily on first access.
    """

    def __init__(self) -> None:
        self._store: Dict[str, Conversation] = {}
        self._lock = RLock()

    def get(self, session_id: str) -> Conversation:
        with self._lock:
            conversation = self._store.get(session_id)
            if conversation is None:
                conversation = Conversation(session_id)
                self._store[session_id] = conversation
            return conversation

    def reset(self, session_id: str) -> None:
        """
        Discard every turn of a session.

        Sequence numbers keep increasing after a reset, so a turn appended by
        a request that started before the reset can never collide with a
        newer one.
        """
        with self._lock:
            conversation = self._store.get(session_id)
            if conversation is not None:
                conversation.reset()

    def has_session(self, session_id: str) -> bool:
        with self._lock:
            return session_id in self._store

    def __len__(self) -> int:
        with self._lock:
            return len(self._store)
