from __future__ import annotations

from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass, field
from threading import Condition, Lock
from typing import Hashable, Iterator


class ConversationLockRegistry(ABC):
    @abstractmethod
    @contextmanager
    def hold(self, key: Hashable) -> Iterator[None]:
        """Blocks until the caller owns the conversation identified by key."""


@dataclass
class _TicketQueue:
    condition: Condition
    next_ticket: int = 0
    serving: int = 0
    waiting: set[int] = field(default_factory=set)


class InMemoryConversationLockRegistry(ConversationLockRegistry):
    """Ticket lock per conversation key.

    Holders for the same key run one at a time, in the order they called
    ``hold``; different keys never block each other.
    """

    def __init__(self) -> None:
        self._guard = Lock()
        self._queues: dict[Hashable, _TicketQueue] = {}

    @contextmanager
    def hold(self, key: Hashable) -> Iterator[None]:
        with self._guard:
            queue = self._queues.get(key)
            if queue is None:
                queue = self._queues[key] = _TicketQueue(condition=Condition(self._guard))
            ticket = queue.next_ticket
            queue.next_ticket += 1
            queue.waiting.add(ticket)
            queue.condition.wait_for(lambda: queue.serving == ticket)

        try:
            yield
        finally:
            with self._guard:
                queue.waiting.discard(ticket)
                queue.serving += 1
                if queue.waiting:
                    queue.condition.notify_all()
                else:
                    self._queues.pop(key, None)

    def active_keys(self) -> int:
        with self._guard:
            return len(self._queues)


conversation_locks = InMemoryConversationLockRegistry()
