"""Simple message bus used to announce finished verifications and exports."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, DefaultDict, Dict, List
from collections import defaultdict

logger = logging.getLogger(__name__)


@dataclass
class MessageEnvelope:
    topic: str
    payload: Dict[str, Any]


class InMemoryBus:
    """Naive pub/sub bus for local development and unit tests."""

    def __init__(self) -> None:
        self._subscribers: DefaultDict[str, List[Callable[[MessageEnvelope], None]]] = defaultdict(list)

    def publish(self, envelope: MessageEnvelope) -> None:
        for callback in list(self._subscribers[envelope.topic]):
            try:
                callback(envelope)
            except Exception:  # a failing subscriber never reaches the publisher
                logger.exception("Subscriber failed for topic %s", envelope.topic)

    def subscribe(self, topic: str, handler: Callable[[MessageEnvelope], None]) -> None:
        self._subscribers[topic].append(handler)


def build_bus(backend: str = "in-memory") -> InMemoryBus:
    if backend != "in-memory":
        raise NotImplementedError("Only in-memory backend is scaffolded right now")
    return InMemoryBus()
