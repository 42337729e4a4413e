from __future__ import annotations

import json
import logging
import queue
from typing import Any, Callable, Generic, TypeVar

LOGGER = logging.getLogger('cctpmon.channels')

T = TypeVar('T')

Encoder = Callable[[Any], tuple[str, dict[str, Any]]]


class MemoryChannel(Generic[T]):
    """Bounded in-process queue; ``publish`` blocks up to ``put_timeout`` when full."""

    def __init__(self, maxsize: int = 10_000, put_timeout: float = 5.0) -> None:
        self._queue: queue.Queue[T] = queue.Queue(maxsize=maxsize)
        self.put_timeout = put_timeout

    def publish(self, item: T) -> None:
        self._queue.put(item, timeout=self.put_timeout)

    def drain(self, max_items: int | None = None) -> list[T]:
        items: list[T] = []
        while max_items is None or len(items) < max_items:
            try:
                items.append(self._queue.get_nowait())
            except queue.Empty:
                break
        return items

    def __len__(self) -> int:
        return self._queue.qsize()


class KafkaChannel:
    def __init__(self, producer: Any, topic: str, encode: Encoder) -> None:
        self.producer = producer
        self.topic = topic
        self.encode = encode

    def publish(self, item: Any) -> None:
        key, payload = self.encode(item)
        self.producer.produce(
            topic=self.topic,
            key=key,
            value=json.dumps(payload).encode('utf-8')
        )
        self.producer.poll(0)

    def flush(self, timeout: float = 5.0) -> None:
        remaining = self.producer.flush(timeout)
        if remaining:
            LOGGER.warning('kafka flush incomplete topic=%s remaining=%s', self.topic, remaining)
