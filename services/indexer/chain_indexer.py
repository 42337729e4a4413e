from __future__ import annotations

import logging
import threading
import time
from collections import defaultdict
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Any, Callable, Protocol

from prometheus_client import Counter, Gauge

from services.common.chains import ChainSpec
from services.common.domain import BurnEvent, ChainEvent, MessageSentEvent, MintEvent, event_kind
from services.common.errors import DecodeError, ProviderError
from services.indexer.decoder import EventDecoder, source_domain_from_calldata

LOGGER = logging.getLogger('cctpmon.indexer')

EVENTS_INDEXED = Counter(
    'cctp_indexer_events_total',
    'Decoded chain events recorded per chunk',
    ['domain', 'kind']
)
CHUNKS_SKIPPED = Counter(
    'cctp_indexer_chunks_skipped_total',
    'Block chunks skipped after a provider failure',
    ['domain']
)
DECODE_FAILURES = Counter(
    'cctp_indexer_decode_failures_total',
    'Known logs that failed to decode',
    ['domain']
)
CHECKPOINT_BLOCK = Gauge(
    'cctp_indexer_checkpoint_block',
    'Last processed block per chain',
    ['domain']
)


class RpcProvider(Protocol):
    def block_number(self) -> int: ...

    def get_logs(self, addresses: list[str], from_block: int, to_block: int) -> list[Any]: ...

    def block_timestamp(self, block_number: int) -> datetime: ...

    def transaction_input(self, tx_hash: str) -> bytes | None: ...


@dataclass
class IndexResult:
    burns_found: int = 0
    mints_found: int = 0
    messages_found: int = 0
    chunks_skipped: int = 0
    last_block: int | None = None


def split_range(from_block: int, to_block: int, chunk_size: int) -> list[tuple[int, int]]:
    """Partition ``[from_block, to_block]`` into inclusive chunks of at most ``chunk_size`` blocks."""
    if chunk_size < 1:
        raise ValueError('chunk_size must be positive')
    chunks: list[tuple[int, int]] = []
    start = from_block
    while start <= to_block:
        end = min(to_block, start + chunk_size - 1)
        chunks.append((start, end))
        start = end + 1
    return chunks


def _link_burn_nonces(events: list[ChainEvent]) -> list[ChainEvent]:
    # Burns without a nonce topic take it from the MessageSent log of the same transaction
    # when that log carries one. v2 messages usually do not; those burns stay unresolved.
    sent_by_tx: dict[str, list[MessageSentEvent]] = defaultdict(list)
    for event in events:
        if isinstance(event, MessageSentEvent):
            sent_by_tx[event.tx_hash].append(event)

    linked: list[ChainEvent] = []
    for event in events:
        if isinstance(event, BurnEvent) and event.nonce is None and sent_by_tx.get(event.tx_hash):
            message = sent_by_tx[event.tx_hash].pop(0)
            if message.nonce is not None:
                event = replace(event, nonce=message.nonce)
        linked.append(event)
    return linked


class ChainIndexer:
    def __init__(
        self,
        chain: ChainSpec,
        provider: RpcProvider,
        store: Any,
        publisher: Any | None = None,
        *,
        chunk_size: int = 5,
        call_delay_seconds: float = 0.05,
        sleep: Callable[[float], None] = time.sleep
    ) -> None:
        self.chain = chain
        self.provider = provider
        self.store = store
        self.publisher = publisher
        self.chunk_size = chunk_size
        self.call_delay_seconds = call_delay_seconds
        self.decoder = EventDecoder(chain)
        self._sleep = sleep

    def head_block(self) -> int:
        return self.provider.block_number()

    def checkpoint(self) -> int:
        return self.store.get_checkpoint(self.chain.domain)

    def index_range(
        self,
        from_block: int,
        to_block: int,
        stop_event: threading.Event | None = None
    ) -> IndexResult:
        result = IndexResult()
        chunks = split_range(from_block, to_block, self.chunk_size)
        block_ts_cache: dict[int, datetime] = {}
        tx_source_cache: dict[str, int | None] = {}

        for position, (start, end) in enumerate(chunks):
            if stop_event is not None and stop_event.is_set():
                LOGGER.info('stop requested domain=%s next_chunk=%s', self.chain.domain, start)
                break

            try:
                events = self._fetch_chunk(start, end, block_ts_cache, tx_source_cache)
            except ProviderError as exc:
                result.chunks_skipped += 1
                CHUNKS_SKIPPED.labels(domain=str(self.chain.domain)).inc()
                LOGGER.warning(
                    'chunk skipped domain=%s from=%s to=%s reason=%s',
                    self.chain.domain,
                    start,
                    end,
                    exc.detail
                )
            else:
                self._record(events, result)

            result.last_block = end
            if position < len(chunks) - 1:
                self._sleep(self.call_delay_seconds)

        if result.last_block is not None:
            self.store.set_checkpoint(self.chain.domain, result.last_block)
            CHECKPOINT_BLOCK.labels(domain=str(self.chain.domain)).set(result.last_block)

        if result.burns_found or result.mints_found:
            LOGGER.info(
                'range indexed domain=%s from=%s to=%s burns=%s mints=%s messages=%s skipped=%s',
                self.chain.domain,
                from_block,
                result.last_block,
                result.burns_found,
                result.mints_found,
                result.messages_found,
                result.chunks_skipped
            )
        return result

    def _fetch_chunk(
        self,
        start: int,
        end: int,
        block_ts_cache: dict[int, datetime],
        tx_source_cache: dict[str, int | None]
    ) -> list[ChainEvent]:
        logs = self.provider.get_logs(self.chain.watched_addresses, start, end)
        ordered = sorted(logs, key=lambda item: (int(item['blockNumber']), int(item['logIndex'])))

        events: list[ChainEvent] = []
        for log in ordered:
            if not self.decoder.is_known(log):
                continue

            timestamp = self._block_timestamp(int(log['blockNumber']), block_ts_cache)
            try:
                event = self.decoder.decode(log, timestamp)
            except DecodeError as exc:
                DECODE_FAILURES.labels(domain=str(self.chain.domain)).inc()
                LOGGER.warning('log skipped domain=%s reason=%s', self.chain.domain, exc)
                continue

            if isinstance(event, MintEvent):
                event = replace(event, source_domain=self._mint_source_domain(event.tx_hash, tx_source_cache))
            if event is not None:
                events.append(event)

        return _link_burn_nonces(events)

    def _record(self, events: list[ChainEvent], result: IndexResult) -> None:
        if not events:
            return

        inserted = self.store.insert_events(events)
        for event in events:
            if isinstance(event, BurnEvent):
                result.burns_found += 1
            elif isinstance(event, MintEvent):
                result.mints_found += 1
            else:
                result.messages_found += 1
            EVENTS_INDEXED.labels(domain=str(self.chain.domain), kind=event_kind(event)).inc()

        LOGGER.debug('chunk stored domain=%s events=%s inserted=%s', self.chain.domain, len(events), inserted)

        if self.publisher is not None:
            for event in events:
                self.publisher.publish(event)

    def _block_timestamp(self, block_number: int, cache: dict[int, datetime]) -> datetime:
        if block_number in cache:
            return cache[block_number]

        try:
            ts = self.provider.block_timestamp(block_number)
        except ProviderError as exc:
            LOGGER.warning(
                'block timestamp unavailable domain=%s block=%s reason=%s; using current time',
                self.chain.domain,
                block_number,
                exc.detail
            )
            ts = datetime.now(timezone.utc)
        cache[block_number] = ts
        return ts

    def _mint_source_domain(self, tx_hash: str, cache: dict[str, int | None]) -> int | None:
        if tx_hash in cache:
            return cache[tx_hash]

        try:
            source_domain = source_domain_from_calldata(self.provider.transaction_input(tx_hash))
        except ProviderError as exc:
            LOGGER.warning('mint calldata unavailable domain=%s tx=%s reason=%s', self.chain.domain, tx_hash, exc.detail)
            source_domain = None

        if source_domain is None:
            LOGGER.debug('mint source domain unknown domain=%s tx=%s', self.chain.domain, tx_hash)
        cache[tx_hash] = source_domain
        self._sleep(self.call_delay_seconds)
        return source_domain
