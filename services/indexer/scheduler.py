from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable

from prometheus_client import Counter, Gauge

from services.common.errors import ProviderError
from services.indexer.chain_indexer import IndexResult

LOGGER = logging.getLogger('cctpmon.scheduler')

CYCLES_TOTAL = Counter('cctp_scheduler_cycles_total', 'Completed indexing cycles')
CYCLES_DROPPED = Counter('cctp_scheduler_cycles_dropped_total', 'Cycle requests dropped while a cycle was running')
CHAIN_FAILURES = Counter('cctp_scheduler_chain_failures_total', 'Chains that failed within a cycle', ['domain'])
BLOCKS_BEHIND = Gauge('cctp_scheduler_blocks_behind', 'Blocks between the safe head and the checkpoint', ['domain'])


@dataclass
class SchedulerConfig:
    finality_buffer: int = 3
    max_blocks_per_cycle: int = 500
    initial_backlog: int = 5000
    inter_chain_delay_seconds: float = 0.3
    poll_interval_seconds: float = 5.0
    lag_warning_blocks: int = 100


@dataclass(frozen=True)
class BlockRange:
    from_block: int
    to_block: int

    @property
    def size(self) -> int:
        return self.to_block - self.from_block + 1


@dataclass
class CycleReport:
    results: dict[int, IndexResult] = field(default_factory=dict)
    errors: dict[int, str] = field(default_factory=dict)
    idle: list[int] = field(default_factory=list)
    duration_seconds: float = 0.0


@dataclass
class ChainStatus:
    domain: int
    name: str
    supported: bool
    last_block: int | None = None
    head_block: int | None = None
    behind: int | None = None
    error: str | None = None


def plan_block_range(checkpoint: int, head: int, config: SchedulerConfig) -> BlockRange | None:
    """Next range to index, or None when the chain has nothing safe to index.

    A zero checkpoint means the chain was never indexed; the first range is
    then seeded ``initial_backlog`` blocks behind the safe head.
    """
    safe_block = head - config.finality_buffer
    if safe_block < 0:
        return None

    if checkpoint <= 0:
        from_block = max(0, safe_block - config.initial_backlog)
    else:
        from_block = checkpoint + 1

    if from_block > safe_block:
        return None

    to_block = min(safe_block, from_block + config.max_blocks_per_cycle - 1)
    return BlockRange(from_block=from_block, to_block=to_block)


class Scheduler:
    def __init__(
        self,
        adapters: list[Any],
        config: SchedulerConfig | None = None,
        sleep: Callable[[float], None] = time.sleep
    ) -> None:
        self.config = config or SchedulerConfig()
        self.adapters = [adapter for adapter in adapters if adapter.supported]
        self.unsupported = [adapter for adapter in adapters if not adapter.supported]
        self.stop_event = threading.Event()
        self.cycles_completed = 0
        self._sleep = sleep
        self._cycle_lock = threading.Lock()

        for adapter in self.unsupported:
            LOGGER.warning(
                'chain excluded from scheduling domain=%s vm=%s reason=%s',
                adapter.chain.domain,
                adapter.chain.vm_type.value,
                adapter.reason
            )

    @property
    def running(self) -> bool:
        return self._cycle_lock.locked()

    def run_cycle(self) -> CycleReport | None:
        if not self._cycle_lock.acquire(blocking=False):
            CYCLES_DROPPED.inc()
            LOGGER.debug('cycle already running; request dropped')
            return None

        started = time.monotonic()
        report = CycleReport()
        try:
            for position, adapter in enumerate(self.adapters):
                if self.stop_event.is_set():
                    LOGGER.info('stop requested; ending cycle before domain=%s', adapter.chain.domain)
                    break

                domain = adapter.chain.domain
                try:
                    result = self._index_chain(adapter)
                except ProviderError as exc:
                    CHAIN_FAILURES.labels(domain=str(domain)).inc()
                    report.errors[domain] = exc.detail
                    LOGGER.warning('chain failed domain=%s reason=%s', domain, exc.detail)
                except Exception as exc:
                    CHAIN_FAILURES.labels(domain=str(domain)).inc()
                    report.errors[domain] = str(exc)
                    LOGGER.exception('chain failed domain=%s', domain)
                else:
                    if result is None:
                        report.idle.append(domain)
                    else:
                        report.results[domain] = result

                if position < len(self.adapters) - 1:
                    self._sleep(self.config.inter_chain_delay_seconds)

            self.cycles_completed += 1
            CYCLES_TOTAL.inc()
        finally:
            report.duration_seconds = time.monotonic() - started
            self._cycle_lock.release()

        return report

    def _index_chain(self, adapter: Any) -> IndexResult | None:
        head = adapter.head_block()
        checkpoint = adapter.checkpoint()
        block_range = plan_block_range(checkpoint, head, self.config)
        if block_range is None:
            return None

        result = adapter.poll_range(block_range.from_block, block_range.to_block, stop_event=self.stop_event)

        covered = result.last_block if result.last_block is not None else checkpoint
        behind = max(0, head - self.config.finality_buffer - covered)
        BLOCKS_BEHIND.labels(domain=str(adapter.chain.domain)).set(behind)
        if behind > self.config.lag_warning_blocks:
            LOGGER.warning('chain lagging domain=%s behind=%s', adapter.chain.domain, behind)
        return result

    def start(self) -> None:
        for adapter in self.adapters + self.unsupported:
            adapter.start()

    def stop(self) -> None:
        self.stop_event.set()

    def run_forever(self) -> None:
        self.start()
        LOGGER.info(
            'scheduler started chains=%s poll_interval=%s max_blocks=%s',
            [adapter.chain.domain for adapter in self.adapters],
            self.config.poll_interval_seconds,
            self.config.max_blocks_per_cycle
        )

        while not self.stop_event.is_set():
            try:
                self.run_cycle()
            except Exception:
                LOGGER.exception('scheduler cycle failed')
            self.stop_event.wait(max(0.0, self.config.poll_interval_seconds))

        for adapter in self.adapters + self.unsupported:
            adapter.stop()
        LOGGER.info('scheduler stopped cycles=%s', self.cycles_completed)

    def status(self) -> list[ChainStatus]:
        statuses: list[ChainStatus] = []
        for adapter in self.adapters:
            status = ChainStatus(domain=adapter.chain.domain, name=adapter.chain.name, supported=True)
            try:
                status.last_block = adapter.checkpoint()
                status.head_block = adapter.head_block()
                status.behind = max(0, status.head_block - status.last_block)
            except Exception as exc:
                status.error = str(exc)
                LOGGER.warning('status unavailable domain=%s reason=%s', adapter.chain.domain, exc)
            statuses.append(status)

        for adapter in self.unsupported:
            statuses.append(
                ChainStatus(
                    domain=adapter.chain.domain,
                    name=adapter.chain.name,
                    supported=False,
                    error=adapter.reason
                )
            )
        return statuses
