from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Any, Callable, Protocol, Union

from services.common.chains import ChainSpec
from services.common.domain import VmType
from services.indexer.chain_indexer import ChainIndexer, IndexResult
from services.indexer.provider import Web3Provider

LOGGER = logging.getLogger('cctpmon.adapters')

_UNSUPPORTED_REASONS = {
    VmType.SOLANA: 'Solana program log parsing is not implemented',
    VmType.STARKNET: 'Starknet event parsing is not implemented'
}


@dataclass(frozen=True)
class Unsupported:
    domain: int
    vm_type: VmType
    reason: str


PollResult = Union[IndexResult, Unsupported]


class ChainAdapter(Protocol):
    chain: ChainSpec
    supported: bool

    def start(self) -> None: ...

    def stop(self) -> None: ...

    def head_block(self) -> int | Unsupported: ...

    def checkpoint(self) -> int | Unsupported: ...

    def poll_range(
        self,
        from_block: int,
        to_block: int,
        stop_event: threading.Event | None = None
    ) -> PollResult: ...


class EvmChainAdapter:
    supported = True

    def __init__(self, indexer: ChainIndexer) -> None:
        self.indexer = indexer
        self.chain = indexer.chain
        self.running = False

    def start(self) -> None:
        if self.running:
            return
        self.running = True
        LOGGER.info('adapter started domain=%s name=%s', self.chain.domain, self.chain.name)

    def stop(self) -> None:
        if not self.running:
            return
        self.running = False
        LOGGER.info('adapter stopped domain=%s name=%s', self.chain.domain, self.chain.name)

    def head_block(self) -> int:
        return self.indexer.head_block()

    def checkpoint(self) -> int:
        return self.indexer.checkpoint()

    def poll_range(
        self,
        from_block: int,
        to_block: int,
        stop_event: threading.Event | None = None
    ) -> IndexResult:
        return self.indexer.index_range(from_block, to_block, stop_event=stop_event)


class UnsupportedChainAdapter:
    supported = False

    def __init__(self, chain: ChainSpec, reason: str) -> None:
        self.chain = chain
        self.reason = reason

    def start(self) -> None:
        LOGGER.warning('adapter unsupported domain=%s vm=%s reason=%s', self.chain.domain, self.chain.vm_type.value, self.reason)

    def stop(self) -> None:
        return

    def head_block(self) -> Unsupported:
        return self._unsupported()

    def checkpoint(self) -> Unsupported:
        return self._unsupported()

    def poll_range(
        self,
        from_block: int,
        to_block: int,
        stop_event: threading.Event | None = None
    ) -> Unsupported:
        return self._unsupported()

    def _unsupported(self) -> Unsupported:
        return Unsupported(domain=self.chain.domain, vm_type=self.chain.vm_type, reason=self.reason)


def build_adapter(
    chain: ChainSpec,
    store: Any,
    publisher: Any | None = None,
    *,
    chunk_size: int = 5,
    call_delay_seconds: float = 0.05,
    rpc_timeout: int = 10,
    provider_factory: Callable[..., Any] = Web3Provider
) -> EvmChainAdapter | UnsupportedChainAdapter:
    if chain.vm_type is VmType.EVM:
        provider = provider_factory(chain, timeout=rpc_timeout)
        indexer = ChainIndexer(
            chain,
            provider,
            store,
            publisher,
            chunk_size=chunk_size,
            call_delay_seconds=call_delay_seconds
        )
        return EvmChainAdapter(indexer)

    reason = _UNSUPPORTED_REASONS.get(chain.vm_type, f'{chain.vm_type.value} chains are not supported')
    return UnsupportedChainAdapter(chain, reason)
