from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

from web3 import Web3

from services.common.chains import ChainSpec
from services.common.errors import ProviderError

LOGGER = logging.getLogger('cctpmon.provider')


def _to_timestamp(seconds: int) -> datetime:
    return datetime.fromtimestamp(seconds, tz=timezone.utc)


class Web3Provider:
    """The four RPC calls the indexer needs; every failure surfaces as ProviderError."""

    def __init__(self, chain: ChainSpec, timeout: int = 10, web3: Web3 | None = None) -> None:
        self.chain = chain
        self.web3 = web3 or Web3(Web3.HTTPProvider(chain.rpc_url, request_kwargs={'timeout': timeout}))

    def _call(self, operation: str, fn: Any, *args: Any) -> Any:
        try:
            return fn(*args)
        except Exception as exc:
            raise ProviderError(
                f'{operation} failed on {self.chain.name}: {exc}',
                domain=self.chain.domain
            ) from exc

    def block_number(self) -> int:
        return int(self._call('eth_blockNumber', lambda: self.web3.eth.block_number))

    def get_logs(self, addresses: list[str], from_block: int, to_block: int) -> list[Any]:
        params = {
            'fromBlock': from_block,
            'toBlock': to_block,
            'address': [Web3.to_checksum_address(address) for address in addresses]
        }
        return list(self._call('eth_getLogs', self.web3.eth.get_logs, params))

    def block_timestamp(self, block_number: int) -> datetime:
        block = self._call('eth_getBlockByNumber', self.web3.eth.get_block, block_number)
        return _to_timestamp(int(block['timestamp']))

    def transaction_input(self, tx_hash: str) -> bytes | None:
        tx = self._call('eth_getTransactionByHash', self.web3.eth.get_transaction, tx_hash)
        raw = tx.get('input')
        if raw is None:
            return None
        if isinstance(raw, (bytes, bytearray)):
            return bytes(raw)
        text = str(raw)
        return bytes.fromhex(text[2:] if text.startswith('0x') else text)
