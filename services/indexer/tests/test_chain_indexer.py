import threading
import unittest
from datetime import datetime, timedelta, timezone

from eth_abi import encode
from web3 import Web3

from services.common.chains import chain_by_domain
from services.common.channels import MemoryChannel
from services.common.domain import BurnEvent, MintEvent
from services.common.errors import ProviderError
from services.common.storage import MemoryStore
from services.indexer.chain_indexer import ChainIndexer, split_range
from services.indexer.decoder import (
    DEPOSIT_FOR_BURN_V2_TOPIC,
    MESSAGE_SENT_TOPIC,
    MINT_AND_WITHDRAW_V1_TOPIC
)

USDC_BASE = Web3.to_checksum_address('0x833589fcd6edb6e08f4c7c32d4f71b54bda02913')
RECIPIENT = Web3.to_checksum_address('0x3333333333333333333333333333333333333333')
GENESIS = datetime(2026, 1, 1, tzinfo=timezone.utc)


def _address_word(address: str) -> bytes:
    return b'\x00' * 12 + bytes.fromhex(address[2:])


def _tx(seed: int) -> bytes:
    return seed.to_bytes(32, 'big')


def _mint_log(block: int, seed: int) -> dict:
    return {
        'topics': [
            bytes.fromhex(MINT_AND_WITHDRAW_V1_TOPIC[2:]),
            _address_word(RECIPIENT),
            _address_word(USDC_BASE)
        ],
        'data': encode(['uint256'], [5_000_000]),
        'transactionHash': _tx(seed),
        'logIndex': 1,
        'blockNumber': block
    }


def _v2_burn_logs(block: int, seed: int, nonce: int) -> list[dict]:
    message = (
        (1).to_bytes(4, 'big')
        + (6).to_bytes(4, 'big')
        + (3).to_bytes(4, 'big')
        + nonce.to_bytes(32, 'big')
        + b'\x00' * 104
    )
    return [
        {
            'topics': [bytes.fromhex(MESSAGE_SENT_TOPIC[2:])],
            'data': encode(['bytes'], [message]),
            'transactionHash': _tx(seed),
            'logIndex': 2,
            'blockNumber': block
        },
        {
            'topics': [
                bytes.fromhex(DEPOSIT_FOR_BURN_V2_TOPIC[2:]),
                _address_word(USDC_BASE),
                _address_word(RECIPIENT),
                (2000).to_bytes(32, 'big')
            ],
            'data': encode(
                ['uint256', 'bytes32', 'uint32', 'bytes32', 'bytes32', 'uint256', 'bytes'],
                [7_000_000, _address_word(RECIPIENT), 3, b'\x00' * 32, b'\x00' * 32, 0, b'']
            ),
            'transactionHash': _tx(seed),
            'logIndex': 3,
            'blockNumber': block
        }
    ]


class FakeProvider:
    def __init__(self, logs_by_block: dict[int, list[dict]] | None = None) -> None:
        self.logs_by_block = logs_by_block or {}
        self.failing_ranges: set[tuple[int, int]] = set()
        self.inputs: dict[str, bytes | None] = {}
        self.failing_blocks: set[int] = set()
        self.calls: list[tuple[int, int]] = []
        self.head = 1_000

    def block_number(self) -> int:
        return self.head

    def get_logs(self, addresses: list[str], from_block: int, to_block: int) -> list[dict]:
        self.calls.append((from_block, to_block))
        if (from_block, to_block) in self.failing_ranges:
            raise ProviderError('timeout', domain=6)
        logs: list[dict] = []
        for block in range(from_block, to_block + 1):
            logs.extend(self.logs_by_block.get(block, []))
        return logs

    def block_timestamp(self, block_number: int) -> datetime:
        if block_number in self.failing_blocks:
            raise ProviderError('block unavailable', domain=6)
        return GENESIS + timedelta(seconds=2 * block_number)

    def transaction_input(self, tx_hash: str) -> bytes | None:
        return self.inputs.get(tx_hash)


class SplitRangeTests(unittest.TestCase):
    def test_chunks_partition_the_range(self) -> None:
        for from_block, to_block in [(0, 0), (1, 5), (10, 22), (100, 599)]:
            for chunk_size in (1, 3, 5, 7, 500):
                chunks = split_range(from_block, to_block, chunk_size)
                covered = [block for start, end in chunks for block in range(start, end + 1)]
                self.assertEqual(covered, list(range(from_block, to_block + 1)))
                self.assertTrue(all(end - start + 1 <= chunk_size for start, end in chunks))

    def test_empty_range_has_no_chunks(self) -> None:
        self.assertEqual(split_range(10, 9, 5), [])

    def test_rejects_non_positive_chunk_size(self) -> None:
        with self.assertRaises(ValueError):
            split_range(1, 10, 0)


class ChainIndexerTests(unittest.TestCase):
    def setUp(self) -> None:
        self.chain = chain_by_domain(6)
        self.store = MemoryStore()
        self.channel = MemoryChannel()
        self.sleeps: list[float] = []

    def _indexer(self, provider: FakeProvider) -> ChainIndexer:
        return ChainIndexer(
            self.chain,
            provider,
            self.store,
            self.channel,
            chunk_size=5,
            call_delay_seconds=0.05,
            sleep=self.sleeps.append
        )

    def test_failed_chunk_is_skipped_and_checkpoint_reaches_end(self) -> None:
        provider = FakeProvider({3: _v2_burn_logs(3, 1, 77), 12: [_mint_log(12, 2)]})
        provider.failing_ranges.add((6, 10))

        result = self._indexer(provider).index_range(1, 14)

        self.assertEqual(provider.calls, [(1, 5), (6, 10), (11, 14)])
        self.assertEqual(result.chunks_skipped, 1)
        self.assertEqual(result.burns_found, 1)
        self.assertEqual(result.mints_found, 1)
        self.assertEqual(result.last_block, 14)
        self.assertEqual(self.store.get_checkpoint(6), 14)

    def test_v2_burn_takes_nonce_from_message_sent(self) -> None:
        provider = FakeProvider({3: _v2_burn_logs(3, 1, 77)})

        self._indexer(provider).index_range(1, 5)

        burns = [event for event in self.store.stored_events() if isinstance(event, BurnEvent)]
        self.assertEqual(len(burns), 1)
        self.assertEqual(burns[0].nonce, 77)
        self.assertEqual(burns[0].timestamp, GENESIS + timedelta(seconds=6))
        published = self.channel.drain()
        self.assertEqual(len(published), 2)

    def test_mint_with_undecodable_calldata_is_kept(self) -> None:
        provider = FakeProvider({12: [_mint_log(12, 9)]})
        provider.inputs[f'0x{_tx(9).hex()}'] = b'\x57\xec\xfd\x28\x00'

        result = self._indexer(provider).index_range(11, 15)

        mints = [event for event in self.store.stored_events() if isinstance(event, MintEvent)]
        self.assertEqual(result.mints_found, 1)
        self.assertEqual(len(mints), 1)
        self.assertIsNone(mints[0].source_domain)
        self.assertEqual(mints[0].amount, 5_000_000)

    def test_mint_source_domain_recovered_from_calldata(self) -> None:
        provider = FakeProvider({12: [_mint_log(12, 9)]})
        message = (0).to_bytes(4, 'big') + (3).to_bytes(4, 'big') + (6).to_bytes(4, 'big') + b'\x00' * 104
        provider.inputs[f'0x{_tx(9).hex()}'] = b'\x57\xec\xfd\x28' + encode(['bytes', 'bytes'], [message, b''])

        self._indexer(provider).index_range(11, 15)

        mint = self.store.stored_events()[0]
        self.assertEqual(mint.source_domain, 3)

    def test_reindexing_is_idempotent(self) -> None:
        provider = FakeProvider({3: _v2_burn_logs(3, 1, 77), 12: [_mint_log(12, 2)]})
        indexer = self._indexer(provider)

        indexer.index_range(1, 14)
        before = list(self.store.stored_events())
        indexer.index_range(1, 14)

        self.assertEqual(self.store.stored_events(), before)
        self.assertEqual(self.store.insert_events(before), 0)

    def test_block_timestamp_failure_falls_back_to_now(self) -> None:
        provider = FakeProvider({12: [_mint_log(12, 2)]})
        provider.failing_blocks.add(12)
        started = datetime.now(timezone.utc)

        self._indexer(provider).index_range(11, 15)

        mint = self.store.stored_events()[0]
        self.assertGreaterEqual(mint.timestamp, started)

    def test_stop_event_halts_between_chunks(self) -> None:
        provider = FakeProvider()
        stop_event = threading.Event()
        indexer = self._indexer(provider)

        def _sleep(_seconds: float) -> None:
            stop_event.set()

        indexer._sleep = _sleep
        result = indexer.index_range(1, 20, stop_event=stop_event)

        self.assertEqual(provider.calls, [(1, 5)])
        self.assertEqual(result.last_block, 5)
        self.assertEqual(self.store.get_checkpoint(6), 5)

    def test_delay_between_chunks(self) -> None:
        provider = FakeProvider()

        self._indexer(provider).index_range(1, 15)

        self.assertEqual(self.sleeps, [0.05, 0.05])


if __name__ == '__main__':
    unittest.main()
