import unittest
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

from eth_abi import encode
from web3 import Web3

from services.common.chains import chain_by_domain
from services.common.channels import MemoryChannel
from services.common.domain import MessageReceivedEvent, MintEvent, TokenType, TransferStatus
from services.common.storage import MemoryStore
from services.indexer.chain_indexer import ChainIndexer
from services.indexer.decoder import DEPOSIT_FOR_BURN_V2_TOPIC, MESSAGE_SENT_TOPIC
from services.reconciler.attestation import AttestationClient, AttestationPoller
from services.reconciler.metrics import MetricsAggregator
from services.reconciler.state_machine import TransferReconciler

USDC_BASE = Web3.to_checksum_address('0x833589fcd6edb6e08f4c7c32d4f71b54bda02913')
USDC_ARBITRUM = Web3.to_checksum_address('0xaf88d065e77c8cc2239327c5edb3a432268e5831')
RECIPIENT = Web3.to_checksum_address('0x3333333333333333333333333333333333333333')
GENESIS = datetime(2026, 1, 1, tzinfo=timezone.utc)
ATTESTED_AT = GENESIS + timedelta(minutes=20)


def _address_word(address: str) -> bytes:
    return b'\x00' * 12 + bytes.fromhex(address[2:])


def _tx(seed: int) -> bytes:
    return seed.to_bytes(32, 'big')


def _tx_hex(seed: int) -> str:
    return f'0x{_tx(seed).hex()}'


def _message_log(block: int, seed: int, log_index: int, amount: int) -> dict:
    # MessageTransmitterV2 leaves the nonce word empty.
    message = (
        (1).to_bytes(4, 'big')
        + (6).to_bytes(4, 'big')
        + (3).to_bytes(4, 'big')
        + b'\x00' * 32
        + b'\x00' * 104
        + amount.to_bytes(32, 'big')
    )
    return {
        'topics': [bytes.fromhex(MESSAGE_SENT_TOPIC[2:])],
        'data': encode(['bytes'], [message]),
        'transactionHash': _tx(seed),
        'logIndex': log_index,
        'blockNumber': block
    }


def _burn_log(block: int, seed: int, log_index: int, amount: int) -> dict:
    return {
        'topics': [
            bytes.fromhex(DEPOSIT_FOR_BURN_V2_TOPIC[2:]),
            _address_word(USDC_BASE),
            _address_word(RECIPIENT),
            (2000).to_bytes(32, 'big')
        ],
        'data': encode(
            ['uint256', 'bytes32', 'uint32', 'bytes32', 'bytes32', 'uint256', 'bytes'],
            [amount, _address_word(RECIPIENT), 3, b'\x00' * 32, b'\x00' * 32, 0, b'']
        ),
        'transactionHash': _tx(seed),
        'logIndex': log_index,
        'blockNumber': block
    }


def _v2_burn_logs(block: int, seed: int, amount: int) -> list[dict]:
    return [_message_log(block, seed, 0, amount), _burn_log(block, seed, 1, amount)]


def _iris_message(nonce: int, status: str, attestation: str | None, amount: int = 7_000_000) -> dict:
    return {
        'status': status,
        'attestation': attestation,
        'eventNonce': f'0x{nonce.to_bytes(32, "big").hex()}',
        'cctpVersion': 2,
        'decodedMessage': {
            'decodedMessageBody': {
                'amount': str(amount),
                'mintRecipient': f'0x{_address_word(RECIPIENT).hex()}'
            }
        }
    }


class FakeProvider:
    def __init__(self, logs_by_block: dict[int, list[dict]]) -> None:
        self.logs_by_block = logs_by_block

    def block_number(self) -> int:
        return 100

    def get_logs(self, addresses: list[str], from_block: int, to_block: int) -> list[dict]:
        logs: list[dict] = []
        for block in range(from_block, to_block + 1):
            logs.extend(self.logs_by_block.get(block, []))
        return logs

    def block_timestamp(self, block_number: int) -> datetime:
        return GENESIS + timedelta(seconds=2 * block_number)

    def transaction_input(self, tx_hash: str) -> bytes | None:
        return None


class V2NonceResolutionTests(unittest.TestCase):
    def setUp(self) -> None:
        self.store = MemoryStore()
        self.events = MemoryChannel()
        self.updates = MemoryChannel()
        self.reconciler = TransferReconciler(
            self.store,
            self.updates,
            MetricsAggregator(self.store),
            clock=lambda: ATTESTED_AT
        )
        self.iris: dict[str, list[dict]] = {}
        self.session = MagicMock()
        self.session.get.side_effect = self._iris_response
        self.poller = AttestationPoller(
            self.store,
            AttestationClient('https://iris.test', session=self.session),
            self.reconciler,
            request_delay_seconds=0,
            sleep=lambda _seconds: None
        )

    def _iris_response(self, url: str, params: dict | None = None, timeout: float | None = None) -> MagicMock:
        messages = self.iris.get((params or {}).get('transactionHash'))
        response = MagicMock(status_code=404 if messages is None else 200)
        response.json.return_value = {'messages': messages or []}
        return response

    def _index_and_reconcile(self, logs_by_block: dict[int, list[dict]]) -> None:
        indexer = ChainIndexer(
            chain_by_domain(6),
            FakeProvider(logs_by_block),
            self.store,
            self.events,
            chunk_size=10,
            call_delay_seconds=0,
            sleep=lambda _seconds: None
        )
        indexer.index_range(1, 10)
        for event in self.events.drain():
            self.reconciler.apply(event)

    def test_v2_burns_with_empty_nonces_become_separate_transfers(self) -> None:
        self._index_and_reconcile({3: _v2_burn_logs(3, 1, 7_000_000), 5: _v2_burn_logs(5, 2, 9_000_000)})

        transfers = self.store.transfers_by_status([TransferStatus.MESSAGE_SENT])

        self.assertEqual(len(transfers), 2)
        self.assertEqual([transfer.amount for transfer in transfers], [7_000_000, 9_000_000])
        self.assertEqual(
            [transfer.transfer_id for transfer in transfers],
            [f'6-{_tx_hex(1)}-1', f'6-{_tx_hex(2)}-1']
        )
        self.assertTrue(all(transfer.cctp_version == 2 for transfer in transfers))
        self.assertEqual(self.reconciler.orphan_count(), 0)

    def test_polling_by_transaction_resolves_nonces(self) -> None:
        self._index_and_reconcile({3: _v2_burn_logs(3, 1, 7_000_000), 5: _v2_burn_logs(5, 2, 9_000_000)})
        self.iris[_tx_hex(1)] = [_iris_message(1001, 'pending_confirmations', None)]
        self.iris[_tx_hex(2)] = [_iris_message(1002, 'complete', '0xfeed', amount=9_000_000)]

        report = self.poller.poll_once()

        self.assertEqual(report.advanced, 2)
        self.assertEqual(
            self.session.get.call_args_list[0].kwargs['params'],
            {'transactionHash': _tx_hex(1)}
        )
        self.assertEqual(self.store.get_transfer('6-1001').status, TransferStatus.ATTESTATION_PENDING)
        self.assertEqual(self.store.get_transfer('6-1002').status, TransferStatus.ATTESTATION_COMPLETE)
        self.assertIsNone(self.store.get_transfer(f'6-{_tx_hex(1)}-1'))
        self.assertEqual([row.transfer_id for row in self.store.transfers_by_burn_tx(6, _tx_hex(2))], ['6-1002'])

        # Once resolved, lookups still go by transaction and match on the nonce.
        self.iris[_tx_hex(1)] = [
            _iris_message(999, 'complete', '0xother'),
            _iris_message(1001, 'complete', '0xbeef')
        ]
        self.poller.poll_once()
        self.assertEqual(self.store.get_transfer('6-1001').status, TransferStatus.ATTESTATION_COMPLETE)

    def test_destination_events_wait_for_nonce_and_complete_transfer(self) -> None:
        self._index_and_reconcile({3: _v2_burn_logs(3, 1, 7_000_000)})
        received = MessageReceivedEvent(
            domain=3,
            tx_hash='0xrecv',
            log_index=0,
            block_number=50,
            timestamp=GENESIS + timedelta(minutes=25),
            source_domain=6,
            nonce=1001,
            caller=RECIPIENT
        )

        self.assertIsNone(self.reconciler.apply(received))
        self.assertTrue(self.reconciler.is_parked(received.idempotency_key))

        self.iris[_tx_hex(1)] = [_iris_message(1001, 'complete', '0xfeed')]
        self.poller.poll_once()

        transfer = self.store.get_transfer('6-1001')
        self.assertEqual(transfer.status, TransferStatus.RECEIVE_MESSAGE_PENDING)
        self.assertEqual(transfer.attested_at, ATTESTED_AT)
        self.assertFalse(self.reconciler.is_parked(received.idempotency_key))

        mint = MintEvent(
            domain=3,
            tx_hash='0xrecv',
            log_index=2,
            block_number=50,
            timestamp=GENESIS + timedelta(minutes=25),
            recipient=RECIPIENT,
            amount=7_000_000,
            token_type=TokenType.USDC,
            token_address=USDC_ARBITRUM,
            source_domain=6
        )
        self.assertEqual(self.reconciler.apply(mint).status, TransferStatus.MINT_COMPLETE)

        ids = [update.transfer_id for update in self.updates.drain()]
        self.assertEqual(ids[0], f'6-{_tx_hex(1)}-1')
        self.assertEqual(ids[-1], '6-1001')

    def test_redelivered_events_after_resolution_are_no_ops(self) -> None:
        self._index_and_reconcile({3: _v2_burn_logs(3, 1, 7_000_000)})
        self.iris[_tx_hex(1)] = [_iris_message(1001, 'complete', '0xfeed')]
        self.poller.poll_once()
        self.updates.drain()

        for event in self.store.stored_events():
            self.assertIsNone(self.reconciler.apply(event))

        self.assertEqual([row.transfer_id for row in self.store.transfers_by_burn_tx(6, _tx_hex(1))], ['6-1001'])
        self.assertEqual(self.reconciler.orphan_count(), 0)
        self.assertEqual(self.updates.drain(), [])


if __name__ == '__main__':
    unittest.main()
