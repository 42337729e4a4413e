from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Any, Iterable, Iterator

import psycopg2
from psycopg2.extras import RealDictCursor, execute_values

from services.common.domain import (
    TERMINAL_STATUSES,
    BurnEvent,
    ChainEvent,
    MessageReceivedEvent,
    MessageSentEvent,
    MetricsBucket,
    MetricsBucketKey,
    MintEvent,
    TokenType,
    Transfer,
    TransferMode,
    TransferStatus
)

LOGGER = logging.getLogger('cctpmon.storage')

_TRANSFER_COLUMNS = (
    'transfer_id',
    'source_domain',
    'destination_domain',
    'nonce',
    'mode',
    'token_type',
    'amount',
    'burn_tx_hash',
    'mint_tx_hash',
    'burn_at',
    'attested_at',
    'mint_at',
    'status',
    'error_reason',
    'message_body',
    'sender',
    'recipient',
    'min_finality_threshold',
    'max_fee',
    'finality_threshold_executed',
    'cctp_version',
    'burn_log_index'
)

_TERMINAL_VALUES = tuple(sorted(status.value for status in TERMINAL_STATUSES))


def _repo_root() -> Path:
    return Path(__file__).resolve().parents[2]


def _split_events(events: Iterable[ChainEvent]) -> tuple[list[BurnEvent], list[ChainEvent], list[MintEvent]]:
    burns: list[BurnEvent] = []
    messages: list[ChainEvent] = []
    mints: list[MintEvent] = []
    for event in events:
        if isinstance(event, BurnEvent):
            burns.append(event)
        elif isinstance(event, MintEvent):
            mints.append(event)
        else:
            messages.append(event)
    return burns, messages, mints


class MemoryStore:
    """In-process implementation of the persistence contract.

    Raw events are keyed by ``(domain, tx_hash, log_index)``; transfers are
    copied on the way in and out so callers never share mutable state with
    the store.
    """

    def __init__(self) -> None:
        self._events: dict[str, ChainEvent] = {}
        self._checkpoints: dict[int, int] = {}
        self._transfers: dict[str, Transfer] = {}
        self._metrics: dict[MetricsBucketKey, MetricsBucket] = {}

    def insert_events(self, events: Iterable[ChainEvent]) -> int:
        inserted = 0
        for event in events:
            key = event.idempotency_key
            if key in self._events:
                continue
            self._events[key] = event
            inserted += 1
        return inserted

    def stored_events(self) -> list[ChainEvent]:
        return list(self._events.values())

    def get_checkpoint(self, domain: int) -> int:
        return self._checkpoints.get(domain, 0)

    def set_checkpoint(self, domain: int, block_number: int) -> None:
        self._checkpoints[domain] = max(self._checkpoints.get(domain, 0), block_number)

    def get_transfer(self, transfer_id: str) -> Transfer | None:
        transfer = self._transfers.get(transfer_id)
        return replace(transfer) if transfer is not None else None

    def upsert_transfer(self, transfer: Transfer) -> bool:
        current = self._transfers.get(transfer.transfer_id)
        if current is not None and current.is_terminal:
            return False
        self._transfers[transfer.transfer_id] = replace(transfer)
        return True

    def rekey_transfer(self, old_id: str, transfer: Transfer) -> bool:
        current = self._transfers.get(old_id)
        if current is None or current.is_terminal or transfer.transfer_id in self._transfers:
            return False
        del self._transfers[old_id]
        self._transfers[transfer.transfer_id] = replace(current, nonce=transfer.nonce)
        return True

    def transfers_by_burn_tx(self, source_domain: int, tx_hash: str) -> list[Transfer]:
        rows = [
            replace(transfer)
            for transfer in self._transfers.values()
            if transfer.source_domain == source_domain and transfer.burn_tx_hash == tx_hash
        ]
        rows.sort(key=lambda item: (item.burn_log_index is None, item.burn_log_index or 0, item.transfer_id))
        return rows

    def transfers_by_mint_tx(self, destination_domain: int, tx_hash: str) -> list[Transfer]:
        return [
            replace(transfer)
            for transfer in self._transfers.values()
            if transfer.destination_domain == destination_domain and transfer.mint_tx_hash == tx_hash
        ]

    def transfers_by_status(
        self,
        statuses: Iterable[TransferStatus],
        burned_before: datetime | None = None,
        limit: int | None = None
    ) -> list[Transfer]:
        wanted = set(statuses)
        rows = [
            replace(transfer)
            for transfer in self._transfers.values()
            if transfer.status in wanted and (burned_before is None or transfer.burn_at < burned_before)
        ]
        rows.sort(key=lambda item: (item.burn_at, item.transfer_id))
        return rows[:limit] if limit is not None else rows

    def merge_metrics(self, bucket: MetricsBucket) -> None:
        current = self._metrics.get(bucket.key)
        if current is None:
            self._metrics[bucket.key] = replace(bucket)
            return
        current.merge(bucket)

    def metrics_in_range(self, start: datetime, end: datetime) -> list[MetricsBucket]:
        rows = [replace(bucket) for key, bucket in self._metrics.items() if start <= key.bucket_start < end]
        rows.sort(key=lambda item: item.key.bucket_start, reverse=True)
        return rows

    def close(self) -> None:
        return


class PostgresStore:
    def __init__(self, dsn: str) -> None:
        self.dsn = dsn
        self.conn = psycopg2.connect(dsn)
        self.conn.autocommit = False

    @contextmanager
    def _cursor(self, dict_rows: bool = False) -> Iterator[Any]:
        cursor_factory = RealDictCursor if dict_rows else None
        try:
            with self.conn.cursor(cursor_factory=cursor_factory) as cur:
                yield cur
            self.conn.commit()
        except Exception:
            self.conn.rollback()
            raise

    def ensure_schema(self, path: Path | None = None) -> None:
        schema_path = path or (_repo_root() / 'migrations' / '001_init.sql')
        with self._cursor() as cur:
            cur.execute(schema_path.read_text(encoding='utf-8'))
        LOGGER.info('schema ensured path=%s', schema_path)

    def insert_events(self, events: Iterable[ChainEvent]) -> int:
        burns, messages, mints = _split_events(events)
        inserted = 0

        with self._cursor() as cur:
            if burns:
                rows = execute_values(
                    cur,
                    '''
                    INSERT INTO cctp_burns (
                      chain_domain,
                      tx_hash,
                      log_index,
                      block_number,
                      block_time,
                      nonce,
                      destination_domain,
                      amount,
                      token_type,
                      token_address,
                      sender,
                      mint_recipient,
                      min_finality_threshold,
                      max_fee,
                      cctp_version
                    )
                    VALUES %s
                    ON CONFLICT (chain_domain, tx_hash, log_index) DO NOTHING
                    RETURNING 1
                    ''',
                    [
                        (
                            burn.domain,
                            burn.tx_hash,
                            burn.log_index,
                            burn.block_number,
                            burn.timestamp,
                            burn.nonce,
                            burn.destination_domain,
                            burn.amount,
                            burn.token_type.value,
                            burn.token_address,
                            burn.sender,
                            burn.recipient,
                            burn.min_finality_threshold,
                            burn.max_fee,
                            burn.cctp_version
                        )
                        for burn in burns
                    ],
                    fetch=True
                )
                inserted += len(rows)

            if messages:
                rows = execute_values(
                    cur,
                    '''
                    INSERT INTO cctp_messages (
                      chain_domain,
                      tx_hash,
                      log_index,
                      kind,
                      block_number,
                      block_time,
                      source_domain,
                      destination_domain,
                      nonce,
                      payload
                    )
                    VALUES %s
                    ON CONFLICT (chain_domain, tx_hash, log_index) DO NOTHING
                    RETURNING 1
                    ''',
                    [self._message_row(message) for message in messages],
                    fetch=True
                )
                inserted += len(rows)

            if mints:
                rows = execute_values(
                    cur,
                    '''
                    INSERT INTO cctp_mints (
                      chain_domain,
                      tx_hash,
                      log_index,
                      block_number,
                      block_time,
                      source_domain,
                      amount,
                      token_type,
                      token_address,
                      mint_recipient
                    )
                    VALUES %s
                    ON CONFLICT (chain_domain, tx_hash, log_index) DO NOTHING
                    RETURNING 1
                    ''',
                    [
                        (
                            mint.domain,
                            mint.tx_hash,
                            mint.log_index,
                            mint.block_number,
                            mint.timestamp,
                            mint.source_domain,
                            mint.amount,
                            mint.token_type.value,
                            mint.token_address,
                            mint.recipient
                        )
                        for mint in mints
                    ],
                    fetch=True
                )
                inserted += len(rows)

        return inserted

    @staticmethod
    def _message_row(message: ChainEvent) -> tuple:
        if isinstance(message, MessageSentEvent):
            return (
                message.domain,
                message.tx_hash,
                message.log_index,
                'message_sent',
                message.block_number,
                message.timestamp,
                message.domain,
                message.destination_domain,
                message.nonce,
                message.message
            )
        if isinstance(message, MessageReceivedEvent):
            return (
                message.domain,
                message.tx_hash,
                message.log_index,
                'message_received',
                message.block_number,
                message.timestamp,
                message.source_domain,
                message.domain,
                message.nonce,
                message.caller
            )
        raise TypeError(f'not a message event: {type(message).__name__}')

    def get_checkpoint(self, domain: int) -> int:
        with self._cursor() as cur:
            cur.execute('SELECT last_block FROM cctp_checkpoints WHERE chain_domain = %s', (domain,))
            row = cur.fetchone()
        return int(row[0]) if row is not None else 0

    def set_checkpoint(self, domain: int, block_number: int) -> None:
        with self._cursor() as cur:
            cur.execute(
                '''
                INSERT INTO cctp_checkpoints (chain_domain, last_block, updated_at)
                VALUES (%s, %s, NOW())
                ON CONFLICT (chain_domain) DO UPDATE SET
                  last_block = GREATEST(cctp_checkpoints.last_block, EXCLUDED.last_block),
                  updated_at = NOW()
                ''',
                (domain, block_number)
            )

    def get_transfer(self, transfer_id: str) -> Transfer | None:
        with self._cursor(dict_rows=True) as cur:
            cur.execute('SELECT * FROM cctp_transfers WHERE transfer_id = %s', (transfer_id,))
            row = cur.fetchone()
        return _row_to_transfer(row) if row is not None else None

    def upsert_transfer(self, transfer: Transfer) -> bool:
        values = (
            transfer.transfer_id,
            transfer.source_domain,
            transfer.destination_domain,
            transfer.nonce,
            transfer.mode.value,
            transfer.token_type.value,
            transfer.amount,
            transfer.burn_tx_hash,
            transfer.mint_tx_hash,
            transfer.burn_at,
            transfer.attested_at,
            transfer.mint_at,
            transfer.status.value,
            transfer.error_reason,
            transfer.message_body,
            transfer.sender,
            transfer.recipient,
            transfer.min_finality_threshold,
            transfer.max_fee,
            transfer.finality_threshold_executed,
            transfer.cctp_version,
            transfer.burn_log_index
        )
        with self._cursor() as cur:
            cur.execute(
                f'''
                INSERT INTO cctp_transfers ({', '.join(_TRANSFER_COLUMNS)})
                VALUES ({', '.join(['%s'] * len(_TRANSFER_COLUMNS))})
                ON CONFLICT (transfer_id) DO UPDATE SET
                  mint_tx_hash = EXCLUDED.mint_tx_hash,
                  attested_at = EXCLUDED.attested_at,
                  mint_at = EXCLUDED.mint_at,
                  status = EXCLUDED.status,
                  error_reason = EXCLUDED.error_reason,
                  message_body = EXCLUDED.message_body,
                  finality_threshold_executed = EXCLUDED.finality_threshold_executed,
                  updated_at = NOW()
                WHERE cctp_transfers.status NOT IN %s
                RETURNING transfer_id
                ''',
                values + (_TERMINAL_VALUES,)
            )
            row = cur.fetchone()
        return row is not None

    def rekey_transfer(self, old_id: str, transfer: Transfer) -> bool:
        with self._cursor() as cur:
            cur.execute(
                '''
                UPDATE cctp_transfers SET
                  transfer_id = %s,
                  nonce = %s,
                  updated_at = NOW()
                WHERE transfer_id = %s
                  AND status NOT IN %s
                  AND NOT EXISTS (SELECT 1 FROM cctp_transfers WHERE transfer_id = %s)
                RETURNING transfer_id
                ''',
                (transfer.transfer_id, transfer.nonce, old_id, _TERMINAL_VALUES, transfer.transfer_id)
            )
            row = cur.fetchone()
        return row is not None

    def transfers_by_burn_tx(self, source_domain: int, tx_hash: str) -> list[Transfer]:
        with self._cursor(dict_rows=True) as cur:
            cur.execute(
                '''
                SELECT * FROM cctp_transfers
                WHERE source_domain = %s AND burn_tx_hash = %s
                ORDER BY burn_log_index ASC NULLS LAST, transfer_id ASC
                ''',
                (source_domain, tx_hash)
            )
            rows = cur.fetchall()
        return [_row_to_transfer(row) for row in rows]

    def transfers_by_mint_tx(self, destination_domain: int, tx_hash: str) -> list[Transfer]:
        with self._cursor(dict_rows=True) as cur:
            cur.execute(
                'SELECT * FROM cctp_transfers WHERE destination_domain = %s AND mint_tx_hash = %s',
                (destination_domain, tx_hash)
            )
            rows = cur.fetchall()
        return [_row_to_transfer(row) for row in rows]

    def transfers_by_status(
        self,
        statuses: Iterable[TransferStatus],
        burned_before: datetime | None = None,
        limit: int | None = None
    ) -> list[Transfer]:
        status_values = tuple(status.value for status in statuses)
        if not status_values:
            return []

        query = 'SELECT * FROM cctp_transfers WHERE status IN %s'
        params: list[Any] = [status_values]
        if burned_before is not None:
            query += ' AND burn_at < %s'
            params.append(burned_before)
        query += ' ORDER BY burn_at ASC, transfer_id ASC'
        if limit is not None:
            query += ' LIMIT %s'
            params.append(limit)

        with self._cursor(dict_rows=True) as cur:
            cur.execute(query, params)
            rows = cur.fetchall()
        return [_row_to_transfer(row) for row in rows]

    def merge_metrics(self, bucket: MetricsBucket) -> None:
        key = bucket.key
        with self._cursor() as cur:
            cur.execute(
                '''
                INSERT INTO cctp_transfer_metrics (
                  bucket_start,
                  from_chain,
                  to_chain,
                  mode,
                  token_type,
                  transfer_count,
                  volume_total,
                  sum_burn_to_mint_ms,
                  sum_burn_to_attestation_ms,
                  sum_attestation_to_mint_ms,
                  error_count,
                  incomplete_count
                )
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                ON CONFLICT (bucket_start, from_chain, to_chain, mode, token_type) DO UPDATE SET
                  transfer_count = cctp_transfer_metrics.transfer_count + EXCLUDED.transfer_count,
                  volume_total = cctp_transfer_metrics.volume_total + EXCLUDED.volume_total,
                  sum_burn_to_mint_ms = cctp_transfer_metrics.sum_burn_to_mint_ms + EXCLUDED.sum_burn_to_mint_ms,
                  sum_burn_to_attestation_ms =
                    cctp_transfer_metrics.sum_burn_to_attestation_ms + EXCLUDED.sum_burn_to_attestation_ms,
                  sum_attestation_to_mint_ms =
                    cctp_transfer_metrics.sum_attestation_to_mint_ms + EXCLUDED.sum_attestation_to_mint_ms,
                  error_count = cctp_transfer_metrics.error_count + EXCLUDED.error_count,
                  incomplete_count = cctp_transfer_metrics.incomplete_count + EXCLUDED.incomplete_count
                ''',
                (
                    key.bucket_start,
                    key.from_chain,
                    key.to_chain,
                    key.mode.value,
                    key.token_type.value,
                    bucket.transfer_count,
                    bucket.volume_total,
                    bucket.sum_burn_to_mint_ms,
                    bucket.sum_burn_to_attestation_ms,
                    bucket.sum_attestation_to_mint_ms,
                    bucket.error_count,
                    bucket.incomplete_count
                )
            )

    def metrics_in_range(self, start: datetime, end: datetime) -> list[MetricsBucket]:
        with self._cursor(dict_rows=True) as cur:
            cur.execute(
                '''
                SELECT * FROM cctp_transfer_metrics
                WHERE bucket_start >= %s AND bucket_start < %s
                ORDER BY bucket_start DESC
                ''',
                (start, end)
            )
            rows = cur.fetchall()

        return [
            MetricsBucket(
                key=MetricsBucketKey(
                    bucket_start=row['bucket_start'],
                    from_chain=int(row['from_chain']),
                    to_chain=int(row['to_chain']),
                    mode=TransferMode(row['mode']),
                    token_type=TokenType(row['token_type'])
                ),
                transfer_count=int(row['transfer_count']),
                volume_total=int(row['volume_total']),
                sum_burn_to_mint_ms=int(row['sum_burn_to_mint_ms']),
                sum_burn_to_attestation_ms=int(row['sum_burn_to_attestation_ms']),
                sum_attestation_to_mint_ms=int(row['sum_attestation_to_mint_ms']),
                error_count=int(row['error_count']),
                incomplete_count=int(row['incomplete_count'])
            )
            for row in rows
        ]

    def close(self) -> None:
        self.conn.close()


def _optional_int(value: Any) -> int | None:
    return int(value) if value is not None else None


def _row_to_transfer(row: dict[str, Any]) -> Transfer:
    return Transfer(
        source_domain=int(row['source_domain']),
        nonce=_optional_int(row['nonce']),
        destination_domain=int(row['destination_domain']),
        mode=TransferMode(row['mode']),
        token_type=TokenType(row['token_type']),
        amount=int(row['amount']),
        burn_tx_hash=row['burn_tx_hash'],
        burn_at=row['burn_at'],
        sender=row['sender'],
        recipient=row['recipient'],
        status=TransferStatus(row['status']),
        mint_tx_hash=row['mint_tx_hash'],
        attested_at=row['attested_at'],
        mint_at=row['mint_at'],
        error_reason=row['error_reason'],
        message_body=row['message_body'],
        min_finality_threshold=int(row['min_finality_threshold']),
        max_fee=int(row['max_fee']),
        finality_threshold_executed=_optional_int(row['finality_threshold_executed']),
        cctp_version=int(row['cctp_version']),
        burn_log_index=_optional_int(row['burn_log_index'])
    )
