from __future__ import annotations

import logging
from collections import OrderedDict
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Callable

from prometheus_client import Counter

from services.common.chains import chain_name, determine_mode
from services.common.domain import (
    BurnEvent,
    ChainEvent,
    MessageReceivedEvent,
    MessageSentEvent,
    MintEvent,
    Transfer,
    TransferStatus,
    transfer_id
)
from services.common.errors import CorrelationMiss
from services.reconciler.attestation import AttestationResult

LOGGER = logging.getLogger('cctpmon.reconciler')

TRANSITIONS = Counter('cctp_transfer_transitions_total', 'Transfer status transitions', ['status'])
CORRELATION_MISSES = Counter('cctp_correlation_misses_total', 'Events that could not be joined to a transfer', ['kind'])


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _burn_tx_key(domain: int, tx_hash: str) -> str:
    return f'{domain}-{tx_hash}'


class TransferReconciler:
    """Owns the Transfer aggregate and advances it from chain events and attestation results.

    Transitions only move forward in status order; ERROR may be entered from
    any non-terminal status and terminal transfers are never modified.
    Message events that arrive before their burn are parked and replayed
    once the burn creates the transfer.

    v2 burns carry no nonce on chain. Such a transfer is keyed by its burn
    transaction and log index until the attestation service reports the
    nonce, then re-keyed to the usual ``<domain>-<nonce>`` id.
    """

    def __init__(
        self,
        store: Any,
        notifier: Any | None = None,
        aggregator: Any | None = None,
        *,
        clock: Callable[[], datetime] = _utcnow,
        orphan_limit: int = 1000,
        recent_mint_limit: int = 10_000
    ) -> None:
        self.store = store
        self.notifier = notifier
        self.aggregator = aggregator
        self.clock = clock
        self.orphan_limit = orphan_limit
        self.recent_mint_limit = recent_mint_limit
        self._active: dict[str, Transfer] = {}
        self._orphans: OrderedDict[str, list[ChainEvent]] = OrderedDict()
        self._orphan_count = 0
        self._parked_keys: set[str] = set()
        self._applied_mints: OrderedDict[str, str] = OrderedDict()

    def active_transfers(self) -> list[Transfer]:
        return [replace(transfer) for transfer in self._active.values()]

    def orphan_count(self) -> int:
        return self._orphan_count

    def is_parked(self, key: str) -> bool:
        return key in self._parked_keys

    def apply(self, event: ChainEvent) -> Transfer | None:
        if isinstance(event, BurnEvent):
            return self.handle_burn(event)
        if isinstance(event, MessageSentEvent):
            return self.handle_message_sent(event)
        if isinstance(event, MessageReceivedEvent):
            return self.handle_message_received(event)
        if isinstance(event, MintEvent):
            return self.handle_mint(event)
        raise TypeError(f'unsupported event type: {type(event).__name__}')

    def handle_burn(self, event: BurnEvent) -> Transfer | None:
        if self._burn_recorded(event):
            LOGGER.debug('burn replay ignored key=%s', event.idempotency_key)
            return None

        transfer = Transfer(
            source_domain=event.domain,
            nonce=event.nonce,
            destination_domain=event.destination_domain,
            mode=determine_mode(event.domain, event.min_finality_threshold),
            token_type=event.token_type,
            amount=event.amount,
            burn_tx_hash=event.tx_hash,
            burn_at=event.timestamp,
            sender=event.sender,
            recipient=event.recipient,
            min_finality_threshold=event.min_finality_threshold,
            max_fee=event.max_fee,
            cctp_version=event.cctp_version,
            burn_log_index=event.log_index
        )
        if not self._persist(transfer):
            return None

        tid = transfer.transfer_id
        LOGGER.info(
            'burn processed transfer_id=%s from=%s to=%s amount=%s mode=%s nonce_known=%s',
            tid,
            chain_name(event.domain),
            chain_name(event.destination_domain),
            event.amount,
            transfer.mode.value,
            not transfer.is_provisional
        )
        TRANSITIONS.labels(status=transfer.status.value).inc()
        self._notify(transfer)

        parked = self._take_orphans(tid)
        if transfer.is_provisional:
            parked.extend(self._take_orphans(_burn_tx_key(event.domain, event.tx_hash)))
        return self._replay(tid, parked, transfer)

    def _burn_recorded(self, event: BurnEvent) -> bool:
        if event.nonce is not None:
            return self._load(transfer_id(event.domain, event.nonce)) is not None
        # A resolved transfer no longer answers to its provisional id.
        return any(
            transfer.burn_log_index == event.log_index
            for transfer in self.store.transfers_by_burn_tx(event.domain, event.tx_hash)
        )

    def handle_message_sent(self, event: MessageSentEvent) -> Transfer | None:
        if event.nonce is None:
            return self._attach_unresolved_message(event)

        tid = transfer_id(event.domain, event.nonce)
        transfer = self._load(tid)
        if transfer is None:
            self._park(tid, event)
            return None
        return self._advance(transfer, TransferStatus.MESSAGE_SENT, message_body=event.message)

    def _attach_unresolved_message(self, event: MessageSentEvent) -> Transfer | None:
        # The transmitter logs MessageSent just before its DepositForBurn, so the message
        # belongs to the first burn after it in the same transaction.
        for transfer in self.store.transfers_by_burn_tx(event.domain, event.tx_hash):
            if transfer.burn_log_index is not None and transfer.burn_log_index > event.log_index:
                return self._advance(transfer, TransferStatus.MESSAGE_SENT, message_body=event.message)
        self._park(_burn_tx_key(event.domain, event.tx_hash), event)
        return None

    def handle_message_received(self, event: MessageReceivedEvent) -> Transfer | None:
        tid = transfer_id(event.source_domain, event.nonce)
        transfer = self._load(tid)
        if transfer is None:
            self._park(tid, event)
            return None
        return self._advance(transfer, TransferStatus.RECEIVE_MESSAGE_PENDING)

    def handle_mint(self, event: MintEvent) -> Transfer | None:
        key = event.idempotency_key
        if key in self._applied_mints or self._mint_recorded(event):
            LOGGER.debug('mint replay ignored key=%s', key)
            return None

        try:
            candidate = self._match_mint(event)
        except CorrelationMiss as miss:
            self._miss('mint', miss.detail)
            return None

        updated = self._advance(
            candidate,
            TransferStatus.MINT_COMPLETE,
            mint_at=event.timestamp,
            mint_tx_hash=event.tx_hash
        )
        if updated is not None:
            self._applied_mints[key] = updated.transfer_id
            while len(self._applied_mints) > self.recent_mint_limit:
                self._applied_mints.popitem(last=False)
        return updated

    def _mint_recorded(self, event: MintEvent) -> bool:
        recipient = event.recipient.lower()
        return any(
            transfer.recipient.lower() == recipient
            for transfer in self.store.transfers_by_mint_tx(event.domain, event.tx_hash)
        )

    def _match_mint(self, event: MintEvent) -> Transfer:
        # Heuristic join: mints carry no nonce, so take the oldest pending transfer to the same recipient.
        recipient = event.recipient.lower()
        for transfer in self.store.transfers_by_status([TransferStatus.RECEIVE_MESSAGE_PENDING]):
            if transfer.destination_domain != event.domain:
                continue
            if transfer.recipient.lower() != recipient:
                continue
            if event.source_domain is not None and transfer.source_domain != event.source_domain:
                continue
            return transfer
        raise CorrelationMiss(
            f'no pending transfer for mint domain={event.domain} recipient={event.recipient} '
            f'source={event.source_domain} tx={event.tx_hash}'
        )

    def apply_attestation(self, tid: str, result: AttestationResult | None) -> Transfer | None:
        transfer = self._load(tid)
        if transfer is None:
            LOGGER.warning('attestation for unknown transfer transfer_id=%s', tid)
            return None

        if not transfer.is_provisional or result is None or result.event_nonce is None:
            return self._attest(transfer, result)

        resolved = self._resolve_nonce(transfer, result.event_nonce)
        if resolved is None:
            return None
        updated = self._attest(resolved, result) or resolved
        # Destination events seen before the nonce was known were parked under the real id.
        return self._replay(resolved.transfer_id, self._take_orphans(resolved.transfer_id), updated)

    def _attest(self, transfer: Transfer, result: AttestationResult | None) -> Transfer | None:
        if result is None or not result.is_complete:
            if transfer.status is TransferStatus.MESSAGE_SENT:
                return self._advance(transfer, TransferStatus.ATTESTATION_PENDING)
            return None

        return self._advance(
            transfer,
            TransferStatus.ATTESTATION_COMPLETE,
            attested_at=self.clock(),
            finality_threshold_executed=result.finality_threshold_executed
        )

    def _resolve_nonce(self, transfer: Transfer, nonce: int) -> Transfer | None:
        provisional_id = transfer.transfer_id
        resolved = replace(transfer, nonce=nonce)
        if not self.store.rekey_transfer(provisional_id, resolved):
            self._miss('nonce_conflict', f'cannot resolve transfer_id={provisional_id} to {resolved.transfer_id}')
            return None

        self._active.pop(provisional_id, None)
        self._active[resolved.transfer_id] = resolved
        LOGGER.info('transfer nonce resolved provisional_id=%s transfer_id=%s', provisional_id, resolved.transfer_id)
        self._notify(resolved)
        return resolved

    def fail_transfer(self, tid: str, reason: str) -> Transfer | None:
        transfer = self._load(tid)
        if transfer is None:
            LOGGER.warning('failure for unknown transfer transfer_id=%s reason=%s', tid, reason)
            return None
        return self._advance(transfer, TransferStatus.ERROR, error_reason=reason)

    def _advance(self, transfer: Transfer, status: TransferStatus, **changes: Any) -> Transfer | None:
        if transfer.is_terminal:
            LOGGER.debug(
                'terminal transfer unchanged transfer_id=%s status=%s requested=%s',
                transfer.transfer_id,
                transfer.status.value,
                status.value
            )
            return None
        if status is not TransferStatus.ERROR and status.rank <= transfer.status.rank:
            LOGGER.debug(
                'stale transition ignored transfer_id=%s status=%s requested=%s',
                transfer.transfer_id,
                transfer.status.value,
                status.value
            )
            return None

        updated = replace(transfer, status=status, **changes)
        if not self._persist(updated):
            return None

        TRANSITIONS.labels(status=status.value).inc()
        log = LOGGER.warning if status is TransferStatus.ERROR else LOGGER.info
        log(
            'transfer advanced transfer_id=%s from=%s to=%s%s',
            updated.transfer_id,
            transfer.status.value,
            status.value,
            f' reason={updated.error_reason}' if status is TransferStatus.ERROR else ''
        )
        self._notify(updated)

        if updated.is_terminal and self.aggregator is not None:
            self.aggregator.aggregate_transfer(updated)
        return updated

    def _persist(self, transfer: Transfer) -> bool:
        if not self.store.upsert_transfer(transfer):
            # Another writer already finished this transfer.
            self._active.pop(transfer.transfer_id, None)
            LOGGER.debug('terminal row kept transfer_id=%s', transfer.transfer_id)
            return False

        if transfer.is_terminal:
            self._active.pop(transfer.transfer_id, None)
        else:
            self._active[transfer.transfer_id] = transfer
        return True

    def _load(self, tid: str) -> Transfer | None:
        cached = self._active.get(tid)
        if cached is not None:
            return cached

        transfer = self.store.get_transfer(tid)
        if transfer is not None and not transfer.is_terminal:
            self._active[tid] = transfer
        return transfer

    def _park(self, tid: str, event: ChainEvent) -> None:
        key = event.idempotency_key
        if key in self._parked_keys:
            LOGGER.debug('event already parked transfer_id=%s key=%s', tid, key)
            return

        self._orphans.setdefault(tid, []).append(event)
        self._orphans.move_to_end(tid)
        self._parked_keys.add(key)
        self._orphan_count += 1
        CORRELATION_MISSES.labels(kind='unknown_transfer').inc()
        LOGGER.debug('event parked for unknown transfer transfer_id=%s key=%s', tid, key)

        while self._orphan_count > self.orphan_limit:
            dropped_id, dropped = self._orphans.popitem(last=False)
            self._orphan_count -= len(dropped)
            self._parked_keys.difference_update(item.idempotency_key for item in dropped)
            LOGGER.warning('parked events dropped transfer_id=%s count=%s', dropped_id, len(dropped))

    def _take_orphans(self, tid: str) -> list[ChainEvent]:
        parked = self._orphans.pop(tid, [])
        self._orphan_count -= len(parked)
        self._parked_keys.difference_update(item.idempotency_key for item in parked)
        return parked

    def _replay(self, tid: str, parked: list[ChainEvent], current: Transfer) -> Transfer:
        for orphan in parked:
            LOGGER.debug('replaying parked event transfer_id=%s key=%s', tid, orphan.idempotency_key)
            updated = self.apply(orphan)
            if updated is not None:
                current = updated
        return current

    def _miss(self, kind: str, detail: str) -> None:
        CORRELATION_MISSES.labels(kind=kind).inc()
        LOGGER.warning('correlation miss kind=%s detail=%s', kind, detail)

    def _notify(self, transfer: Transfer) -> None:
        if self.notifier is None:
            return
        self.notifier.publish(replace(transfer))
