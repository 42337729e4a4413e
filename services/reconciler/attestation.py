from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable

import requests
from prometheus_client import Counter

from services.common.domain import ATTESTATION_POLL_STATUSES, Transfer
from services.common.errors import AttestationFailure, ProviderError

LOGGER = logging.getLogger('cctpmon.attestation')

IRIS_API_BASE_URL = 'https://iris-api.circle.com'

HTTP_NOT_FOUND = 404
HTTP_TOO_MANY_REQUESTS = 429

ATTESTATION_REQUESTS = Counter(
    'cctp_attestation_requests_total',
    'Attestation service lookups by outcome',
    ['outcome']
)


@dataclass(frozen=True)
class AttestationResult:
    status: str
    attestation: str | None = None
    message: str | None = None
    finality_threshold_executed: int | None = None
    # Nonce the attestation service assigned; v2 messages are emitted on chain without one.
    event_nonce: int | None = None

    @property
    def is_complete(self) -> bool:
        return self.status == 'complete'


def _optional_int(value: Any) -> int | None:
    if value in (None, ''):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def parse_event_nonce(value: Any) -> int | None:
    """v1 nonces are reported as decimal strings, v2 nonces as 0x-prefixed bytes32."""
    if value in (None, ''):
        return None
    text = str(value).strip()
    try:
        if text.lower().startswith('0x'):
            return int(text, 16)
        return int(text)
    except ValueError:
        return None


def _decoded_body(message: dict[str, Any]) -> dict[str, Any]:
    decoded = message.get('decodedMessage')
    if not isinstance(decoded, dict):
        return {}
    body = decoded.get('decodedMessageBody')
    return body if isinstance(body, dict) else {}


def _same_address(left: Any, right: Any) -> bool:
    # Message bodies carry recipients as bytes32; compare the low 20 bytes.
    left_hex = str(left or '').lower().removeprefix('0x')
    right_hex = str(right or '').lower().removeprefix('0x')
    return bool(left_hex) and left_hex[-40:] == right_hex[-40:]


def select_message(
    messages: list[dict[str, Any]],
    nonce: int | None = None,
    amount: int | None = None,
    recipient: str | None = None
) -> dict[str, Any] | None:
    """Pick the message belonging to one burn out of a transaction lookup.

    A known nonce must match ``eventNonce``. Without one, a single message is
    taken as is and several are narrowed by burn amount and mint recipient.
    """
    if nonce is not None:
        for message in messages:
            if parse_event_nonce(message.get('eventNonce')) == nonce:
                return message
        return None

    if len(messages) == 1:
        return messages[0]

    for message in messages:
        body = _decoded_body(message)
        if amount is not None and _optional_int(body.get('amount')) != amount:
            continue
        if recipient is not None and not _same_address(body.get('mintRecipient'), recipient):
            continue
        return message
    return None


class AttestationClient:
    """Reads message attestations from the Iris API.

    Lookups return None while the service has no record of the message, a
    pending or complete ``AttestationResult`` otherwise, and raise
    ``AttestationFailure`` when the service reports the message as failed.
    """

    def __init__(
        self,
        base_url: str = IRIS_API_BASE_URL,
        timeout: float = 10.0,
        session: requests.Session | None = None
    ) -> None:
        self.base_url = base_url.rstrip('/')
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.headers.update({'Content-Type': 'application/json'})

    def get_message(self, source_domain: int, nonce: int) -> AttestationResult | None:
        messages = self._fetch_messages(source_domain, {'nonce': str(nonce)})
        if not messages:
            ATTESTATION_REQUESTS.labels(outcome='not_found').inc()
            return None
        return self._to_result(messages[0])

    def get_transaction_message(
        self,
        source_domain: int,
        tx_hash: str,
        *,
        nonce: int | None = None,
        amount: int | None = None,
        recipient: str | None = None
    ) -> AttestationResult | None:
        messages = self._fetch_messages(source_domain, {'transactionHash': tx_hash})
        message = select_message(messages, nonce=nonce, amount=amount, recipient=recipient)
        if message is None:
            ATTESTATION_REQUESTS.labels(outcome='not_found').inc()
            return None
        return self._to_result(message)

    def _fetch_messages(self, source_domain: int, params: dict[str, str]) -> list[dict[str, Any]]:
        url = f'{self.base_url}/v2/messages/{source_domain}'
        try:
            response = self.session.get(url, params=params, timeout=self.timeout)
        except requests.RequestException as exc:
            ATTESTATION_REQUESTS.labels(outcome='network_error').inc()
            raise ProviderError(f'attestation request failed: {exc}', domain=source_domain) from exc

        if response.status_code == HTTP_NOT_FOUND:
            return []
        if response.status_code == HTTP_TOO_MANY_REQUESTS or response.status_code >= 500:
            ATTESTATION_REQUESTS.labels(outcome='unavailable').inc()
            raise ProviderError(
                f'attestation service returned {response.status_code}',
                domain=source_domain
            )

        try:
            response.raise_for_status()
            payload = response.json()
        except (requests.HTTPError, ValueError) as exc:
            ATTESTATION_REQUESTS.labels(outcome='bad_response').inc()
            raise ProviderError(f'unexpected attestation response: {exc}', domain=source_domain) from exc

        messages = payload.get('messages') if isinstance(payload, dict) else None
        return [message for message in messages or [] if isinstance(message, dict)]

    @staticmethod
    def _to_result(message: dict[str, Any]) -> AttestationResult:
        status = str(message.get('status', '')).lower()
        attestation = message.get('attestation')

        if status == 'failed':
            ATTESTATION_REQUESTS.labels(outcome='failed').inc()
            raise AttestationFailure(str(message.get('error') or 'Attestation failed'))

        decoded = message.get('decodedMessage') if isinstance(message.get('decodedMessage'), dict) else {}
        finality = _optional_int(message.get('finalityThresholdExecuted', decoded.get('finalityThresholdExecuted')))
        event_nonce = parse_event_nonce(message.get('eventNonce', decoded.get('nonce')))

        if status == 'complete' and attestation and attestation != 'PENDING':
            ATTESTATION_REQUESTS.labels(outcome='complete').inc()
            return AttestationResult(
                status='complete',
                attestation=str(attestation),
                message=message.get('message'),
                finality_threshold_executed=finality,
                event_nonce=event_nonce
            )

        ATTESTATION_REQUESTS.labels(outcome='pending').inc()
        return AttestationResult(status='pending', message=message.get('message'), event_nonce=event_nonce)


@dataclass
class PollReport:
    checked: int = 0
    advanced: int = 0
    failed: int = 0
    errors: dict[str, str] = field(default_factory=dict)


class AttestationPoller:
    def __init__(
        self,
        store: Any,
        client: AttestationClient,
        reconciler: Any,
        *,
        request_delay_seconds: float = 0.1,
        batch_limit: int | None = None,
        sleep: Callable[[float], None] = time.sleep
    ) -> None:
        self.store = store
        self.client = client
        self.reconciler = reconciler
        self.request_delay_seconds = request_delay_seconds
        self.batch_limit = batch_limit
        self._sleep = sleep

    def poll_once(self) -> PollReport:
        report = PollReport()
        pending = self.store.transfers_by_status(ATTESTATION_POLL_STATUSES, limit=self.batch_limit)
        LOGGER.debug('polling attestations pending=%s', len(pending))

        for position, transfer in enumerate(pending):
            report.checked += 1
            try:
                result = self._lookup(transfer)
            except AttestationFailure as exc:
                if self.reconciler.fail_transfer(transfer.transfer_id, exc.reason) is not None:
                    report.failed += 1
            except ProviderError as exc:
                report.errors[transfer.transfer_id] = exc.detail
                LOGGER.warning('attestation lookup failed transfer_id=%s reason=%s', transfer.transfer_id, exc.detail)
            else:
                if self.reconciler.apply_attestation(transfer.transfer_id, result) is not None:
                    report.advanced += 1

            if position < len(pending) - 1:
                self._sleep(self.request_delay_seconds)

        if report.advanced or report.failed:
            LOGGER.info(
                'attestation poll checked=%s advanced=%s failed=%s errors=%s',
                report.checked,
                report.advanced,
                report.failed,
                len(report.errors)
            )
        return report

    def _lookup(self, transfer: Transfer) -> AttestationResult | None:
        # v2 nonces are assigned off chain, so v2 messages are found through their burn transaction.
        if transfer.nonce is None or transfer.cctp_version >= 2:
            return self.client.get_transaction_message(
                transfer.source_domain,
                transfer.burn_tx_hash,
                nonce=transfer.nonce,
                amount=transfer.amount,
                recipient=transfer.recipient
            )
        return self.client.get_message(transfer.source_domain, transfer.nonce)
