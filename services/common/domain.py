from __future__ import annotations

from dataclasses import asdict, dataclass, field, fields
from datetime import datetime
from enum import Enum
from typing import Any, Union

from services.common.errors import DecodeError


class TransferStatus(str, Enum):
    BURN_INITIATED = 'BURN_INITIATED'
    MESSAGE_SENT = 'MESSAGE_SENT'
    ATTESTATION_PENDING = 'ATTESTATION_PENDING'
    ATTESTATION_COMPLETE = 'ATTESTATION_COMPLETE'
    RECEIVE_MESSAGE_PENDING = 'RECEIVE_MESSAGE_PENDING'
    MINT_COMPLETE = 'MINT_COMPLETE'
    ERROR = 'ERROR'

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES

    @property
    def rank(self) -> int:
        return _STATUS_RANK[self]


class TransferMode(str, Enum):
    FAST = 'FAST'
    STANDARD = 'STANDARD'


class TokenType(str, Enum):
    USDC = 'USDC'
    USYC = 'USYC'


class VmType(str, Enum):
    EVM = 'EVM'
    SOLANA = 'SOLANA'
    STARKNET = 'STARKNET'


TERMINAL_STATUSES = frozenset({TransferStatus.MINT_COMPLETE, TransferStatus.ERROR})

ATTESTATION_POLL_STATUSES = (
    TransferStatus.MESSAGE_SENT,
    TransferStatus.ATTESTATION_PENDING,
    TransferStatus.ATTESTATION_COMPLETE
)

_STATUS_RANK: dict[TransferStatus, int] = {
    TransferStatus.BURN_INITIATED: 0,
    TransferStatus.MESSAGE_SENT: 1,
    TransferStatus.ATTESTATION_PENDING: 2,
    TransferStatus.ATTESTATION_COMPLETE: 3,
    TransferStatus.RECEIVE_MESSAGE_PENDING: 4,
    TransferStatus.MINT_COMPLETE: 5,
    TransferStatus.ERROR: 5
}

FAST_FINALITY_THRESHOLD = 1000
STANDARD_FINALITY_THRESHOLD = 2000


def transfer_id(source_domain: int, nonce: int) -> str:
    return f'{source_domain}-{nonce}'


def provisional_transfer_id(source_domain: int, burn_tx_hash: str, burn_log_index: int | None) -> str:
    # v2 messages are emitted with a zero nonce; the attestation service assigns the real one.
    return f'{source_domain}-{burn_tx_hash}-{burn_log_index}'


@dataclass(frozen=True)
class BurnEvent:
    domain: int
    tx_hash: str
    log_index: int
    block_number: int
    timestamp: datetime
    nonce: int | None
    destination_domain: int
    amount: int
    sender: str
    recipient: str
    token_type: TokenType
    token_address: str
    min_finality_threshold: int = STANDARD_FINALITY_THRESHOLD
    max_fee: int = 0
    cctp_version: int = 1

    @property
    def idempotency_key(self) -> str:
        return f'{self.domain}:{self.tx_hash}:{self.log_index}'


@dataclass(frozen=True)
class MessageSentEvent:
    domain: int
    tx_hash: str
    log_index: int
    block_number: int
    timestamp: datetime
    # None for v2 messages, whose nonce is only known to the attestation service.
    nonce: int | None
    destination_domain: int
    message: str

    @property
    def idempotency_key(self) -> str:
        return f'{self.domain}:{self.tx_hash}:{self.log_index}'


@dataclass(frozen=True)
class MessageReceivedEvent:
    domain: int
    tx_hash: str
    log_index: int
    block_number: int
    timestamp: datetime
    source_domain: int
    nonce: int
    caller: str

    @property
    def idempotency_key(self) -> str:
        return f'{self.domain}:{self.tx_hash}:{self.log_index}'


@dataclass(frozen=True)
class MintEvent:
    domain: int
    tx_hash: str
    log_index: int
    block_number: int
    timestamp: datetime
    recipient: str
    amount: int
    token_type: TokenType
    token_address: str
    # None when the source domain could not be recovered from calldata.
    source_domain: int | None = None

    @property
    def idempotency_key(self) -> str:
        return f'{self.domain}:{self.tx_hash}:{self.log_index}'


ChainEvent = Union[BurnEvent, MessageSentEvent, MessageReceivedEvent, MintEvent]

_EVENT_KINDS: dict[str, type] = {
    'burn': BurnEvent,
    'message_sent': MessageSentEvent,
    'message_received': MessageReceivedEvent,
    'mint': MintEvent
}
_KIND_BY_TYPE = {cls: kind for kind, cls in _EVENT_KINDS.items()}
_BIG_INT_FIELDS = {'amount', 'nonce', 'max_fee'}


def event_kind(event: ChainEvent) -> str:
    return _KIND_BY_TYPE[type(event)]


def event_to_payload(event: ChainEvent) -> dict[str, Any]:
    payload: dict[str, Any] = {'kind': event_kind(event)}
    for item in fields(event):
        value = getattr(event, item.name)
        if isinstance(value, datetime):
            value = value.isoformat()
        elif isinstance(value, Enum):
            value = value.value
        elif item.name in _BIG_INT_FIELDS and value is not None:
            # uint256 values do not survive JSON consumers that parse numbers as doubles.
            value = str(value)
        payload[item.name] = value
    return payload


def event_from_payload(payload: dict[str, Any]) -> ChainEvent:
    kind = payload.get('kind')
    cls = _EVENT_KINDS.get(str(kind))
    if cls is None:
        raise DecodeError(f'unknown event kind: {kind}')

    values: dict[str, Any] = {}
    try:
        for item in fields(cls):
            if item.name not in payload:
                continue
            value = payload[item.name]
            if item.name == 'timestamp':
                value = datetime.fromisoformat(value)
            elif item.name == 'token_type':
                value = TokenType(value)
            elif item.name in _BIG_INT_FIELDS and value is not None:
                value = int(value)
            values[item.name] = value
        return cls(**values)
    except (TypeError, ValueError) as exc:
        raise DecodeError(f'malformed {kind} payload: {exc}') from exc


@dataclass
class Transfer:
    source_domain: int
    nonce: int | None
    destination_domain: int
    mode: TransferMode
    token_type: TokenType
    amount: int
    burn_tx_hash: str
    burn_at: datetime
    sender: str
    recipient: str
    status: TransferStatus = TransferStatus.BURN_INITIATED
    mint_tx_hash: str | None = None
    attested_at: datetime | None = None
    mint_at: datetime | None = None
    error_reason: str | None = None
    message_body: str | None = None
    min_finality_threshold: int = STANDARD_FINALITY_THRESHOLD
    max_fee: int = 0
    finality_threshold_executed: int | None = None
    cctp_version: int = 1
    burn_log_index: int | None = None

    @property
    def transfer_id(self) -> str:
        if self.nonce is None:
            return provisional_transfer_id(self.source_domain, self.burn_tx_hash, self.burn_log_index)
        return transfer_id(self.source_domain, self.nonce)

    @property
    def is_provisional(self) -> bool:
        return self.nonce is None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def update_payload(self) -> dict[str, Any]:
        return {
            'transferId': self.transfer_id,
            'sourceDomain': self.source_domain,
            'nonce': str(self.nonce) if self.nonce is not None else None,
            'destinationDomain': self.destination_domain,
            'status': self.status.value,
            'mode': self.mode.value,
            'tokenType': self.token_type.value,
            'amount': str(self.amount),
            'burnTxHash': self.burn_tx_hash,
            'burnAt': _iso(self.burn_at),
            'attestedAt': _iso(self.attested_at),
            'mintAt': _iso(self.mint_at),
            'errorReason': self.error_reason
        }


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


@dataclass(frozen=True)
class MetricsBucketKey:
    bucket_start: datetime
    from_chain: int
    to_chain: int
    mode: TransferMode
    token_type: TokenType


@dataclass
class MetricsBucket:
    key: MetricsBucketKey
    transfer_count: int = 0
    volume_total: int = 0
    sum_burn_to_mint_ms: int = 0
    sum_burn_to_attestation_ms: int = 0
    sum_attestation_to_mint_ms: int = 0
    error_count: int = 0
    incomplete_count: int = 0

    def merge(self, other: MetricsBucket) -> None:
        if other.key != self.key:
            raise ValueError(f'cannot merge bucket {other.key} into {self.key}')
        self.transfer_count += other.transfer_count
        self.volume_total += other.volume_total
        self.sum_burn_to_mint_ms += other.sum_burn_to_mint_ms
        self.sum_burn_to_attestation_ms += other.sum_burn_to_attestation_ms
        self.sum_attestation_to_mint_ms += other.sum_attestation_to_mint_ms
        self.error_count += other.error_count
        self.incomplete_count += other.incomplete_count

    def counters(self) -> dict[str, int]:
        values = asdict(self)
        values.pop('key')
        return values


@dataclass
class RouteMetrics:
    from_chain: int
    to_chain: int
    transfer_count: int = 0
    volume_total: int = 0
    avg_latency_ms: float = 0.0


@dataclass
class ChainMetrics:
    domain: int
    name: str
    inbound_count: int = 0
    outbound_count: int = 0
    inbound_volume: int = 0
    outbound_volume: int = 0
    avg_inbound_latency_ms: float = 0.0
    avg_outbound_latency_ms: float = 0.0

    @property
    def total_count(self) -> int:
        return self.inbound_count + self.outbound_count


@dataclass
class MetricsSummary:
    total_transfers: int = 0
    total_volume: int = 0
    fast_transfers: int = 0
    standard_transfers: int = 0
    error_count: int = 0
    avg_burn_to_mint_ms: float = 0.0
    avg_burn_to_attestation_ms: float = 0.0
    routes: dict[tuple[int, int], RouteMetrics] = field(default_factory=dict)
    chains: dict[int, ChainMetrics] = field(default_factory=dict)

    @property
    def fast_percentage(self) -> float:
        if self.total_transfers == 0:
            return 0.0
        return round(100.0 * self.fast_transfers / self.total_transfers, 2)

    def top_routes(self, limit: int = 5) -> list[RouteMetrics]:
        ordered = sorted(self.routes.values(), key=lambda item: (-item.transfer_count, item.from_chain, item.to_chain))
        return ordered[:limit]

    def busiest_chains(self) -> list[ChainMetrics]:
        return sorted(self.chains.values(), key=lambda item: (-item.total_count, item.domain))
