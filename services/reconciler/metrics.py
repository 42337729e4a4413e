from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Iterable

from services.common.chains import chain_name
from services.common.domain import (
    ChainMetrics,
    MetricsBucket,
    MetricsBucketKey,
    MetricsSummary,
    RouteMetrics,
    Transfer,
    TransferMode,
    TransferStatus
)

LOGGER = logging.getLogger('cctpmon.metrics')

DEFAULT_BUCKET_SECONDS = 60
DEFAULT_ANOMALY_THRESHOLD = timedelta(minutes=30)

ANOMALY_PENDING_TOO_LONG = 'PENDING_TOO_LONG'
ANOMALY_NO_ATTESTATION = 'NO_ATTESTATION'
ANOMALY_NOT_MINTED = 'NOT_MINTED'

_ANOMALY_BY_STATUS = {
    TransferStatus.BURN_INITIATED: ANOMALY_PENDING_TOO_LONG,
    TransferStatus.MESSAGE_SENT: ANOMALY_PENDING_TOO_LONG,
    TransferStatus.ATTESTATION_PENDING: ANOMALY_NO_ATTESTATION,
    TransferStatus.ATTESTATION_COMPLETE: ANOMALY_NOT_MINTED,
    TransferStatus.RECEIVE_MESSAGE_PENDING: ANOMALY_NOT_MINTED
}


def _utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def bucket_start(value: datetime, interval_seconds: int = DEFAULT_BUCKET_SECONDS) -> datetime:
    epoch = int(_utc(value).timestamp())
    return datetime.fromtimestamp(epoch - epoch % interval_seconds, tz=timezone.utc)


def duration_ms(start: datetime | None, end: datetime | None) -> int:
    if start is None or end is None:
        return 0
    # Attestation time is wall clock while mint time is block time, so the difference can be negative.
    return max(0, int((_utc(end) - _utc(start)).total_seconds() * 1000))


class MetricsAggregator:
    def __init__(self, store: Any, interval_seconds: int = DEFAULT_BUCKET_SECONDS) -> None:
        self.store = store
        self.interval_seconds = interval_seconds

    def bucket_for(self, transfer: Transfer) -> MetricsBucket:
        key = MetricsBucketKey(
            bucket_start=bucket_start(transfer.burn_at, self.interval_seconds),
            from_chain=transfer.source_domain,
            to_chain=transfer.destination_domain,
            mode=transfer.mode,
            token_type=transfer.token_type
        )
        return MetricsBucket(
            key=key,
            transfer_count=1,
            volume_total=transfer.amount,
            sum_burn_to_mint_ms=duration_ms(transfer.burn_at, transfer.mint_at),
            sum_burn_to_attestation_ms=duration_ms(transfer.burn_at, transfer.attested_at),
            sum_attestation_to_mint_ms=duration_ms(transfer.attested_at, transfer.mint_at),
            error_count=1 if transfer.status is TransferStatus.ERROR else 0,
            incomplete_count=1 if transfer.status is not TransferStatus.MINT_COMPLETE else 0
        )

    def aggregate_transfer(self, transfer: Transfer) -> MetricsBucket | None:
        if not transfer.is_terminal:
            LOGGER.debug('aggregation skipped transfer_id=%s status=%s', transfer.transfer_id, transfer.status.value)
            return None

        bucket = self.bucket_for(transfer)
        self.store.merge_metrics(bucket)
        LOGGER.debug(
            'transfer aggregated transfer_id=%s bucket_start=%s',
            transfer.transfer_id,
            bucket.key.bucket_start.isoformat()
        )
        return bucket


def summarize(buckets: Iterable[MetricsBucket]) -> MetricsSummary:
    """Roll buckets up into totals, per-route and per-chain figures.

    Latency averages divide by completed transfers only; errored and
    unfinished transfers contribute zero durations to the sums.
    """
    summary = MetricsSummary()
    completed = 0
    attested = 0
    sum_burn_to_mint = 0
    sum_burn_to_attestation = 0
    route_latency: dict[tuple[int, int], list[int]] = {}
    inbound_latency: dict[int, list[int]] = {}
    outbound_latency: dict[int, list[int]] = {}

    for bucket in buckets:
        key = bucket.key
        summary.total_transfers += bucket.transfer_count
        summary.total_volume += bucket.volume_total
        summary.error_count += bucket.error_count
        if key.mode is TransferMode.FAST:
            summary.fast_transfers += bucket.transfer_count
        else:
            summary.standard_transfers += bucket.transfer_count

        bucket_completed = bucket.transfer_count - bucket.incomplete_count
        completed += bucket_completed
        attested += bucket.transfer_count - bucket.error_count
        sum_burn_to_mint += bucket.sum_burn_to_mint_ms
        sum_burn_to_attestation += bucket.sum_burn_to_attestation_ms

        route_key = (key.from_chain, key.to_chain)
        route = summary.routes.get(route_key)
        if route is None:
            route = summary.routes[route_key] = RouteMetrics(from_chain=key.from_chain, to_chain=key.to_chain)
        route.transfer_count += bucket.transfer_count
        route.volume_total += bucket.volume_total
        _add_latency(route_latency, route_key, bucket_completed, bucket.sum_burn_to_mint_ms)

        source = _chain_metrics(summary, key.from_chain)
        source.outbound_count += bucket.transfer_count
        source.outbound_volume += bucket.volume_total
        _add_latency(outbound_latency, key.from_chain, bucket_completed, bucket.sum_burn_to_mint_ms)

        destination = _chain_metrics(summary, key.to_chain)
        destination.inbound_count += bucket.transfer_count
        destination.inbound_volume += bucket.volume_total
        _add_latency(inbound_latency, key.to_chain, bucket_completed, bucket.sum_burn_to_mint_ms)

    if completed > 0:
        summary.avg_burn_to_mint_ms = sum_burn_to_mint / completed
    if attested > 0:
        summary.avg_burn_to_attestation_ms = sum_burn_to_attestation / attested

    for route_key, route in summary.routes.items():
        route.avg_latency_ms = _average(route_latency.get(route_key))
    for domain, chain in summary.chains.items():
        chain.avg_inbound_latency_ms = _average(inbound_latency.get(domain))
        chain.avg_outbound_latency_ms = _average(outbound_latency.get(domain))
    return summary


def _chain_metrics(summary: MetricsSummary, domain: int) -> ChainMetrics:
    chain = summary.chains.get(domain)
    if chain is None:
        chain = summary.chains[domain] = ChainMetrics(domain=domain, name=chain_name(domain))
    return chain


def _add_latency(sums: dict[Any, list[int]], key: Any, completed: int, total_ms: int) -> None:
    entry = sums.setdefault(key, [0, 0])
    entry[0] += completed
    entry[1] += total_ms


def _average(entry: list[int] | None) -> float:
    if not entry or entry[0] <= 0:
        return 0.0
    return entry[1] / entry[0]


@dataclass(frozen=True)
class Anomaly:
    kind: str
    transfer: Transfer
    age: timedelta


def find_anomalies(
    store: Any,
    now: datetime | None = None,
    threshold: timedelta = DEFAULT_ANOMALY_THRESHOLD,
    limit: int = 100
) -> list[Anomaly]:
    """Non-terminal transfers burned more than ``threshold`` ago, oldest first."""
    current = _utc(now or datetime.now(timezone.utc))
    cutoff = current - threshold
    stuck = store.transfers_by_status(_ANOMALY_BY_STATUS.keys(), burned_before=cutoff, limit=limit)
    return [
        Anomaly(
            kind=_ANOMALY_BY_STATUS[transfer.status],
            transfer=transfer,
            age=current - _utc(transfer.burn_at)
        )
        for transfer in stuck
    ]
