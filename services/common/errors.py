from __future__ import annotations


class CctpMonitorError(Exception):
    pass


class ProviderError(CctpMonitorError):
    """RPC node or HTTP service unreachable, timed out or rate limited."""

    def __init__(self, detail: str, *, domain: int | None = None) -> None:
        super().__init__(detail)
        self.detail = detail
        self.domain = domain


class DecodeError(CctpMonitorError):
    pass


class CorrelationMiss(CctpMonitorError):
    def __init__(self, detail: str, *, transfer_id: str | None = None) -> None:
        super().__init__(detail)
        self.detail = detail
        self.transfer_id = transfer_id


class AttestationFailure(CctpMonitorError):
    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason
