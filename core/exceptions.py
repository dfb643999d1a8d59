"""
Exceptions for river telemetry ingestion.
"""

from typing import Any, List, Optional


class IngestError(Exception):
    """Base exception for ingestion errors."""

    pass


class ConfigurationError(IngestError):
    """Missing or inconsistent runtime configuration."""

    pass


class ProviderError(IngestError):
    """Error talking to an upstream telemetry or weather provider."""

    pass


class ProviderTransportError(ProviderError):
    """Timeout, network failure, non-2xx status or undecodable body."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class CascadeExhaustedError(IngestError):
    """A role's cascade found no value and at least one station was unreachable."""

    def __init__(self, role: str, attempts: List[Any]):
        failed = [a for a in attempts if a.error]
        last = failed[-1].error if failed else "no attempts"
        super().__init__(f"{role}: unresolved, {len(failed)}/{len(attempts)} attempt(s) failed ({last})")
        self.role = role
        self.attempts = attempts


class StoreError(IngestError):
    """Persistence failure; carries the store's detail text."""

    def __init__(self, message: str, detail: Optional[str] = None):
        super().__init__(message if not detail else f"{message}: {detail}")
        self.detail = detail


class RunFatalError(IngestError):
    """The run cannot proceed at all (no ledger entry, no river list)."""

    def __init__(self, message: str, detail: Optional[str] = None, run_id: Optional[str] = None):
        super().__init__(message)
        self.detail = detail
        self.run_id = run_id
