# app/x402/errors.py
"""
Error taxonomy for the x402 content gateway.

Every failure that crosses a component boundary is one of these types.
Endpoints translate them into HTTP status codes; nothing below the
endpoint layer knows about HTTP.
"""
from typing import Any, Dict, Optional


class X402Error(Exception):
    """Base exception for all gateway errors."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}


class InvalidInput(X402Error):
    """Caller-supplied fields are missing or malformed. Never retried."""


class NotFound(X402Error):
    """Unknown content identifier."""


class Unavailable(X402Error):
    """The gateway is not bound to a deployed package or lacks configuration."""


class UpstreamQueryFailed(X402Error):
    """A read against the ledger (access check, receipt listing) failed."""


class ExecutionFailed(X402Error):
    """
    A submission did not reach a successful terminal state.

    Attributes:
        cause: Short machine-readable reason ("timeout", "upstream_unavailable",
            "stale_sponsor_resource", "stale_gas_reference", ...)
        digest: Transaction digest, when the ledger assigned one
        stage: Coordinator stage reached when the failure happened
    """

    def __init__(
        self,
        message: str,
        cause: str,
        digest: Optional[str] = None,
        stage: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message, details)
        self.cause = cause
        self.digest = digest
        self.stage = stage
