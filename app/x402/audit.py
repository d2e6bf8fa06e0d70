# app/x402/audit.py
"""
Audit logging for x402 content purchases.

This module records every payment-relevant decision for:
- Dispute resolution (was a challenge issued, was access granted)
- Reconciling sponsored gas spend
- Spotting systemic faults (sponsor version conflicts)

Log format: JSON lines (one event per line)
Log location: Configured via X402_AUDIT_LOG_PATH

Events logged:
- Challenge issued (content, price, recipient, target)
- Access granted (content, receipt found)
- Access check failed (ledger unreachable, request failed closed)
- Content registered (content, creator, price)
- Transaction submitted / settled / failed (digest, sponsor, cause)
- Version conflict (sponsor gas coin reused; should never happen)
- Error (type, context)

read_audit_log() returns recent events, most recent first.
"""
import json
import logging
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Any, Optional
from enum import Enum

from app.core.config import settings

logger = logging.getLogger(__name__)


class AuditEventType(Enum):
    """Types of audit events that can be logged."""
    CHALLENGE_ISSUED = "challenge_issued"
    ACCESS_GRANTED = "access_granted"
    ACCESS_CHECK_FAILED = "access_check_failed"
    CONTENT_REGISTERED = "content_registered"
    TRANSACTION_SUBMITTED = "transaction_submitted"
    TRANSACTION_SETTLED = "transaction_settled"
    TRANSACTION_FAILED = "transaction_failed"
    VERSION_CONFLICT = "version_conflict"
    ERROR = "error"


def generate_request_id() -> str:
    """Generate a unique request ID for tracking."""
    return str(uuid.uuid4())[:8]


def get_audit_log_path() -> Path:
    """Get the path to the audit log file."""
    return Path(settings.X402_AUDIT_LOG_PATH)


def create_audit_event(
    event_type: AuditEventType,
    data: Dict[str, Any],
    client_ip: Optional[str] = None,
    wallet_address: Optional[str] = None,
    request_id: Optional[str] = None
) -> Dict[str, Any]:
    """
    Create an audit event dictionary.

    Args:
        event_type: Type of event to log
        data: Event-specific data
        client_ip: Client IP address (if available)
        wallet_address: Requester wallet address (if available)
        request_id: Unique request identifier (if available)

    Returns:
        A structured event ready to be written to the audit log
    """
    return {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "event_type": event_type.value,
        "request_id": request_id or generate_request_id(),
        "client_ip": client_ip,
        "wallet_address": wallet_address,
        "data": data
    }


def log_audit_event(
    event_type: AuditEventType,
    data: Dict[str, Any],
    client_ip: Optional[str] = None,
    wallet_address: Optional[str] = None,
    request_id: Optional[str] = None
) -> Optional[str]:
    """
    Append an audit event to the audit log.

    Write failures are logged and never propagate to the caller.

    Returns:
        The request_id used for this event, or None on error
    """
    event = create_audit_event(
        event_type=event_type,
        data=data,
        client_ip=client_ip,
        wallet_address=wallet_address,
        request_id=request_id
    )

    try:
        log_path = get_audit_log_path()
        log_path.parent.mkdir(parents=True, exist_ok=True)
        with open(log_path, "a") as f:
            f.write(json.dumps(event) + "\n")

        logger.debug(f"Audit event logged: {event_type.value} [{event['request_id']}]")
        return event["request_id"]

    except (OSError, TypeError, ValueError) as e:
        logger.error(f"Failed to write audit event {event_type.value}: {e}")
        return None


# Convenience functions for specific event types

def log_challenge_issued(
    content_id: str,
    requester: str,
    price: int,
    recipient: str,
    target: str,
    client_ip: Optional[str] = None,
    request_id: Optional[str] = None
) -> Optional[str]:
    """Log a 402 Payment Required challenge."""
    return log_audit_event(
        event_type=AuditEventType.CHALLENGE_ISSUED,
        data={
            "content_id": content_id,
            "price": str(price),
            "recipient": recipient,
            "target": target,
        },
        client_ip=client_ip,
        wallet_address=requester,
        request_id=request_id
    )


def log_access_granted(
    content_id: str,
    requester: str,
    client_ip: Optional[str] = None,
    request_id: Optional[str] = None
) -> Optional[str]:
    """Log gated content being served."""
    return log_audit_event(
        event_type=AuditEventType.ACCESS_GRANTED,
        data={"content_id": content_id},
        client_ip=client_ip,
        wallet_address=requester,
        request_id=request_id
    )


def log_access_check_failed(
    content_id: str,
    requester: str,
    reason: str,
    request_id: Optional[str] = None
) -> Optional[str]:
    """Log a ledger query failure that made the gate fail closed."""
    return log_audit_event(
        event_type=AuditEventType.ACCESS_CHECK_FAILED,
        data={
            "content_id": content_id,
            "reason": reason,
            "failed_closed": True,
        },
        wallet_address=requester,
        request_id=request_id
    )


def log_content_registered(
    content_id: str,
    creator: str,
    price: int,
    client_ip: Optional[str] = None,
    request_id: Optional[str] = None
) -> Optional[str]:
    """Log a content registration."""
    return log_audit_event(
        event_type=AuditEventType.CONTENT_REGISTERED,
        data={
            "content_id": content_id,
            "price": str(price),
        },
        client_ip=client_ip,
        wallet_address=creator,
        request_id=request_id
    )


def log_transaction_submitted(
    sponsor: Optional[str],
    gas_object_id: Optional[str],
    gas_version: Optional[int],
    content_id: Optional[str] = None,
    requester: Optional[str] = None,
    request_id: Optional[str] = None
) -> Optional[str]:
    """Log a transaction handed to the ledger."""
    return log_audit_event(
        event_type=AuditEventType.TRANSACTION_SUBMITTED,
        data={
            "content_id": content_id,
            "sponsor": sponsor,
            "gas_object_id": gas_object_id,
            "gas_version": gas_version,
        },
        wallet_address=requester,
        request_id=request_id
    )


def log_transaction_settled(
    digest: str,
    sponsor: Optional[str],
    content_id: Optional[str] = None,
    requester: Optional[str] = None,
    request_id: Optional[str] = None
) -> Optional[str]:
    """Log a transaction that finalized successfully."""
    return log_audit_event(
        event_type=AuditEventType.TRANSACTION_SETTLED,
        data={
            "digest": digest,
            "sponsor": sponsor,
            "content_id": content_id,
        },
        wallet_address=requester,
        request_id=request_id
    )


def log_transaction_failed(
    cause: str,
    stage: str,
    digest: Optional[str] = None,
    content_id: Optional[str] = None,
    requester: Optional[str] = None,
    request_id: Optional[str] = None
) -> Optional[str]:
    """Log a submission that did not succeed."""
    return log_audit_event(
        event_type=AuditEventType.TRANSACTION_FAILED,
        data={
            "cause": cause,
            "stage": stage,
            "digest": digest,
            "content_id": content_id,
        },
        wallet_address=requester,
        request_id=request_id
    )


def log_version_conflict(
    sponsor: str,
    gas_object_id: Optional[str],
    gas_version: Optional[int],
    error_message: str,
    digest: Optional[str] = None,
    request_id: Optional[str] = None
) -> Optional[str]:
    """Log a sponsor gas coin version conflict."""
    return log_audit_event(
        event_type=AuditEventType.VERSION_CONFLICT,
        data={
            "sponsor": sponsor,
            "gas_object_id": gas_object_id,
            "gas_version": gas_version,
            "digest": digest,
            "error_message": error_message,
        },
        request_id=request_id
    )


def log_error(
    error_type: str,
    error_message: str,
    context: Optional[Dict[str, Any]] = None,
    client_ip: Optional[str] = None,
    wallet_address: Optional[str] = None,
    request_id: Optional[str] = None
) -> Optional[str]:
    """Log an error event."""
    return log_audit_event(
        event_type=AuditEventType.ERROR,
        data={
            "error_type": error_type,
            "error_message": error_message,
            "context": context or {},
        },
        client_ip=client_ip,
        wallet_address=wallet_address,
        request_id=request_id
    )


def read_audit_log(
    max_entries: int = 100,
    event_type: Optional[AuditEventType] = None,
    wallet_address: Optional[str] = None
) -> list:
    """
    Read entries from the audit log.

    Args:
        max_entries: Maximum number of entries to return
        event_type: Filter by event type (optional)
        wallet_address: Filter by requester/creator address (optional)

    Returns:
        List of audit events (most recent first)
    """
    log_path = get_audit_log_path()
    if not log_path.exists():
        return []

    events = []
    try:
        with open(log_path, "r") as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                try:
                    event = json.loads(line)
                except json.JSONDecodeError:
                    logger.warning(f"Skipping malformed audit line in {log_path}")
                    continue
                if event_type and event.get("event_type") != event_type.value:
                    continue
                if wallet_address and event.get("wallet_address") != wallet_address:
                    continue
                events.append(event)
    except OSError as e:
        logger.error(f"Failed to read audit log: {e}")
        return []

    return list(reversed(events))[:max_entries]
