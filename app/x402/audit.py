# app/x402/audit.py
"""
Audit logging for x402 purchases.

This module logs payment and licensing events for:
- Dispute resolution
- Financial reconciliation
- Debugging failures

Log format: JSON lines (one event per line)
Log location: Configured via X402_AUDIT_LOG_PATH

Signatures are never written to the audit log.
"""
import json
import logging
import uuid
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional

from app.core.config import settings

logger = logging.getLogger(__name__)


class AuditEventType(Enum):
    """Types of audit events that can be logged."""
    PAYMENT_REQUIRED_SENT = "payment_required_sent"
    PAYMENT_RECEIVED = "payment_received"
    PAYMENT_VERIFIED = "payment_verified"
    PAYMENT_SETTLED = "payment_settled"
    PAYMENT_FAILED = "payment_failed"
    LICENSE_ISSUED = "license_issued"
    LICENSE_REUSED = "license_reused"
    CONTENT_DELIVERED = "content_delivered"
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
    """Create an audit event dictionary."""
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
    Log an audit event to the x402 audit log.

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

    except OSError as e:
        logger.error(f"Failed to write audit event: {e}")
        return None


# Convenience functions for specific event types

def log_payment_required_sent(
    client_ip: Optional[str],
    resource_id: str,
    amount: str,
    network: str,
    pay_to: str,
    request_id: Optional[str] = None
) -> Optional[str]:
    """Log a 402 Payment Required response event."""
    return log_audit_event(
        event_type=AuditEventType.PAYMENT_REQUIRED_SENT,
        data={
            "resource_id": resource_id,
            "amount": amount,
            "network": network,
            "pay_to": pay_to,
        },
        client_ip=client_ip,
        request_id=request_id
    )


def log_payment_received(
    client_ip: Optional[str],
    payer: Optional[str],
    resource_id: str,
    proof: Dict[str, Any],
    request_id: Optional[str] = None
) -> Optional[str]:
    """Log a payment proof received event. ``proof`` must already be redacted."""
    return log_audit_event(
        event_type=AuditEventType.PAYMENT_RECEIVED,
        data={
            "resource_id": resource_id,
            "proof": proof,
        },
        client_ip=client_ip,
        wallet_address=payer,
        request_id=request_id
    )


def log_payment_verified(
    client_ip: Optional[str],
    payer: Optional[str],
    is_valid: bool,
    invalid_reason: Optional[str] = None,
    mode: Optional[str] = None,
    request_id: Optional[str] = None
) -> Optional[str]:
    """Log a payment verification event."""
    return log_audit_event(
        event_type=AuditEventType.PAYMENT_VERIFIED,
        data={
            "is_valid": is_valid,
            "invalid_reason": invalid_reason,
            "mode": mode,
        },
        client_ip=client_ip,
        wallet_address=payer,
        request_id=request_id
    )


def log_payment_settled(
    client_ip: Optional[str],
    payer: Optional[str],
    transaction_ref: Optional[str],
    network: Optional[str],
    success: bool,
    error_reason: Optional[str] = None,
    request_id: Optional[str] = None
) -> Optional[str]:
    """Log a payment settlement event."""
    return log_audit_event(
        event_type=AuditEventType.PAYMENT_SETTLED,
        data={
            "success": success,
            "transaction_ref": transaction_ref,
            "network": network,
            "error_reason": error_reason,
        },
        client_ip=client_ip,
        wallet_address=payer,
        request_id=request_id
    )


def log_payment_failed(
    client_ip: Optional[str],
    reason: str,
    stage: str,
    wallet_address: Optional[str] = None,
    request_id: Optional[str] = None
) -> Optional[str]:
    """Log a payment failure event."""
    return log_audit_event(
        event_type=AuditEventType.PAYMENT_FAILED,
        data={
            "reason": reason,
            "stage": stage,
        },
        client_ip=client_ip,
        wallet_address=wallet_address,
        request_id=request_id
    )


def log_license_issued(
    client_ip: Optional[str],
    license_id: str,
    resource_id: str,
    buyer: str,
    transaction_ref: str,
    request_id: Optional[str] = None
) -> Optional[str]:
    """Log a new license."""
    return log_audit_event(
        event_type=AuditEventType.LICENSE_ISSUED,
        data={
            "license_id": license_id,
            "resource_id": resource_id,
            "transaction_ref": transaction_ref,
        },
        client_ip=client_ip,
        wallet_address=buyer,
        request_id=request_id
    )


def log_license_reused(
    client_ip: Optional[str],
    license_id: str,
    resource_id: str,
    buyer: str,
    request_id: Optional[str] = None
) -> Optional[str]:
    """Log content served from an existing license."""
    return log_audit_event(
        event_type=AuditEventType.LICENSE_REUSED,
        data={
            "license_id": license_id,
            "resource_id": resource_id,
        },
        client_ip=client_ip,
        wallet_address=buyer,
        request_id=request_id
    )


def log_content_delivered(
    client_ip: Optional[str],
    resource_id: str,
    license_id: str,
    size_bytes: int,
    wallet_address: Optional[str] = None,
    request_id: Optional[str] = None
) -> Optional[str]:
    """Log decrypted content leaving the server."""
    return log_audit_event(
        event_type=AuditEventType.CONTENT_DELIVERED,
        data={
            "resource_id": resource_id,
            "license_id": license_id,
            "size_bytes": size_bytes,
        },
        client_ip=client_ip,
        wallet_address=wallet_address,
        request_id=request_id
    )


def log_error(
    client_ip: Optional[str],
    error_type: str,
    error_message: str,
    context: Optional[Dict[str, Any]] = None,
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
    client_ip: Optional[str] = None
) -> list:
    """
    Read entries from the audit log.

    Args:
        max_entries: Maximum number of entries to return
        event_type: Filter by event type (optional)
        client_ip: Filter by client IP (optional)

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
                    continue
                if event_type and event.get("event_type") != event_type.value:
                    continue
                if client_ip and event.get("client_ip") != client_ip:
                    continue
                events.append(event)
    except OSError as e:
        logger.error(f"Failed to read audit log: {e}")
        return []

    # Return most recent first, limited to max_entries
    return list(reversed(events))[:max_entries]
