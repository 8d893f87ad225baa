# x402gate/protocol/audit.py
"""
Audit trail for x402 payments.

Every challenge, payment, settlement and rejection is appended to a JSON
lines file (one event per line) at X402_AUDIT_LOG_PATH. Rejections carry the
raw transfer facts observed on-chain so disputes can be resolved later.

Writing the trail never fails a payment: I/O errors are logged and the
helpers return None.
"""
import json
import logging
import uuid
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

from x402gate.core.config import settings

logger = logging.getLogger(__name__)


class AuditEventType(Enum):
    PAYMENT_REQUIRED_SENT = "payment_required_sent"
    PAYMENT_RECEIVED = "payment_received"
    PAYMENT_VERIFIED = "payment_verified"
    PAYMENT_SETTLED = "payment_settled"
    PAYMENT_FAILED = "payment_failed"
    PAYMENT_REJECTED = "payment_rejected"
    REPLAY_DETECTED = "replay_detected"
    ERROR = "error"


def generate_request_id() -> str:
    return uuid.uuid4().hex[:8]


def get_audit_log_path() -> Path:
    return Path(settings.X402_AUDIT_LOG_PATH)


def create_audit_event(
    event_type: AuditEventType,
    data: Dict[str, Any],
    client_ip: Optional[str] = None,
    wallet_address: Optional[str] = None,
    request_id: Optional[str] = None,
) -> Dict[str, Any]:
    return {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "event_type": event_type.value,
        "request_id": request_id or generate_request_id(),
        "client_ip": client_ip,
        "wallet_address": wallet_address,
        "data": data,
    }


def log_audit_event(
    event_type: AuditEventType,
    data: Dict[str, Any],
    client_ip: Optional[str] = None,
    wallet_address: Optional[str] = None,
    request_id: Optional[str] = None,
) -> Optional[str]:
    """
    Append an event to the audit log.

    Returns:
        The request_id of the event, or None if it could not be written
    """
    event = create_audit_event(event_type, data, client_ip, wallet_address, request_id)
    log_path = get_audit_log_path()
    try:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        with open(log_path, "a") as f:
            f.write(json.dumps(event, default=str) + "\n")
    except OSError as e:
        logger.error(f"Failed to write audit event {event_type.value} to {log_path}: {e}")
        return None

    logger.debug(f"Audit event logged: {event_type.value} [{event['request_id']}]")
    return event["request_id"]


def log_payment_required_sent(
    client_ip: str,
    amount: str,
    asset: str,
    network: str,
    pay_to: str,
    resource: str,
    request_id: Optional[str] = None,
) -> Optional[str]:
    return log_audit_event(
        AuditEventType.PAYMENT_REQUIRED_SENT,
        {"amount": amount, "asset": asset, "network": network, "pay_to": pay_to, "resource": resource},
        client_ip=client_ip,
        request_id=request_id,
    )


def log_payment_received(
    client_ip: str,
    payer: Optional[str],
    amount: Optional[int],
    network: str,
    request_id: Optional[str] = None,
) -> Optional[str]:
    return log_audit_event(
        AuditEventType.PAYMENT_RECEIVED,
        {"amount": amount, "network": network},
        client_ip=client_ip,
        wallet_address=payer,
        request_id=request_id,
    )


def log_payment_verified(
    signature: str,
    payer: Optional[str],
    recipient: str,
    amount: int,
    asset: str,
    client_ip: Optional[str] = None,
    request_id: Optional[str] = None,
) -> Optional[str]:
    return log_audit_event(
        AuditEventType.PAYMENT_VERIFIED,
        {"signature": signature, "recipient": recipient, "amount": amount, "asset": asset},
        client_ip=client_ip,
        wallet_address=payer,
        request_id=request_id,
    )


def log_payment_settled(
    client_ip: str,
    payer: Optional[str],
    transaction: Optional[str],
    network: Optional[str],
    success: bool,
    error_reason: Optional[str] = None,
    request_id: Optional[str] = None,
) -> Optional[str]:
    return log_audit_event(
        AuditEventType.PAYMENT_SETTLED,
        {"success": success, "transaction": transaction, "network": network, "error_reason": error_reason},
        client_ip=client_ip,
        wallet_address=payer,
        request_id=request_id,
    )


def log_payment_failed(
    client_ip: Optional[str],
    reason: str,
    stage: str,
    wallet_address: Optional[str] = None,
    request_id: Optional[str] = None,
) -> Optional[str]:
    return log_audit_event(
        AuditEventType.PAYMENT_FAILED,
        {"reason": reason, "stage": stage},
        client_ip=client_ip,
        wallet_address=wallet_address,
        request_id=request_id,
    )


def log_payment_rejected(
    signature: Optional[str],
    reason: str,
    facts: Dict[str, Any],
    client_ip: Optional[str] = None,
    request_id: Optional[str] = None,
) -> Optional[str]:
    """Record a hard rejection together with the raw on-chain facts."""
    return log_audit_event(
        AuditEventType.PAYMENT_REJECTED,
        {"signature": signature, "reason": reason, "facts": facts},
        client_ip=client_ip,
        wallet_address=facts.get("payer"),
        request_id=request_id,
    )


def log_replay_detected(
    signature: str,
    original: Optional[Dict[str, Any]] = None,
    client_ip: Optional[str] = None,
    request_id: Optional[str] = None,
) -> Optional[str]:
    return log_audit_event(
        AuditEventType.REPLAY_DETECTED,
        {"signature": signature, "original": original},
        client_ip=client_ip,
        request_id=request_id,
    )


def log_error(
    client_ip: Optional[str],
    error_type: str,
    error_message: str,
    context: Optional[Dict[str, Any]] = None,
    request_id: Optional[str] = None,
) -> Optional[str]:
    return log_audit_event(
        AuditEventType.ERROR,
        {"error_type": error_type, "error_message": error_message, "context": context or {}},
        client_ip=client_ip,
        request_id=request_id,
    )


def _iter_events(log_path: Path):
    with open(log_path, "r") as f:
        for line in f:
            line = line.strip()
            if not line:
                continue
            try:
                yield json.loads(line)
            except json.JSONDecodeError:
                continue


def read_audit_log(
    max_entries: int = 100,
    event_type: Optional[AuditEventType] = None,
    wallet_address: Optional[str] = None,
) -> List[Dict[str, Any]]:
    """
    Read audit events, most recent first.

    Args:
        max_entries: Maximum number of entries to return
        event_type: Only return events of this type
        wallet_address: Only return events for this payer
    """
    log_path = get_audit_log_path()
    if not log_path.exists():
        return []

    try:
        events = [
            event for event in _iter_events(log_path)
            if (event_type is None or event.get("event_type") == event_type.value)
            and (wallet_address is None or event.get("wallet_address") == wallet_address)
        ]
    except OSError as e:
        logger.error(f"Failed to read audit log: {e}")
        return []

    return list(reversed(events))[:max_entries]


def get_audit_stats() -> Dict[str, Any]:
    """Event counts and date range of the audit log."""
    log_path = get_audit_log_path()
    stats: Dict[str, Any] = {
        "total_events": 0,
        "events_by_type": {},
        "first_event": None,
        "last_event": None,
        "log_path": str(log_path),
        "log_exists": log_path.exists(),
    }
    if not stats["log_exists"]:
        return stats

    try:
        for event in _iter_events(log_path):
            stats["total_events"] += 1
            kind = event.get("event_type", "unknown")
            stats["events_by_type"][kind] = stats["events_by_type"].get(kind, 0) + 1
            timestamp = event.get("timestamp")
            if timestamp:
                stats["first_event"] = stats["first_event"] or timestamp
                stats["last_event"] = timestamp
    except OSError as e:
        logger.error(f"Failed to get audit stats: {e}")
        stats["error"] = str(e)

    return stats
