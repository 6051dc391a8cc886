"""
Audit Logger
Append-only JSON-lines trail of completed poll runs, kept outside the database
so a run can be traced even when the tenant schema is unavailable
"""
import os
import logging
from datetime import datetime, timezone
from typing import Optional, Dict, Any
from pydantic import BaseModel
from nphies_poll.config import settings

logger = logging.getLogger(__name__)


class PollAuditEntry(BaseModel):
    """Audit log entry structure"""
    timestamp: str
    action: str  # 'poll:run', 'poll:skipped', 'poll:reclaimed'
    outcome: str  # terminal poll status or 'skipped'
    poll_id: Optional[str] = None
    schema_name: Optional[str] = None
    trigger_type: Optional[str] = None
    stats: Optional[Dict[str, Any]] = None
    details: Optional[str] = None


def write_audit_log(entry: PollAuditEntry, log_path: Optional[str] = None) -> None:
    """
    Write an audit log entry to the audit log file.
    Appends JSON lines to the file with restricted permissions.
    """
    log_path = log_path or settings.audit_log_path

    if not entry.timestamp:
        entry.timestamp = datetime.now(timezone.utc).isoformat()

    log_line = entry.model_dump_json(exclude_none=True) + "\n"

    try:
        with open(log_path, "a", encoding="utf-8") as f:
            f.write(log_line)

        try:
            os.chmod(log_path, 0o600)
        except (OSError, AttributeError):
            pass  # chmod is not supported everywhere

    except IOError as e:
        # The poll result is already committed; a missing audit line must not fail it
        logger.error(f"Failed to write poll audit log: {e}")


def log_poll_event(
    action: str,
    outcome: str,
    poll_id: Optional[str] = None,
    schema_name: Optional[str] = None,
    trigger_type: Optional[str] = None,
    stats: Optional[Dict[str, Any]] = None,
    details: Optional[str] = None,
    log_path: Optional[str] = None,
) -> None:
    """Helper function to log poll lifecycle events"""
    entry = PollAuditEntry(
        timestamp=datetime.now(timezone.utc).isoformat(),
        action=f"poll:{action}",
        outcome=outcome,
        poll_id=poll_id,
        schema_name=schema_name,
        trigger_type=trigger_type,
        stats=stats,
        details=details,
    )
    write_audit_log(entry, log_path=log_path)
