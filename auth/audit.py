"""
auth/audit.py -- Fire-and-forget security audit events.

Events are structured log records on the "pawndesk.security" logger. The
event name and its fields travel in `extra` (event, actor, ip, outcome,
counts) so a JSON formatter or log shipper can index them, and are also
rendered into the message for plain-text handlers.

Emission failures are swallowed on purpose: a broken log handler must never
stop a lockout from being applied or a login from being refused.
"""

from __future__ import annotations

import logging

logger = logging.getLogger("pawndesk.security")


def audit(event: str, level: int = logging.INFO, **fields) -> None:
    """Emit one security event. Never raises."""
    try:
        rendered = " ".join(f"{key}={value}" for key, value in fields.items())
        logger.log(level, "%s %s", event, rendered, extra={"event": event, "audit": fields})
    except Exception:  # noqa: BLE001
        pass
