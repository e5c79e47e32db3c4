"""Post-commit hooks fired by the workflow.

Both hooks are best effort: a failure is logged and never turns a committed
transition into an error for the caller.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import audit
import notifications

logger = logging.getLogger(__name__)


@dataclass
class ActivityEntry:
    user_id: Optional[int]
    action: str
    entity_type: str
    entity_id: Optional[int]
    description: str
    document_id: Optional[int] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


class Emitter:
    """Write activity log entries and queue user notifications."""

    def record_activity(self, entry: ActivityEntry) -> None:
        try:
            audit.log_action(
                entry.user_id,
                entry.document_id,
                entry.action,
                entity_type=entry.entity_type,
                entity_id=entry.entity_id,
                description=entry.description,
                payload=entry.metadata,
            )
        except Exception:
            logger.exception(
                "Failed to record activity %s for %s %s",
                entry.action,
                entry.entity_type,
                entry.entity_id,
            )

    def notify(self, user_id: Optional[int], payload: dict) -> None:
        if user_id is None:
            return
        try:
            notifications.deliver(user_id, payload)
        except Exception:
            logger.exception("Failed to queue notification for user %s", user_id)
