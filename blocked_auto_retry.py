"""Periodically unblock tasks that were blocked for technical reasons."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Callable, List, Optional

from backoff import is_auto_retry_eligible
from events import TASK_UPDATED
from project_context import ProjectContext
from task_store import BLOCKED_LABEL, STATUS_OPEN, Task

logger = logging.getLogger(__name__)


class BlockedAutoRetry:
    def __init__(self, ctx: ProjectContext, nudge: Callable[[str], None]):
        self.ctx = ctx
        self.nudge = nudge

    def eligible(self, now: Optional[datetime] = None) -> List[Task]:
        now = now or datetime.now(timezone.utc)
        return [
            t for t in self.ctx.store.list_all()
            if is_auto_retry_eligible(
                t.status, t.block_reason, t.last_auto_retry_at, now=now,
                config=self.ctx.config.backoff,
            )
        ]

    def run_once(self, now: Optional[datetime] = None) -> List[str]:
        """Unblock every eligible task, nudge once if any were unblocked, return their ids."""
        now = now or datetime.now(timezone.utc)
        unblocked = []
        for task in self.eligible(now):
            reason = task.block_reason
            try:
                self.ctx.store.update(
                    task.id, status=STATUS_OPEN, block_reason=None,
                    last_auto_retry_at=now.isoformat(),
                )
                self.ctx.store.remove_label(task.id, BLOCKED_LABEL)
                self.ctx.store.comment(
                    task.id, f"Automatically unblocked after cooldown (was blocked: {reason}).",
                )
            except Exception:
                logger.exception("Failed to auto-retry blocked task %s", task.id)
                continue
            logger.info("Auto-retrying blocked task %s (%s)", task.id, reason)
            self.ctx.emit(TASK_UPDATED, taskId=task.id, status=STATUS_OPEN, blockReason=None)
            unblocked.append(task.id)
        if unblocked:
            self.nudge("blocked auto-retry")
        return unblocked
