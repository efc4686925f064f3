"""Retry / demote / block decisions for repeatedly failing tasks.

Pure functions over a task's durable attempt counter and priority. The
failure handler and the merge coordinator apply the decisions; the
blocked auto-retry sweep uses ``is_auto_retry_eligible``.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from config_schema import BackoffConfig

ACTION_RETRY = "retry"
ACTION_DEMOTE = "demote"
ACTION_BLOCK = "block"
ACTION_REQUEUE = "requeue"

BLOCK_REASON_CODING = "Coding Failure"
BLOCK_REASON_MERGE = "Merge Failure"
TECHNICAL_BLOCK_REASONS = frozenset({BLOCK_REASON_CODING, BLOCK_REASON_MERGE})

# Failure types that get a few free retries before the counter policy applies.
INFRA_FAILURE_TYPES = frozenset({"agent_crash", "timeout", "merge_conflict"})


@dataclass
class BackoffDecision:
    action: str
    new_priority: Optional[int] = None
    block_reason: Optional[str] = None


def decide(cumulative_attempts: int, priority: int, config: Optional[BackoffConfig] = None) -> BackoffDecision:
    """Decide what happens after a coding/test/review failure.

    ``cumulative_attempts`` is the counter value including this failure.
    Off a multiple of the threshold the task retries immediately; on a
    multiple it is demoted one step, or blocked once demotion is exhausted.
    """
    config = config or BackoffConfig()
    if cumulative_attempts <= 0 or cumulative_attempts % config.failure_threshold != 0:
        return BackoffDecision(ACTION_RETRY)
    if priority >= config.max_priority_before_block:
        return BackoffDecision(ACTION_BLOCK, block_reason=BLOCK_REASON_CODING)
    return BackoffDecision(ACTION_DEMOTE, new_priority=priority + 1)


def merge_block_threshold(config: Optional[BackoffConfig] = None) -> int:
    config = config or BackoffConfig()
    return config.failure_threshold * config.merge_failure_multiplier


def decide_merge_failure(cumulative_attempts: int, config: Optional[BackoffConfig] = None) -> BackoffDecision:
    """Merge failures requeue with the branch kept until the higher threshold is reached."""
    if cumulative_attempts >= merge_block_threshold(config):
        return BackoffDecision(ACTION_BLOCK, block_reason=BLOCK_REASON_MERGE)
    return BackoffDecision(ACTION_REQUEUE)


def is_infra_failure(failure_type: str) -> bool:
    return failure_type in INFRA_FAILURE_TYPES


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def is_auto_retry_eligible(
    status: str,
    block_reason: Optional[str],
    last_auto_retry_at: Optional[str],
    now: Optional[datetime] = None,
    config: Optional[BackoffConfig] = None,
) -> bool:
    """True for tasks blocked by a technical failure whose cooldown has elapsed.

    Blocks with any other reason (human feedback, manual) are never
    auto-retried. An unparsable timestamp counts as never retried.
    """
    config = config or BackoffConfig()
    if status != "blocked" or block_reason not in TECHNICAL_BLOCK_REASONS:
        return False
    last = parse_timestamp(last_auto_retry_at)
    if last is None:
        return True
    now = now or datetime.now(timezone.utc)
    return now - last > timedelta(hours=config.auto_retry_cooldown_hours)
