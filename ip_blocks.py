from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Optional

from models import IpBlock


@dataclass(frozen=True)
class FailureCounter:
    attempts: int = 0
    last_failed_at: Optional[datetime] = None


def register_failure(
    state: FailureCounter, now: datetime, reset_after: timedelta
) -> FailureCounter:
    """Count one more unknown-user failure.

    A failure arriving ``reset_after`` or later after the previous one starts a
    fresh count.
    """
    attempts = state.attempts
    if state.last_failed_at is not None and now - state.last_failed_at >= reset_after:
        attempts = 0
    return replace(state, attempts=attempts + 1, last_failed_at=now)


def reset_counters() -> FailureCounter:
    return FailureCounter()


def counter_of(block: IpBlock) -> FailureCounter:
    return FailureCounter(
        attempts=block.unknown_user_failed_attempts or 0,
        last_failed_at=block.unknown_user_last_failed_at,
    )


def store_counter(block: IpBlock, state: FailureCounter) -> None:
    block.unknown_user_failed_attempts = state.attempts
    block.unknown_user_last_failed_at = state.last_failed_at


def block_address(block: IpBlock, now: datetime, reason: Optional[str] = None) -> None:
    block.is_blocked = True
    block.blocked_at = now
    block.block_reason = reason.strip() if reason and reason.strip() else None


def unblock_address(block: IpBlock) -> None:
    block.is_blocked = False
    block.blocked_at = None
    block.block_reason = None
