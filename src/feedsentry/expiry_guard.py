from __future__ import annotations

from dataclasses import dataclass

from .config import ExpiryGuardConfig
from .errors import ErrorCode


@dataclass(frozen=True)
class ExpiryCheck:
    active_before: int
    would_expire: int
    blocked_reason: str | None

    @property
    def passed(self) -> bool:
        return self.blocked_reason is None

    @property
    def expiry_ratio(self) -> float:
        return self.would_expire / self.active_before if self.active_before else 0.0


def evaluate_expiry(active_before: int, would_expire: int, guard: ExpiryGuardConfig) -> ExpiryCheck:
    """Decide whether a run may deactivate the records it did not see.

    The absolute cap applies to every feed. The ratio check only applies once a feed
    has min_active records, so small and newly added feeds are never blocked by it.
    """
    would_expire = max(0, would_expire)
    check = ExpiryCheck(active_before=active_before, would_expire=would_expire, blocked_reason=None)
    if not guard.enabled or would_expire == 0:
        return check
    if would_expire >= guard.absolute_cap:
        return ExpiryCheck(active_before, would_expire, ErrorCode.EXPIRY_SPIKE)
    if (
        active_before >= guard.min_active
        and check.expiry_ratio > guard.max_ratio
        and would_expire >= guard.min_count
    ):
        return ExpiryCheck(active_before, would_expire, ErrorCode.EXPIRY_SPIKE)
    return check
