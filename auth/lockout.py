"""
auth/lockout.py -- Account lockout rule.

The store compiles the threshold into the atomic failure-counter UPDATE and
reads the outcome back through should_lock(). The login path logs
remaining_attempts() after each failure.

Rule:
  - every failed password check adds one to the counter;
  - the account locks when the counter reaches `threshold`;
  - a locked account no longer counts failures;
  - any successful login resets the counter to 0;
  - only an explicit unlock (or a completed password reset) clears the lock.
"""

from __future__ import annotations

from dataclasses import dataclass

DEFAULT_THRESHOLD = 5


@dataclass(frozen=True)
class LockoutPolicy:
    threshold: int = DEFAULT_THRESHOLD

    def __post_init__(self) -> None:
        if self.threshold < 1:
            raise ValueError("lockout threshold must be at least 1")

    def should_lock(self, failed_attempts: int) -> bool:
        return failed_attempts >= self.threshold

    def remaining_attempts(self, failed_attempts: int) -> int:
        return max(self.threshold - failed_attempts, 0)
