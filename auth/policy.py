"""
auth/policy.py -- Pluggable password strength policy.

Strength rules are product policy, not part of the authentication core. The
coordinators only call policy.check(password) and let ValidationError
propagate. Swap in a stricter implementation by passing it to the
coordinator constructors.
"""

from __future__ import annotations

from typing import Protocol

from auth.errors import ValidationError


class PasswordPolicy(Protocol):
    def check(self, password: str) -> None:
        """Raise ValidationError if the password is not acceptable."""


class MinimumLengthPolicy:
    """Default policy: a minimum length and nothing else."""

    def __init__(self, min_length: int = 8) -> None:
        self.min_length = min_length

    def check(self, password: str) -> None:
        if len(password) < self.min_length:
            raise ValidationError(f"Password must be at least {self.min_length} characters.")
