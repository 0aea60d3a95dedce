"""
Membership tier hierarchy validation.

Tiers are compared by their configured integer level, never by name. An
expired membership is treated exactly like having no membership at all.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Mapping, Optional

from .models import User


@dataclass(frozen=True)
class ValidationResult:
    valid: bool
    current_tier: Optional[str]
    required_tier: Optional[str]
    is_expired: bool
    reason: Optional[str] = None


def _as_utc(moment: datetime) -> datetime:
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment


class MembershipValidator:
    def __init__(self, tiers: Mapping[str, int]):
        self.tiers = dict(tiers)

    def has_tier(self, tier: Optional[str]) -> bool:
        return tier is not None and tier in self.tiers

    def get_level(self, tier: Optional[str]) -> Optional[int]:
        if tier is None:
            return None
        return self.tiers.get(tier)

    def is_expired(self, expires_at: Optional[datetime]) -> bool:
        """A membership without an expiration date never expires."""
        if expires_at is None:
            return False
        return _as_utc(expires_at) <= datetime.now(timezone.utc)

    def validate(self, user: User, required_tier: Optional[str]) -> ValidationResult:
        """
        Check whether ``user`` satisfies ``required_tier``.

        Evaluation order:
        1. Expiration clears the effective tier
        2. No requirement is always valid
        3. No effective tier is invalid
        4. Required tier must be defined, then the current tier
        5. Current level must be >= required level
        """
        expired = self.is_expired(user.membership_expires_at)
        effective_tier = None if expired else user.membership_tier

        def result(valid: bool, reason: Optional[str] = None, current: Optional[str] = effective_tier):
            return ValidationResult(
                valid=valid,
                current_tier=current,
                required_tier=required_tier,
                is_expired=expired,
                reason=reason,
            )

        if required_tier is None:
            return result(True)

        if effective_tier is None:
            if expired and user.membership_tier is not None:
                return result(False, "Membership expired: no active membership")
            return result(False, "No active membership")

        required_level = self.get_level(required_tier)
        if required_level is None:
            return result(False, f"Required tier '{required_tier}' not defined in configuration")

        current_level = self.get_level(effective_tier)
        if current_level is None:
            return result(False, f"Current tier '{effective_tier}' not defined in configuration")

        if current_level < required_level:
            return result(False, "Insufficient membership tier")

        return result(True)
