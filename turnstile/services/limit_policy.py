"""
turnstile/services/limit_policy.py

Tier definitions and the policy lookup table.

Design Decisions:
- The three well-known tiers are a str Enum so call sites read
  RateLimitTier.STRICT, while the registry itself is keyed by plain
  names: operators can add tiers through configuration and code can
  refer to them by string.
- resolve() raising is a programming error, not a runtime condition.
  validate() lets startup code check every referenced tier up front.
"""

from __future__ import annotations

from enum import Enum
from typing import Iterator, Mapping, Union

from pydantic import BaseModel, ConfigDict, Field

from turnstile.config import Settings
from turnstile.utils.exceptions import ConfigurationError, UnknownRateLimitTierError


class RateLimitTier(str, Enum):
    """Well-known tiers."""

    # High allowance over a short window (general browsing)
    SHORT_TERM = "short_term"
    # Lower allowance over a long window (overall usage cap)
    LONG_TERM = "long_term"
    # Very few requests (login, registration, password reset)
    STRICT = "strict"


TierRef = Union[RateLimitTier, str]


def tier_name(tier: TierRef) -> str:
    """Normalise an enum member or plain string to the registry key."""
    if isinstance(tier, RateLimitTier):
        return tier.value
    return str(tier)


class LimitPolicy(BaseModel):
    """Immutable limit for one tier."""

    model_config = ConfigDict(frozen=True)

    tier_name: str = Field(min_length=1)
    max_requests: int = Field(gt=0)
    window_seconds: int = Field(gt=0)


class LimitPolicyRegistry:
    """
    Maps tier names to their LimitPolicy.

    Usage:
        registry = LimitPolicyRegistry.from_settings(settings)
        policy = registry.resolve(RateLimitTier.STRICT)
    """

    def __init__(self, policies: Mapping[str, LimitPolicy]) -> None:
        self._policies: dict[str, LimitPolicy] = dict(policies)

    @classmethod
    def from_settings(cls, settings: Settings) -> "LimitPolicyRegistry":
        policies: dict[str, LimitPolicy] = {}
        well_known = {
            RateLimitTier.SHORT_TERM.value: settings.short_term,
            RateLimitTier.LONG_TERM.value: settings.long_term,
            RateLimitTier.STRICT.value: settings.strict,
        }
        for name, limit in well_known.items():
            policies[name] = LimitPolicy(
                tier_name=name,
                max_requests=limit.max_requests,
                window_seconds=limit.window_seconds,
            )

        for name, limit in settings.extra_tiers.items():
            if name in policies:
                raise ConfigurationError(
                    f"Extra tier '{name}' shadows a built-in tier.",
                    detail="Use the RATE_LIMIT_<TIER>_* variables to change built-in tiers.",
                )
            policies[name] = LimitPolicy(
                tier_name=name,
                max_requests=limit.max_requests,
                window_seconds=limit.window_seconds,
            )
        return cls(policies)

    @property
    def tier_names(self) -> tuple[str, ...]:
        return tuple(self._policies)

    def resolve(self, tier: TierRef) -> LimitPolicy:
        """
        Look up the policy for a tier.

        Raises:
            UnknownRateLimitTierError: If the tier is not configured.
        """
        name = tier_name(tier)
        try:
            return self._policies[name]
        except KeyError:
            raise UnknownRateLimitTierError(name, self.tier_names) from None

    def validate(self, *tiers: TierRef) -> None:
        """Resolve every tier once so misconfiguration fails at startup."""
        for tier in tiers:
            self.resolve(tier)

    def __contains__(self, tier: object) -> bool:
        if not isinstance(tier, (RateLimitTier, str)):
            return False
        return tier_name(tier) in self._policies

    def __iter__(self) -> Iterator[LimitPolicy]:
        return iter(self._policies.values())
