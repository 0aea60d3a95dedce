"""
Ledger configuration.

Configuration is an immutable pydantic value handed to ``LedgerService`` at
construction. Both snake_case and camelCase keys are accepted, so the same
JSON document works from Python callers and from the HTTP app.
"""

import json
import os
from numbers import Number
from typing import Any, Dict, Mapping, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

from .errors import ConfigurationError

CONFIG_PATH_ENV = "CREDIT_LEDGER_CONFIG"


class ConfigModel(BaseModel):
    model_config = ConfigDict(
        frozen=True,
        populate_by_name=True,
        alias_generator=to_camel,
    )


class MembershipConfig(ConfigModel):
    tiers: Dict[str, int] = Field(default_factory=dict)
    requirements: Dict[str, Optional[str]] = Field(default_factory=dict)
    # Left loosely typed so validate_config can name the offending tier.
    credits_caps: Any = None


class RetryConfig(ConfigModel):
    enabled: bool = True
    max_attempts: int = 3
    initial_delay: float = Field(default=100, description="Milliseconds before the first retry")
    max_delay: float = Field(default=5000, description="Upper bound for a single delay, in milliseconds")
    backoff_multiplier: float = 2


class IdempotencyConfig(ConfigModel):
    enabled: bool = True
    ttl: int = Field(default=86400, description="Seconds a cached result stays valid")


class AuditConfig(ConfigModel):
    enabled: bool = True


class LedgerConfig(ConfigModel):
    costs: Dict[str, Dict[str, Any]] = Field(default_factory=dict)
    membership: MembershipConfig = Field(default_factory=MembershipConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    idempotency: IdempotencyConfig = Field(default_factory=IdempotencyConfig)
    audit: AuditConfig = Field(default_factory=AuditConfig)

    def get_credits_cap(self, tier: str) -> int:
        return int(self.membership.credits_caps[tier])

    def get_requirement(self, action: str) -> Optional[str]:
        return self.membership.requirements.get(action)


def load_config(raw: Union[LedgerConfig, Mapping[str, Any]]) -> LedgerConfig:
    """Build and validate a LedgerConfig from a mapping.

    Raises:
        ConfigurationError: If the mapping cannot be parsed or fails validation
    """
    if isinstance(raw, LedgerConfig):
        config = raw
    else:
        if not isinstance(raw, Mapping):
            raise ConfigurationError("Configuration must be a mapping")
        try:
            config = LedgerConfig.model_validate(raw)
        except ValidationError as e:
            problems = "; ".join(
                f"{'.'.join(str(part) for part in err['loc'])}: {err['msg']}"
                for err in e.errors()
            )
            raise ConfigurationError(f"Invalid configuration: {problems}") from e

    validate_config(config)
    return config


def load_config_from_env(path: Optional[str] = None) -> LedgerConfig:
    """Load a JSON configuration file, defaulting to $CREDIT_LEDGER_CONFIG."""
    path = path or os.getenv(CONFIG_PATH_ENV)
    if not path:
        raise ConfigurationError(f"{CONFIG_PATH_ENV} is not set")

    try:
        with open(path, "r", encoding="utf-8") as f:
            raw = json.load(f)
    except FileNotFoundError as e:
        raise ConfigurationError(f"Configuration file not found: {path}") from e
    except json.JSONDecodeError as e:
        raise ConfigurationError(f"Invalid JSON in configuration file {path}: {e}") from e

    return load_config(raw)


def _is_number(value: Any) -> bool:
    return isinstance(value, Number) and not isinstance(value, bool)


def validate_config(config: LedgerConfig) -> None:
    """Check the semantic rules pydantic cannot express.

    Raises:
        ConfigurationError: On the first rule that is violated
    """
    for action, cost in config.costs.items():
        default = cost.get("default")
        if not _is_number(default):
            raise ConfigurationError(f"Action '{action}' must have a default cost")
        for tier, value in cost.items():
            if not _is_number(value) or value < 0:
                raise ConfigurationError(f"Action '{action}' cost for '{tier}' must be non-negative")
            if int(value) != value:
                raise ConfigurationError(f"Action '{action}' cost for '{tier}' must be a whole number")

    membership = config.membership
    for tier, level in membership.tiers.items():
        if level < 0:
            raise ConfigurationError(f"Membership tier '{tier}' level must be non-negative")

    caps = membership.credits_caps
    if not isinstance(caps, Mapping):
        raise ConfigurationError("Membership configuration must include creditsCaps")

    for tier in membership.tiers:
        if tier not in caps:
            raise ConfigurationError(f"Membership tier '{tier}' is missing a credits cap in creditsCaps")
        cap = caps[tier]
        if not _is_number(cap) or cap < 0:
            raise ConfigurationError(
                f"Credits cap for tier '{tier}' must be a non-negative number, got {cap!r}"
            )
        if int(cap) != cap:
            raise ConfigurationError(f"Credits cap for tier '{tier}' must be a whole number, got {cap!r}")

    retry = config.retry
    if retry.max_attempts < 1:
        raise ConfigurationError("Retry maxAttempts must be at least 1")
    if retry.initial_delay < 0:
        raise ConfigurationError("Retry initialDelay must be non-negative")
    if retry.max_delay < retry.initial_delay:
        raise ConfigurationError("Retry maxDelay must be >= initialDelay")
    if retry.backoff_multiplier < 1:
        raise ConfigurationError("Retry backoffMultiplier must be >= 1")

    if config.idempotency.ttl < 0:
        raise ConfigurationError("Idempotency ttl must be non-negative")
