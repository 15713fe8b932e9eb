"""Configuration for the automation client.

Environment variables:
- AUTOMATION_API_URL: Base URL of the rules backend.
- AUTOMATION_ENVIRONMENT: ``sandbox`` or ``production`` (default ``sandbox``),
  sent as the X-Athena-Environment header on rule and patient endpoints.
- AUTOMATION_ACCESS_TOKEN / AUTOMATION_REFRESH_TOKEN: bearer credentials.
- AUTOMATION_TOKEN_EXPIRES_AT: access token expiry as epoch seconds.
- AUTOMATION_REQUEST_TIMEOUT_SECONDS: default request timeout (60).
- AUTOMATION_SUBMIT_TIMEOUT_SECONDS: timeout for submit/rollback/detail (180).
- AUTOMATION_POLL_INTERVAL_SECONDS: delay between progress polls (1.5).
- AUTOMATION_POLL_TIMEOUT_SECONDS: per-poll timeout, kept below the interval.
- AUTOMATION_ADD_MODIFIERS_OVERRIDES: per-rule add_modifiers flags,
  e.g. ``21:false,30:true``.
- AUTOMATION_CACHE_DIR: directory for the local project id store.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass, field

from automation_client.models import normalize_rule_number

logger = logging.getLogger(__name__)

DEFAULT_ENVIRONMENT = "sandbox"
ENVIRONMENTS = {"sandbox", "production"}
DEFAULT_REQUEST_TIMEOUT = 60.0
DEFAULT_SUBMIT_TIMEOUT = 180.0
DEFAULT_POLL_INTERVAL = 1.5
DEFAULT_POLL_TIMEOUT = 1.0

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off"}


@dataclass(frozen=True)
class AddModifiersPolicy:
    """Per-rule ``add_modifiers`` flag for run and rollback requests.

    Args:
        default: Flag used for rules without an override.
        overrides: Flag per normalized rule number.

    Examples:
        >>> policy = AddModifiersPolicy.parse("21:false")
        >>> policy.for_rule(21), policy.for_rule("22")
        (False, True)
    """

    default: bool = True
    overrides: Mapping[str, bool] = field(default_factory=dict)

    def for_rule(self, rule_number: int | str) -> bool:
        return self.overrides.get(normalize_rule_number(rule_number), self.default)

    @classmethod
    def parse(cls, raw: str | None, default: bool = True) -> "AddModifiersPolicy":
        """Parse ``rule:flag`` pairs separated by commas; bad pairs are skipped."""
        overrides: dict[str, bool] = {}
        for item in (raw or "").split(","):
            item = item.strip()
            if not item:
                continue
            rule, sep, flag = item.partition(":")
            flag = flag.strip().lower()
            if not sep or not rule.strip() or flag not in _TRUE | _FALSE:
                logger.warning("Ignoring invalid add_modifiers override: %r", item)
                continue
            overrides[normalize_rule_number(rule)] = flag in _TRUE
        return cls(default=default, overrides=overrides)


@dataclass(frozen=True)
class AutomationConfig:
    """Settings shared by every automation client.

    Attributes:
        base_url: Rules backend base URL.
        environment: Backend environment discriminator.
        access_token: Bearer token, if already authenticated.
        refresh_token: Token used to obtain a new access token.
        token_expires_at: Access token expiry (epoch seconds), if known.
        request_timeout: Default per-request timeout in seconds.
        submit_timeout: Extended timeout for long batch calls.
        poll_interval: Seconds between the end of one poll and the next.
        poll_timeout: Per-poll timeout; always shorter than the interval.
        add_modifiers: Per-rule add_modifiers policy.
        cache_dir: Override for the local cache directory.
    """

    base_url: str = ""
    environment: str = DEFAULT_ENVIRONMENT
    access_token: str | None = None
    refresh_token: str | None = None
    token_expires_at: float | None = None
    request_timeout: float = DEFAULT_REQUEST_TIMEOUT
    submit_timeout: float = DEFAULT_SUBMIT_TIMEOUT
    poll_interval: float = DEFAULT_POLL_INTERVAL
    poll_timeout: float = DEFAULT_POLL_TIMEOUT
    add_modifiers: AddModifiersPolicy = field(default_factory=AddModifiersPolicy)
    cache_dir: str | None = None

    def __post_init__(self) -> None:
        if self.poll_interval <= 0:
            raise ValueError("poll_interval must be positive")
        if self.poll_timeout >= self.poll_interval:
            object.__setattr__(self, "poll_timeout", self.poll_interval * 0.8)

    @classmethod
    def from_env(cls) -> "AutomationConfig":
        """Create AutomationConfig from environment variables."""
        raw_environment = (os.getenv("AUTOMATION_ENVIRONMENT") or "").strip().lower()
        environment = (
            raw_environment if raw_environment in ENVIRONMENTS else DEFAULT_ENVIRONMENT
        )
        poll_interval = _read_float_env(
            "AUTOMATION_POLL_INTERVAL_SECONDS", DEFAULT_POLL_INTERVAL
        )
        return cls(
            base_url=os.getenv("AUTOMATION_API_URL", "").strip(),
            environment=environment,
            access_token=os.getenv("AUTOMATION_ACCESS_TOKEN") or None,
            refresh_token=os.getenv("AUTOMATION_REFRESH_TOKEN") or None,
            token_expires_at=_read_optional_float_env("AUTOMATION_TOKEN_EXPIRES_AT"),
            request_timeout=_read_float_env(
                "AUTOMATION_REQUEST_TIMEOUT_SECONDS", DEFAULT_REQUEST_TIMEOUT
            ),
            submit_timeout=_read_float_env(
                "AUTOMATION_SUBMIT_TIMEOUT_SECONDS", DEFAULT_SUBMIT_TIMEOUT
            ),
            poll_interval=poll_interval,
            poll_timeout=_read_float_env(
                "AUTOMATION_POLL_TIMEOUT_SECONDS",
                min(DEFAULT_POLL_TIMEOUT, poll_interval * 0.8),
            ),
            add_modifiers=AddModifiersPolicy.parse(
                os.getenv("AUTOMATION_ADD_MODIFIERS_OVERRIDES")
            ),
            cache_dir=os.getenv("AUTOMATION_CACHE_DIR") or None,
        )


def _read_float_env(name: str, default: float) -> float:
    raw = os.getenv(name)
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError:
        logger.warning("Invalid number for %s: %r, using %s", name, raw, default)
        return default
    return value if value > 0 else default


def _read_optional_float_env(name: str) -> float | None:
    raw = os.getenv(name)
    if not raw:
        return None
    try:
        return float(raw)
    except ValueError:
        logger.warning("Invalid number for %s: %r, ignoring", name, raw)
        return None
