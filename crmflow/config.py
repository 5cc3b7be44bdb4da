"""CrmFlow configuration - YAML file with ${VAR} substitution plus typed defaults."""

import os
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import yaml

from .errors import ConfigError

LOCK_MODES = ("none", "claim")
EVENT_TRANSPORTS = ("in_process", "outbox")


def load_config(path: str) -> dict:
    """Read YAML config file with ${VAR} environment variable substitution."""
    with open(path, "r", encoding="utf-8") as f:
        raw = f.read()

    # Replace ${VAR} with environment variable values
    def _replace_env(match):
        var_name = match.group(1)
        value = os.environ.get(var_name)
        if value is None:
            raise ValueError(
                f"Environment variable '{var_name}' not set "
                f"(referenced in config file '{path}')"
            )
        return value

    resolved = re.sub(r"\$\{(\w+)\}", _replace_env, raw)
    return yaml.safe_load(resolved) or {}


def _positive_int(section: Dict[str, Any], key: str, default: int, name: str) -> int:
    value = section.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise ConfigError(f"'{name}' must be a positive integer, got {value!r}")
    return value


def _section(raw: Dict[str, Any], key: str) -> Dict[str, Any]:
    value = raw.get(key) or {}
    if not isinstance(value, dict):
        raise ConfigError(f"'{key}' must be a mapping")
    return value


@dataclass
class SequenceSettings:
    batch_size: int = 100
    min_step_interval_seconds: int = 60
    max_step_attempts: int = 5
    follow_up_delay_days: int = 3


@dataclass
class AutomationSettings:
    time_trigger_batch_size: int = 200
    max_chain_depth: int = 3
    candidate_limit: int = 100
    max_window_attempts: int = 3


@dataclass
class LockingSettings:
    mode: str = "none"
    lease_seconds: int = 300


@dataclass
class MailSettings:
    relay_url: Optional[str] = None
    api_key: Optional[str] = None
    timeout: int = 30


@dataclass
class CrmFlowConfig:
    """Validated CrmFlow configuration.

    Example YAML:

        database: ${DATABASE_URL}
        cron_secret: ${CRON_SECRET}
        sequences:
          batch_size: 100
        locking:
          mode: claim
        events:
          transport: outbox
        mail:
          relay_url: https://mail.internal.example/send
          api_key: ${MAIL_API_KEY}
    """
    database: Optional[str] = None
    cron_secret: Optional[str] = None
    api_key: Optional[str] = None
    sequences: SequenceSettings = field(default_factory=SequenceSettings)
    automations: AutomationSettings = field(default_factory=AutomationSettings)
    locking: LockingSettings = field(default_factory=LockingSettings)
    event_transport: str = "in_process"
    mail: MailSettings = field(default_factory=MailSettings)
    webhook_timeout: int = 30

    @classmethod
    def from_dict(cls, raw: Dict[str, Any], require_database: bool = True) -> "CrmFlowConfig":
        if not isinstance(raw, dict):
            raise ConfigError("Config root must be a mapping")
        if require_database and not raw.get("database"):
            raise ConfigError("Missing required config field: 'database'")

        seq = _section(raw, "sequences")
        auto = _section(raw, "automations")
        lock = _section(raw, "locking")
        events = _section(raw, "events")
        mail = _section(raw, "mail")
        webhooks = _section(raw, "webhooks")

        mode = lock.get("mode", "none")
        if mode not in LOCK_MODES:
            raise ConfigError(f"'locking.mode' must be one of {LOCK_MODES}, got {mode!r}")
        transport = events.get("transport", "in_process")
        if transport not in EVENT_TRANSPORTS:
            raise ConfigError(f"'events.transport' must be one of {EVENT_TRANSPORTS}, got {transport!r}")

        return cls(
            database=raw.get("database"),
            cron_secret=raw.get("cron_secret"),
            api_key=raw.get("api_key"),
            sequences=SequenceSettings(
                batch_size=_positive_int(seq, "batch_size", 100, "sequences.batch_size"),
                min_step_interval_seconds=_positive_int(
                    seq, "min_step_interval_seconds", 60, "sequences.min_step_interval_seconds"
                ),
                max_step_attempts=_positive_int(seq, "max_step_attempts", 5, "sequences.max_step_attempts"),
                follow_up_delay_days=_positive_int(
                    seq, "follow_up_delay_days", 3, "sequences.follow_up_delay_days"
                ),
            ),
            automations=AutomationSettings(
                time_trigger_batch_size=_positive_int(
                    auto, "time_trigger_batch_size", 200, "automations.time_trigger_batch_size"
                ),
                max_chain_depth=_positive_int(auto, "max_chain_depth", 3, "automations.max_chain_depth"),
                candidate_limit=_positive_int(auto, "candidate_limit", 100, "automations.candidate_limit"),
                max_window_attempts=_positive_int(
                    auto, "max_window_attempts", 3, "automations.max_window_attempts"
                ),
            ),
            locking=LockingSettings(
                mode=mode,
                lease_seconds=_positive_int(lock, "lease_seconds", 300, "locking.lease_seconds"),
            ),
            event_transport=transport,
            mail=MailSettings(
                relay_url=mail.get("relay_url"),
                api_key=mail.get("api_key"),
                timeout=_positive_int(mail, "timeout", 30, "mail.timeout"),
            ),
            webhook_timeout=_positive_int(webhooks, "timeout", 30, "webhooks.timeout"),
        )

    @classmethod
    def from_file(cls, path: str) -> "CrmFlowConfig":
        return cls.from_dict(load_config(path))
