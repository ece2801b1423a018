# review_agents/config.py
from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Optional

from dotenv import load_dotenv

_here = Path(__file__).resolve()
# Prefer repo-root .env (shared by portal/backend), then allow Backend/.env overrides if present.
load_dotenv(dotenv_path=_here.parents[3] / ".env")
load_dotenv(dotenv_path=_here.parents[2] / ".env")


def _env(name: str, default: Optional[str] = None) -> Optional[str]:
    v = os.environ.get(name)
    if v is None or str(v).strip() == "":
        return default
    return v


def _int_env(name: str, default: int) -> int:
    v = _env(name)
    try:
        return int(v) if v is not None else default
    except ValueError:
        return default


def _int_env_any(names: list[str], default: int) -> int:
    for n in names:
        v = _env(n)
        if v is None:
            continue
        try:
            return int(v)
        except ValueError:
            continue
    return default


def _bool_env(name: str, default: bool = False) -> bool:
    v = _env(name)
    if v is None:
        return default
    return str(v).strip().lower() in ("1", "true", "yes", "y", "on")


SLA_STANDARD = "standard_72h"
SLA_PRIORITY = "priority_24h"

ROLE_PRIMARY = "primary"
ROLE_PASSIVE = "passive"


def _default_sla_hours() -> Dict[str, int]:
    return {SLA_STANDARD: 72, SLA_PRIORITY: 24}


@dataclass(frozen=True)
class AgentSettings:
    worker_id: str = "worker-1"

    # SLA engine
    sla_role: str = ROLE_PRIMARY
    sla_hours: Dict[str, int] = field(default_factory=_default_sla_hours)
    default_sla_type: str = SLA_STANDARD
    doctor_response_timeout_hours: float = 6
    max_active_cases_per_doctor: int = 4
    sla_sweep_interval_ms: int = 5 * 60 * 1000
    sla_sweep_limit: int = 200
    sla_dry_run: bool = False
    sla_reminders_enabled: bool = True
    sla_lease_seconds: int = 600

    # notification dispatcher
    notification_poll_ms: int = 5000
    notification_batch_size: int = 50
    notification_max_retries: int = 3
    notification_backoff_base_sec: int = 30
    notification_backoff_multiplier: int = 4
    notification_send_timeout_sec: int = 15
    notification_lock_seconds: int = 120
    notification_dry_run: bool = False

    app_url: str = "https://portal.example.com"

    @property
    def is_sla_primary(self) -> bool:
        return (self.sla_role or "").strip().lower() == ROLE_PRIMARY

    def hours_for(self, sla_type: Optional[str]) -> int:
        """SLA hours for a type; unknown types fall back to the standard window."""
        key = (sla_type or "").strip().lower()
        if key in self.sla_hours:
            return int(self.sla_hours[key])
        return int(self.sla_hours.get(self.default_sla_type, 72))


def get_settings() -> AgentSettings:
    return AgentSettings(
        worker_id=_env("WORKER_ID", "worker-1") or "worker-1",
        sla_role=(_env("SLA_ROLE", ROLE_PRIMARY) or ROLE_PRIMARY).strip().lower(),
        sla_hours={
            SLA_STANDARD: _int_env("SLA_HOURS_STANDARD_72H", 72),
            SLA_PRIORITY: _int_env("SLA_HOURS_PRIORITY_24H", 24),
        },
        doctor_response_timeout_hours=float(_env("DOCTOR_RESPONSE_TIMEOUT_HOURS", "6") or 6),
        max_active_cases_per_doctor=_int_env("MAX_ACTIVE_CASES_PER_DOCTOR", 4),
        sla_sweep_interval_ms=_int_env_any(["SLA_SWEEP_INTERVAL_MS", "SLA_INTERVAL_MS"], 5 * 60 * 1000),
        sla_sweep_limit=_int_env("SLA_SWEEP_LIMIT", 200),
        sla_dry_run=_bool_env("SLA_DRY_RUN", False),
        sla_reminders_enabled=_bool_env("SLA_REMINDERS_ENABLED", True),
        sla_lease_seconds=_int_env("SLA_LEASE_SECONDS", 600),
        notification_poll_ms=_int_env_any(["NOTIFICATION_POLL_MS", "NOTIFICATION_WORKER_INTERVAL_MS"], 5000),
        notification_batch_size=_int_env("NOTIFICATION_BATCH_SIZE", 50),
        notification_max_retries=max(1, _int_env("NOTIFICATION_MAX_RETRIES", 3)),
        notification_backoff_base_sec=_int_env("NOTIFICATION_BACKOFF_BASE_SEC", 30),
        notification_backoff_multiplier=max(1, _int_env("NOTIFICATION_BACKOFF_MULTIPLIER", 4)),
        notification_send_timeout_sec=_int_env("NOTIFICATION_SEND_TIMEOUT_SEC", 15),
        notification_lock_seconds=_int_env("NOTIFICATION_LOCK_SECONDS", 120),
        notification_dry_run=_bool_env("NOTIFICATION_DRY_RUN", False),
        app_url=(_env("APP_URL", "https://portal.example.com") or "").rstrip("/"),
    )


LOG_LEVEL = (_env("LOG_LEVEL", "INFO") or "INFO").upper()

# channel providers
EMAIL_ENABLED = _bool_env("EMAIL_ENABLED", False)
EMAIL_API_URL = _env("EMAIL_API_URL", "https://api.resend.com/emails") or ""
EMAIL_API_KEY = _env("EMAIL_API_KEY", "") or ""
EMAIL_FROM = _env("EMAIL_FROM", "Review Portal <noreply@portal.example.com>") or ""

WHATSAPP_ENABLED = _bool_env("WHATSAPP_ENABLED", False)
WHATSAPP_API_VERSION = _env("WHATSAPP_API_VERSION", "v19.0") or "v19.0"
WHATSAPP_PHONE_NUMBER_ID = _env("WHATSAPP_PHONE_NUMBER_ID", "") or ""
WHATSAPP_ACCESS_TOKEN = _env("WHATSAPP_ACCESS_TOKEN", "") or ""
