"""
kudos.config — YAML Configuration Loader
=========================================

**Why this file exists:**
``config.yaml`` holds the non-secret settings (timezone, data directory,
reward tuning, dispatch spacing).  Secrets and identity maps come from the
environment (``.env`` via python-dotenv) so they never land in the repo.

Usage::

    from kudos.config import load_config, load_secrets

    cfg = load_config()              # reads ./config.yaml by default
    print(cfg.rewards.per_call_xp)   # 1
    secrets = load_secrets()         # reads os.environ
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from kudos.constants import read_env_json


# ---------------------------------------------------------------------------
# Reward tuning
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class RewardConfig:
    """Tuning values for the reward rules and the sales ledger."""

    # Calls
    per_call_xp: int = 1
    per_unit_xp: int = 2
    unit_ms: int = 300_000  # 5 minutes
    max_call_ms: int = 3 * 60 * 60 * 1000
    missed_call_penalty_xp: int = 1
    missed_call_labels: tuple[str, ...] = ("missed", "no answer", "不在")
    call_sources: tuple[str, ...] = ("telephony",)

    # Appointments / labels
    appointment_xp: int = 20
    appointment_badge: str = "🎯 New Appointment"
    appointment_values: tuple[str, ...] = ("appointment_scheduled", "新規アポ")

    # Batch rows
    approval_xp: int = 30
    sales_step: int = 100_000
    sales_xp_per_step: int = 50
    small_sale_xp: int = 0  # 0 disables the below-one-step exception
    company_sales_to_all: bool = False
    maker_award_xp: int = 5
    maker_award_badge: str = "🏆 Maker Award"

    # Daily report bonus
    daily_bonus_xp: int = 10
    daily_task_keywords: tuple[str, ...] = ("日報",)


@dataclass(frozen=True, slots=True)
class KudosConfig:
    """Immutable configuration loaded from ``config.yaml``."""

    timezone: str = "Asia/Tokyo"
    data_dir: Path = Path("data")
    public_base_url: str = ""
    dry_run: bool = False

    dedupe_ttl_seconds: int = 24 * 60 * 60
    signature_skew_seconds: int = 300
    dispatch_min_interval_ms: int = 300

    gamification_base_url: str = "https://habitica.com/api/v3"
    gamification_client_id: str = "kudos/0.1"
    gamification_timeout_seconds: float = 5.0

    require_internal_actor: bool = True
    default_actor_label: str = "Unassigned"

    adjustment_rate_capacity: int = 5
    adjustment_refill_seconds: float = 10.0
    adjustment_idempotency_ttl_seconds: int = 600

    rewards: RewardConfig = field(default_factory=RewardConfig)


# ---------------------------------------------------------------------------
# Secrets — environment only
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class Secrets:
    """Webhook secrets and API tokens read from the environment."""

    crm_webhook_secret: str = ""
    telephony_webhook_secret: str = ""
    telephony_verification_token: str = ""
    telephony_bearer_token: str = ""
    auth_token: str = ""
    import_tokens: tuple[str, ...] = ()
    gamification_webhook_secret: str = ""


@dataclass(frozen=True, slots=True)
class IdentityMaps:
    """Raw identity maps; normalized by :class:`kudos.engine.actors.ActorDirectory`."""

    owners: dict[str, dict[str, str]] = field(default_factory=dict)
    names: dict[str, str] = field(default_factory=dict)
    telephony_users: dict[str, str] = field(default_factory=dict)
    credentials: dict[str, dict[str, str]] = field(default_factory=dict)


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------
def _tuple(value: Any, default: tuple[str, ...]) -> tuple[str, ...]:
    if value is None:
        return default
    if isinstance(value, str):
        value = value.split(",")
    return tuple(str(v).strip() for v in value if str(v).strip())


def _reward_config(raw: dict) -> RewardConfig:
    base = RewardConfig()
    return RewardConfig(
        per_call_xp=int(raw.get("per_call_xp", base.per_call_xp)),
        per_unit_xp=int(raw.get("per_unit_xp", base.per_unit_xp)),
        unit_ms=int(raw.get("unit_ms", base.unit_ms)),
        max_call_ms=int(raw.get("max_call_ms", base.max_call_ms)),
        missed_call_penalty_xp=int(
            raw.get("missed_call_penalty_xp", base.missed_call_penalty_xp)
        ),
        missed_call_labels=_tuple(raw.get("missed_call_labels"), base.missed_call_labels),
        call_sources=_tuple(raw.get("call_sources"), base.call_sources),
        appointment_xp=int(raw.get("appointment_xp", base.appointment_xp)),
        appointment_badge=str(raw.get("appointment_badge", base.appointment_badge)),
        appointment_values=_tuple(raw.get("appointment_values"), base.appointment_values),
        approval_xp=int(raw.get("approval_xp", base.approval_xp)),
        sales_step=int(raw.get("sales_step", base.sales_step)),
        sales_xp_per_step=int(raw.get("sales_xp_per_step", base.sales_xp_per_step)),
        small_sale_xp=int(raw.get("small_sale_xp", base.small_sale_xp)),
        company_sales_to_all=bool(raw.get("company_sales_to_all", base.company_sales_to_all)),
        maker_award_xp=int(raw.get("maker_award_xp", base.maker_award_xp)),
        maker_award_badge=str(raw.get("maker_award_badge", base.maker_award_badge)),
        daily_bonus_xp=int(raw.get("daily_bonus_xp", base.daily_bonus_xp)),
        daily_task_keywords=_tuple(raw.get("daily_task_keywords"), base.daily_task_keywords),
    )


def load_config(path: str | Path = "config.yaml") -> KudosConfig:
    """Read *path* and return a :class:`KudosConfig` instance.

    Missing keys fall back to the dataclass defaults.

    Raises
    ------
    FileNotFoundError
        If the YAML file doesn't exist.
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(
            f"Configuration file not found: {config_path.resolve()}\n"
            "Hint: copy config.yaml.example → config.yaml and edit it."
        )

    with open(config_path, encoding="utf-8") as fh:
        raw: dict = yaml.safe_load(fh) or {}

    base = KudosConfig()
    gamification = raw.get("gamification") or {}
    adjustments = raw.get("adjustments") or {}
    return KudosConfig(
        timezone=str(raw.get("timezone", base.timezone)),
        data_dir=Path(raw.get("data_dir", base.data_dir)),
        public_base_url=str(raw.get("public_base_url") or "").rstrip("/"),
        dry_run=bool(raw.get("dry_run", base.dry_run)),
        dedupe_ttl_seconds=int(raw.get("dedupe_ttl_seconds", base.dedupe_ttl_seconds)),
        signature_skew_seconds=int(
            raw.get("signature_skew_seconds", base.signature_skew_seconds)
        ),
        dispatch_min_interval_ms=int(
            raw.get("dispatch_min_interval_ms", base.dispatch_min_interval_ms)
        ),
        gamification_base_url=str(
            gamification.get("base_url", base.gamification_base_url)
        ).rstrip("/"),
        gamification_client_id=str(gamification.get("client_id", base.gamification_client_id)),
        gamification_timeout_seconds=float(
            gamification.get("timeout_seconds", base.gamification_timeout_seconds)
        ),
        require_internal_actor=bool(
            raw.get("require_internal_actor", base.require_internal_actor)
        ),
        default_actor_label=str(raw.get("default_actor_label", base.default_actor_label)),
        adjustment_rate_capacity=int(
            adjustments.get("rate_capacity", base.adjustment_rate_capacity)
        ),
        adjustment_refill_seconds=float(
            adjustments.get("refill_seconds", base.adjustment_refill_seconds)
        ),
        adjustment_idempotency_ttl_seconds=int(
            adjustments.get("idempotency_ttl_seconds", base.adjustment_idempotency_ttl_seconds)
        ),
        rewards=_reward_config(raw.get("rewards") or {}),
    )


def load_secrets() -> Secrets:
    """Collect webhook secrets and tokens from ``os.environ``."""
    return Secrets(
        crm_webhook_secret=os.getenv("CRM_WEBHOOK_SECRET", "").strip(),
        telephony_webhook_secret=os.getenv("TELEPHONY_WEBHOOK_SECRET", "").strip(),
        telephony_verification_token=os.getenv("TELEPHONY_VERIFICATION_TOKEN", "").strip(),
        telephony_bearer_token=os.getenv("TELEPHONY_BEARER_TOKEN", "").strip(),
        auth_token=os.getenv("AUTH_TOKEN", "").strip(),
        import_tokens=_tuple(os.getenv("IMPORT_UPLOAD_TOKENS", ""), ()),
        gamification_webhook_secret=os.getenv("GAMIFICATION_WEBHOOK_SECRET", "").strip(),
    )


def load_identity_maps() -> IdentityMaps:
    """Read the identity maps from ``<NAME>_JSON`` or ``<NAME>_FILE`` variables."""
    return IdentityMaps(
        owners=read_env_json("CRM_OWNER_MAP"),
        names=read_env_json("NAME_EMAIL_MAP"),
        telephony_users=read_env_json("TELEPHONY_USER_MAP"),
        credentials=read_env_json("GAMIFICATION_USERS"),
    )
