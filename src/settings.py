"""
settings.py

Runtime configuration for the CapitalLab workflow service.

All values come from CAPITALLAB_* environment variables and are validated
up front; an invalid value raises ValueError at start-up rather than at
the first request that needs it.

    CAPITALLAB_LOG_LEVEL              DEBUG | INFO | WARNING | ERROR   (INFO)
    CAPITALLAB_HOST                   bind address                      (127.0.0.1)
    CAPITALLAB_PORT                   bind port                         (8000)
    CAPITALLAB_RELOAD                 uvicorn auto-reload               (false)
    CAPITALLAB_SEED_DEMO              seed demo workflows on start-up   (false)
    CAPITALLAB_SUSPENSION_ROLES       comma-separated roles that may pause/resume (regulator)
    CAPITALLAB_RESUME_CREATES_ENTRY   resume opens a fresh history entry (false)
    CAPITALLAB_STAGE_SLA              "stage=hours,..." overrides of the default SLAs
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Dict, FrozenSet, Mapping, Tuple

from model import TERMINAL_STAGES, ParticipantRole, Stage

DEFAULT_STAGE_SLA_HOURS: Dict[str, int] = {
    Stage.CAPITAL_RAISE_INTENT.value: 72,
    Stage.IB_ASSIGNMENT.value: 120,
    Stage.DUE_DILIGENCE.value: 336,
    Stage.PROSPECTUS_BUILDING.value: 336,
    Stage.REGULATORY_REVIEW.value: 720,
    Stage.LISTING_APPROVAL.value: 240,
    Stage.ISIN_ASSIGNMENT.value: 48,
    Stage.INVESTOR_ONBOARDING.value: 168,
    Stage.TRADING_ACTIVE.value: 720,
    Stage.SETTLEMENT.value: 72,
}

_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


@dataclass(frozen=True)
class RuntimeSettings:
    """Runtime settings loaded from environment with fail-fast validation."""

    log_level: str = "INFO"
    host: str = "127.0.0.1"
    port: int = 8000
    reload: bool = False
    seed_demo: bool = False
    suspension_roles: Tuple[str, ...] = (ParticipantRole.REGULATOR.value,)
    resume_creates_entry: bool = False
    stage_sla_hours: Mapping[str, int] = field(default_factory=lambda: dict(DEFAULT_STAGE_SLA_HOURS))

    @classmethod
    def from_env(cls) -> "RuntimeSettings":
        sla = dict(DEFAULT_STAGE_SLA_HOURS)
        sla.update(_parse_sla(os.getenv("CAPITALLAB_STAGE_SLA", "")))
        roles = os.getenv("CAPITALLAB_SUSPENSION_ROLES", ParticipantRole.REGULATOR.value)
        return cls(
            log_level=os.getenv("CAPITALLAB_LOG_LEVEL", "INFO"),
            host=os.getenv("CAPITALLAB_HOST", "127.0.0.1"),
            port=_get_env_int("CAPITALLAB_PORT", default=8000, minimum=1, maximum=65_535),
            reload=_get_env_bool("CAPITALLAB_RELOAD", default=False),
            seed_demo=_get_env_bool("CAPITALLAB_SEED_DEMO", default=False),
            suspension_roles=tuple(r.strip() for r in roles.split(",") if r.strip()),
            resume_creates_entry=_get_env_bool("CAPITALLAB_RESUME_CREATES_ENTRY", default=False),
            stage_sla_hours=sla,
        ).normalized()

    def normalized(self) -> "RuntimeSettings":
        """Validate and normalize all fields. Raises ValueError on invalid configuration."""
        log_level = self.log_level.strip().upper()
        if log_level not in _LOG_LEVELS:
            raise ValueError(
                f"CAPITALLAB_LOG_LEVEL must be one of: {', '.join(sorted(_LOG_LEVELS))}"
            )
        if not self.host.strip():
            raise ValueError("CAPITALLAB_HOST must be non-empty")

        known_roles = {r.value for r in ParticipantRole}
        roles = tuple(r.strip().lower() for r in self.suspension_roles)
        unknown = [r for r in roles if r not in known_roles]
        if unknown:
            raise ValueError(f"CAPITALLAB_SUSPENSION_ROLES has unknown roles: {unknown}")
        if not roles:
            raise ValueError("CAPITALLAB_SUSPENSION_ROLES must name at least one role")

        live_stages = {s.value for s in Stage if s not in TERMINAL_STAGES}
        for stage, hours in self.stage_sla_hours.items():
            if stage not in live_stages:
                raise ValueError(f"CAPITALLAB_STAGE_SLA names an unknown or terminal stage: {stage!r}")
            if hours <= 0:
                raise ValueError(f"CAPITALLAB_STAGE_SLA hours must be > 0, got {hours} for {stage}")

        return RuntimeSettings(
            log_level=log_level,
            host=self.host.strip(),
            port=self.port,
            reload=self.reload,
            seed_demo=self.seed_demo,
            suspension_roles=roles,
            resume_creates_entry=self.resume_creates_entry,
            stage_sla_hours=dict(self.stage_sla_hours),
        )

    @property
    def numeric_log_level(self) -> int:
        return logging.getLevelName(self.log_level)

    def suspension_role_set(self) -> FrozenSet[ParticipantRole]:
        return frozenset(ParticipantRole(r) for r in self.suspension_roles)

    def stage_sla(self) -> Dict[Stage, timedelta]:
        return {Stage(stage): timedelta(hours=hours) for stage, hours in self.stage_sla_hours.items()}


def _parse_sla(raw: str) -> Dict[str, int]:
    """Parse "stage=hours,stage=hours" into a dict."""
    result: Dict[str, int] = {}
    for item in raw.split(","):
        item = item.strip()
        if not item:
            continue
        stage, sep, hours = item.partition("=")
        if not sep:
            raise ValueError(f"CAPITALLAB_STAGE_SLA entries must look like stage=hours, got: {item!r}")
        try:
            result[stage.strip()] = int(hours)
        except ValueError as exc:
            raise ValueError(f"CAPITALLAB_STAGE_SLA hours must be an integer, got: {hours!r}") from exc
    return result


def _get_env_int(name: str, default: int, minimum: int, maximum: int = 10_000_000) -> int:
    """Parse an integer from an environment variable with bounds checking."""
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        parsed = int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got: {raw!r}") from exc
    if parsed < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got: {parsed}")
    if parsed > maximum:
        raise ValueError(f"{name} must be <= {maximum}, got: {parsed}")
    return parsed


def _get_env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    value = raw.strip().lower()
    if value in {"1", "true", "yes", "on"}:
        return True
    if value in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"{name} must be a boolean, got: {raw!r}")
