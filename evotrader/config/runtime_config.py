"""
Runtime config snapshot.

The ``system_config.config`` document is mutable and shared across
invocations. Each invocation parses it once into an immutable
``RuntimeConfig`` and passes it explicitly to every component; nothing reads
the document again mid-cycle. Writes go through ``LedgerStore.merge_config``.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from evotrader.core.types import DroughtOverride
from evotrader.core.utils import parse_utc, to_float


class _Section(BaseModel):
    model_config = ConfigDict(frozen=True, extra="allow")


class AdaptiveTuningConfig(_Section):
    enabled: bool = True
    mode: Literal["drought_only", "always"] = "drought_only"
    window_decisions: int = Field(100, ge=1)
    cooldown_minutes: float = Field(60, ge=0)
    step_pct: float = Field(0.05, gt=0)
    max_relax_pct: float = Field(0.30, gt=0)
    decay_step_pct: float = Field(0.02, ge=0)
    last_adjusted_at: Optional[datetime] = None
    offsets: Dict[str, float] = Field(default_factory=dict)
    frozen_until: Optional[datetime] = None
    frozen_reason: Optional[str] = None
    freeze_after_kill_hours: float = Field(2, ge=0)

    @field_validator("last_adjusted_at", "frozen_until", mode="before")
    @classmethod
    def _parse_ts(cls, value):
        return parse_utc(value)

    @field_validator("offsets", mode="before")
    @classmethod
    def _parse_offsets(cls, value):
        if not isinstance(value, dict):
            return {}
        return {str(k): to_float(v) for k, v in value.items() if v is not None}


class DroughtSafetyConfig(_Section):
    max_trades_per_hour: int = Field(2, ge=0)
    size_multiplier: float = Field(0.5, gt=0, le=1)
    max_drawdown_pct: float = Field(2.0, gt=0)
    min_cash_pct: float = Field(50.0, ge=0, le=100)
    vol_spike_ratio: float = Field(2.5, gt=0)
    kill_cooldown_hours: float = Field(2, ge=0)


class ExplorerConfig(_Section):
    max_trades_per_hour: int = Field(1, ge=0)
    min_confidence: float = Field(0.55, ge=0, le=1)


class GenerationLimits(_Section):
    max_days: float = Field(7, gt=0)
    max_trades: int = Field(100, ge=1)
    max_drawdown_pct: float = Field(0.15, gt=0, le=1)
    drought_stagnation_days: float = Field(3, gt=0)
    min_sample_floor: int = Field(10, ge=0)


class CanaryLimits(_Section):
    max_trades_per_session: int = Field(1, ge=1)
    max_trades_per_day: int = Field(3, ge=0)
    max_usd_per_trade: float = Field(5.0, gt=0)
    auto_disarm_after_trade: bool = True


class PaperRiskConfig(_Section):
    fee_pct: float = Field(0.006, ge=0)
    slippage_min_pct: float = Field(0.001, ge=0)
    slippage_max_pct: float = Field(0.005, ge=0)


class ShadowTradingConfig(_Section):
    enabled: bool = True
    min_hold_minutes: float = Field(30, ge=0)
    max_hold_hours: float = Field(24, gt=0)


class LossReactionSession(_Section):
    """Running tally for one UTC day; a stale ``day`` means a fresh session"""
    day: Optional[str] = None
    consecutive_losses: int = Field(0, ge=0)
    last_loss_at: Optional[datetime] = None
    cooldown_until: Optional[datetime] = None
    size_multiplier: float = Field(1.0, gt=0, le=1)
    day_stopped: bool = False
    day_stopped_reason: Optional[str] = None
    day_realized_pnl: float = 0.0
    day_start_equity: Optional[float] = None

    @field_validator("last_loss_at", "cooldown_until", mode="before")
    @classmethod
    def _parse_ts(cls, value):
        return parse_utc(value)


class LossReactionConfig(_Section):
    enabled: bool = True
    cooldown_minutes_after_loss: float = Field(15, ge=0)
    max_consecutive_losses: int = Field(3, ge=1)
    halve_size_drawdown_pct: float = Field(2.0, gt=0)
    day_stop_pct: float = Field(5.0, gt=0)
    session: LossReactionSession = Field(default_factory=LossReactionSession)


class RuntimeConfig(_Section):
    strategy_test_mode: bool = False
    drought_override: DroughtOverride = DroughtOverride.AUTO
    drought_cooldown_until: Optional[datetime] = None
    adaptive_tuning: AdaptiveTuningConfig = Field(default_factory=AdaptiveTuningConfig)
    drought_safety: DroughtSafetyConfig = Field(default_factory=DroughtSafetyConfig)
    explorer: ExplorerConfig = Field(default_factory=ExplorerConfig)
    generation: GenerationLimits = Field(default_factory=GenerationLimits)
    live_cap_usd: float = Field(100.0, ge=0)
    loss_reaction: LossReactionConfig = Field(default_factory=LossReactionConfig)
    canary_limits: CanaryLimits = Field(default_factory=CanaryLimits)
    paper: PaperRiskConfig = Field(default_factory=PaperRiskConfig)
    shadow_trading: ShadowTradingConfig = Field(default_factory=ShadowTradingConfig)

    @field_validator("drought_cooldown_until", mode="before")
    @classmethod
    def _parse_cooldown(cls, value):
        return parse_utc(value)

    @field_validator("drought_override", mode="before")
    @classmethod
    def _parse_override(cls, value):
        try:
            return DroughtOverride(value or "auto")
        except ValueError:
            return DroughtOverride.AUTO

    @classmethod
    def from_document(cls, document: Optional[Dict[str, Any]]) -> "RuntimeConfig":
        """Build a snapshot from the raw config document.

        ``risk.paper`` is flattened into ``paper``; ``None`` sections fall back
        to defaults.
        """
        doc = dict(document or {})
        risk = doc.pop("risk", None)
        if isinstance(risk, dict) and isinstance(risk.get("paper"), dict):
            doc.setdefault("paper", risk["paper"])
        cleaned = {k: v for k, v in doc.items() if v is not None}
        return cls.model_validate(cleaned)

    def in_drought_cooldown(self, now: datetime) -> bool:
        return self.drought_cooldown_until is not None and now < self.drought_cooldown_until

    def tuning_frozen(self, now: datetime) -> bool:
        frozen_until = self.adaptive_tuning.frozen_until
        return frozen_until is not None and now < frozen_until
