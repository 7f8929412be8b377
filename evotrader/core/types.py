"""
Shared types for the evotrader control core.

Entities mirror the ledger tables. Status fields are explicit enums and the
entities that carry a lifecycle (generation, arm session) expose transition
helpers that reject invalid source states instead of overwriting them.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from evotrader.core.utils import parse_utc, to_float, to_iso
from evotrader.errors import InvalidTransition, InvariantViolation


class StrategyTemplate(str, Enum):
    TREND_PULLBACK = "trend_pullback"
    MEAN_REVERSION = "mean_reversion"
    BREAKOUT = "breakout"


class AgentRole(str, Enum):
    CORE = "core"
    EXPLORER = "explorer"


class AgentStatus(str, Enum):
    ELITE = "elite"
    ACTIVE = "active"
    PROBATION = "probation"
    REMOVED = "removed"


class SystemStatus(str, Enum):
    RUNNING = "running"
    PAUSED = "paused"
    STOPPED = "stopped"
    ERROR = "error"


class TradeMode(str, Enum):
    PAPER = "paper"
    LIVE = "live"


class Decision(str, Enum):
    BUY = "buy"
    SELL = "sell"
    HOLD = "hold"


class OrderSide(str, Enum):
    BUY = "buy"
    SELL = "sell"


class OrderStatus(str, Enum):
    PENDING = "pending"
    FILLED = "filled"
    REJECTED = "rejected"
    CANCELLED = "cancelled"


class TerminationReason(str, Enum):
    TIME = "time"
    TRADES = "trades"
    DRAWDOWN = "drawdown"
    DROUGHT = "drought"


class GenerationPhase(str, Enum):
    STARTING = "starting"
    ACTIVE = "active"
    ENDING = "ending"
    ENDED = "ended"


GENERATION_TRANSITIONS = {
    GenerationPhase.STARTING: {GenerationPhase.ACTIVE},
    GenerationPhase.ACTIVE: {GenerationPhase.ENDING},
    GenerationPhase.ENDING: {GenerationPhase.ENDED},
    GenerationPhase.ENDED: set(),
}


class DroughtOverride(str, Enum):
    AUTO = "auto"
    FORCE_OFF = "force_off"
    FORCE_ON = "force_on"


class SessionStatus(str, Enum):
    ACTIVE = "active"
    EXPIRED = "expired"
    SPENT = "spent"


class SpendReason(str, Enum):
    OK = "OK"
    OK_IDEMPOTENT = "OK_IDEMPOTENT"
    SESSION_NOT_FOUND = "SESSION_NOT_FOUND"
    SESSION_EXPIRED = "SESSION_EXPIRED"
    CANARY_ALREADY_CONSUMED = "CANARY_ALREADY_CONSUMED"


@dataclass
class Agent:
    id: str
    generation_id: str
    strategy_template: StrategyTemplate
    genes: Dict[str, float] = field(default_factory=dict)
    capital_allocation: float = 40.0
    role: AgentRole = AgentRole.CORE
    status: AgentStatus = AgentStatus.ACTIVE
    created_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Agent":
        return cls(
            id=str(row["id"]),
            generation_id=str(row.get("generation_id") or ""),
            strategy_template=StrategyTemplate(row["strategy_template"]),
            genes={str(k): to_float(v) for k, v in (row.get("genes") or {}).items()},
            capital_allocation=to_float(row.get("capital_allocation"), 40.0),
            role=AgentRole(row.get("role") or "core"),
            status=AgentStatus(row.get("status") or "active"),
            created_at=parse_utc(row.get("created_at")),
        )

    def to_row(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "generation_id": self.generation_id,
            "strategy_template": self.strategy_template.value,
            "genes": dict(self.genes),
            "capital_allocation": self.capital_allocation,
            "role": self.role.value,
            "status": self.status.value,
            "created_at": to_iso(self.created_at),
        }


@dataclass
class Generation:
    id: str
    generation_number: int
    start_time: datetime
    end_time: Optional[datetime] = None
    is_active: bool = True
    termination_reason: Optional[TerminationReason] = None
    total_pnl: float = 0.0
    total_trades: int = 0
    max_drawdown: float = 0.0
    ending_started_at: Optional[datetime] = None
    starting_equity: Optional[float] = None
    phase: GenerationPhase = GenerationPhase.ACTIVE

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Generation":
        is_active = bool(row.get("is_active", True))
        reason = row.get("termination_reason")
        ending_started_at = parse_utc(row.get("ending_started_at"))
        if not is_active:
            phase = GenerationPhase.ENDED
        elif ending_started_at is not None:
            phase = GenerationPhase.ENDING
        else:
            phase = GenerationPhase.ACTIVE
        return cls(
            id=str(row["id"]),
            generation_number=int(row.get("generation_number") or 0),
            start_time=parse_utc(row.get("start_time")),
            end_time=parse_utc(row.get("end_time")),
            is_active=is_active,
            termination_reason=TerminationReason(reason) if reason else None,
            total_pnl=to_float(row.get("total_pnl")),
            total_trades=int(row.get("total_trades") or 0),
            max_drawdown=to_float(row.get("max_drawdown")),
            ending_started_at=ending_started_at,
            starting_equity=to_float(row["starting_equity"]) if row.get("starting_equity") is not None else None,
            phase=phase,
        )

    def to_row(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "generation_number": self.generation_number,
            "start_time": to_iso(self.start_time),
            "end_time": to_iso(self.end_time),
            "is_active": self.is_active,
            "termination_reason": self.termination_reason.value if self.termination_reason else None,
            "total_pnl": self.total_pnl,
            "total_trades": self.total_trades,
            "max_drawdown": self.max_drawdown,
            "ending_started_at": to_iso(self.ending_started_at),
            "starting_equity": self.starting_equity,
        }

    def transition(self, target: GenerationPhase) -> "Generation":
        """Return a copy in the target phase, rejecting transitions the lifecycle does not allow."""
        if target not in GENERATION_TRANSITIONS[self.phase]:
            raise InvalidTransition("generation", self.phase.value, target.value)
        return replace(self, phase=target)

    def finalized(
        self,
        reason: TerminationReason,
        ended_at: datetime,
        total_pnl: float,
        total_trades: int,
        max_drawdown: float,
    ) -> "Generation":
        ended = self.transition(GenerationPhase.ENDED)
        return replace(
            ended,
            is_active=False,
            end_time=ended_at,
            termination_reason=reason,
            total_pnl=total_pnl,
            total_trades=total_trades,
            max_drawdown=max_drawdown,
        )


@dataclass
class PaperAccount:
    id: str
    cash: float
    starting_cash: float = 1000.0
    peak_equity: float = 1000.0
    peak_equity_updated_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "PaperAccount":
        return cls(
            id=str(row["id"]),
            cash=to_float(row.get("cash")),
            starting_cash=to_float(row.get("starting_cash"), 1000.0),
            peak_equity=to_float(row.get("peak_equity"), 1000.0),
            peak_equity_updated_at=parse_utc(row.get("peak_equity_updated_at")),
        )


@dataclass
class Position:
    account_id: str
    symbol: str
    qty: float = 0.0
    avg_entry_price: float = 0.0
    realized_pnl: float = 0.0

    def __post_init__(self):
        if self.qty < 0:
            raise InvariantViolation(f"Negative position quantity for {self.symbol}: {self.qty}")

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Position":
        return cls(
            account_id=str(row.get("account_id") or ""),
            symbol=str(row["symbol"]),
            qty=to_float(row.get("qty")),
            avg_entry_price=to_float(row.get("avg_entry_price")),
            realized_pnl=to_float(row.get("realized_pnl")),
        )


@dataclass(frozen=True)
class Order:
    id: str
    account_id: str
    symbol: str
    side: OrderSide
    qty: float
    status: OrderStatus
    agent_id: Optional[str] = None
    generation_id: Optional[str] = None
    filled_price: Optional[float] = None
    filled_qty: Optional[float] = None
    slippage_pct: Optional[float] = None
    reason: Optional[str] = None
    tags: Dict[str, Any] = field(default_factory=dict)
    created_at: Optional[datetime] = None
    filled_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Order":
        return cls(
            id=str(row["id"]),
            account_id=str(row.get("account_id") or ""),
            symbol=str(row["symbol"]),
            side=OrderSide(row["side"]),
            qty=to_float(row.get("qty")),
            status=OrderStatus(row.get("status") or "pending"),
            agent_id=row.get("agent_id"),
            generation_id=row.get("generation_id"),
            filled_price=to_float(row["filled_price"]) if row.get("filled_price") is not None else None,
            filled_qty=to_float(row["filled_qty"]) if row.get("filled_qty") is not None else None,
            slippage_pct=to_float(row["slippage_pct"]) if row.get("slippage_pct") is not None else None,
            reason=row.get("reason"),
            tags=dict(row.get("tags") or {}),
            created_at=parse_utc(row.get("created_at")),
            filled_at=parse_utc(row.get("filled_at")),
        )

    def to_row(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "account_id": self.account_id,
            "agent_id": self.agent_id,
            "generation_id": self.generation_id,
            "symbol": self.symbol,
            "side": self.side.value,
            "order_type": "market",
            "qty": self.qty,
            "status": self.status.value,
            "filled_price": self.filled_price,
            "filled_qty": self.filled_qty,
            "slippage_pct": self.slippage_pct,
            "reason": self.reason,
            "tags": dict(self.tags),
            "created_at": to_iso(self.created_at),
            "filled_at": to_iso(self.filled_at),
        }


def is_learnable(tags: Dict[str, Any]) -> bool:
    """Test-mode and forced liquidation/rollover fills never feed fitness."""
    tags = tags or {}
    if tags.get("test_mode") is True:
        return False
    if tags.get("liquidation") is True or tags.get("rollover") is True:
        return False
    entry_reason = tags.get("entry_reason") or []
    if isinstance(entry_reason, str):
        entry_reason = [entry_reason]
    return "test_mode" not in entry_reason


@dataclass(frozen=True)
class Fill:
    order_id: str
    symbol: str
    side: OrderSide
    qty: float
    price: float
    fee: float
    timestamp: datetime
    agent_id: Optional[str] = None
    generation_id: Optional[str] = None
    tags: Dict[str, Any] = field(default_factory=dict)

    @property
    def learnable(self) -> bool:
        return is_learnable(self.tags)

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Fill":
        return cls(
            order_id=str(row.get("order_id") or ""),
            symbol=str(row["symbol"]),
            side=OrderSide(row["side"]),
            qty=to_float(row.get("qty")),
            price=to_float(row.get("price")),
            fee=to_float(row.get("fee")),
            timestamp=parse_utc(row.get("timestamp")),
            agent_id=row.get("agent_id"),
            generation_id=row.get("generation_id"),
            tags=dict(row.get("tags") or {}),
        )

    def to_row(self) -> Dict[str, Any]:
        return {
            "order_id": self.order_id,
            "symbol": self.symbol,
            "side": self.side.value,
            "qty": self.qty,
            "price": self.price,
            "fee": self.fee,
            "timestamp": to_iso(self.timestamp),
        }


@dataclass(frozen=True)
class GateFailure:
    gate: str
    actual: float
    threshold: float
    margin: float

    def to_dict(self) -> Dict[str, float]:
        return {
            "gate": self.gate,
            "actual": self.actual,
            "threshold": self.threshold,
            "margin": self.margin,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional["GateFailure"]:
        if not isinstance(data, dict) or not data.get("gate"):
            return None
        return cls(
            gate=str(data["gate"]),
            actual=to_float(data.get("actual")),
            threshold=to_float(data.get("threshold")),
            margin=to_float(data.get("margin")),
        )


DECISION_EVENT_SCHEMA_VERSION = 1


@dataclass(frozen=True)
class DecisionEvent:
    """Write-once decision telemetry, one per cycle.

    Fields the tuner and dashboards depend on are typed; ``extra`` is only for
    forward-compatible diagnostics.
    """

    cycle_id: str
    agent_id: Optional[str]
    generation_id: Optional[str]
    decision: Decision
    schema_version: int = DECISION_EVENT_SCHEMA_VERSION
    strategy_template: Optional[str] = None
    role: Optional[str] = None
    symbol: Optional[str] = None
    qty: float = 0.0
    confidence: float = 0.0
    reasons: List[str] = field(default_factory=list)
    exit_reason: Optional[str] = None
    thresholds_used: str = "baseline"
    symbols_evaluated: int = 0
    drought_state: Dict[str, Any] = field(default_factory=dict)
    gate_failures: Dict[str, Dict[str, float]] = field(default_factory=dict)
    nearest_pass: Optional[GateFailure] = None
    top_hold_reasons: List[str] = field(default_factory=list)
    evaluations: List[Dict[str, Any]] = field(default_factory=list)
    tags: Dict[str, Any] = field(default_factory=dict)
    adaptive_tuning: Dict[str, Any] = field(default_factory=dict)
    execution: Dict[str, Any] = field(default_factory=dict)
    mode: str = "paper"
    extra: Dict[str, Any] = field(default_factory=dict)

    def to_metadata(self) -> Dict[str, Any]:
        return {
            "schema_version": self.schema_version,
            "cycle_id": self.cycle_id,
            "agent_id": self.agent_id,
            "generation_id": self.generation_id,
            "strategy_template": self.strategy_template,
            "role": self.role,
            "symbol": self.symbol,
            "decision": self.decision.value,
            "qty": self.qty,
            "confidence": self.confidence,
            "reasons": list(self.reasons),
            "exit_reason": self.exit_reason,
            "thresholds_used": self.thresholds_used,
            "symbols_evaluated": self.symbols_evaluated,
            "drought_state": dict(self.drought_state),
            "gate_failures": {k: dict(v) for k, v in self.gate_failures.items()},
            "nearest_pass": self.nearest_pass.to_dict() if self.nearest_pass else None,
            "top_hold_reasons": list(self.top_hold_reasons),
            "evaluations": list(self.evaluations),
            "tags": dict(self.tags),
            "adaptive_tuning": dict(self.adaptive_tuning),
            "execution": dict(self.execution),
            "mode": self.mode,
            "extra": dict(self.extra),
        }

    @classmethod
    def from_metadata(cls, data: Dict[str, Any]) -> "DecisionEvent":
        data = data or {}
        try:
            decision = Decision(data.get("decision") or "hold")
        except ValueError:
            decision = Decision.HOLD
        return cls(
            cycle_id=str(data.get("cycle_id") or ""),
            agent_id=data.get("agent_id"),
            generation_id=data.get("generation_id"),
            decision=decision,
            schema_version=int(data.get("schema_version") or 0),
            strategy_template=data.get("strategy_template"),
            role=data.get("role"),
            symbol=data.get("symbol"),
            qty=to_float(data.get("qty")),
            confidence=to_float(data.get("confidence")),
            reasons=list(data.get("reasons") or []),
            exit_reason=data.get("exit_reason"),
            thresholds_used=str(data.get("thresholds_used") or "baseline"),
            symbols_evaluated=int(data.get("symbols_evaluated") or 0),
            drought_state=dict(data.get("drought_state") or {}),
            gate_failures={
                str(k): dict(v) for k, v in (data.get("gate_failures") or {}).items() if isinstance(v, dict)
            },
            nearest_pass=GateFailure.from_dict(data.get("nearest_pass")),
            top_hold_reasons=list(data.get("top_hold_reasons") or []),
            evaluations=list(data.get("evaluations") or []),
            tags=dict(data.get("tags") or {}),
            adaptive_tuning=dict(data.get("adaptive_tuning") or {}),
            execution=dict(data.get("execution") or {}),
            mode=str(data.get("mode") or "paper"),
            extra=dict(data.get("extra") or {}),
        )


@dataclass
class ArmSession:
    id: str
    expires_at: datetime
    mode: str = "live"
    created_at: Optional[datetime] = None
    spent_at: Optional[datetime] = None
    spent_by_request_id: Optional[str] = None
    max_live_orders: int = 1
    orders_executed: int = 0
    metadata: Dict[str, Any] = field(default_factory=dict)

    def status_at(self, now: datetime) -> SessionStatus:
        if self.spent_at is not None:
            return SessionStatus.SPENT
        if self.expires_at < now:
            return SessionStatus.EXPIRED
        return SessionStatus.ACTIVE

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "ArmSession":
        return cls(
            id=str(row["id"]),
            expires_at=parse_utc(row.get("expires_at")),
            mode=str(row.get("mode") or "live"),
            created_at=parse_utc(row.get("created_at")),
            spent_at=parse_utc(row.get("spent_at")),
            spent_by_request_id=row.get("spent_by_request_id"),
            max_live_orders=int(row.get("max_live_orders") or 1),
            orders_executed=int(row.get("orders_executed") or 0),
            metadata=dict(row.get("metadata") or {}),
        )

    def to_row(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "mode": self.mode,
            "created_at": to_iso(self.created_at),
            "expires_at": to_iso(self.expires_at),
            "spent_at": to_iso(self.spent_at),
            "spent_by_request_id": self.spent_by_request_id,
            "max_live_orders": self.max_live_orders,
            "orders_executed": self.orders_executed,
            "metadata": dict(self.metadata),
        }


@dataclass(frozen=True)
class SpendResult:
    success: bool
    reason: SpendReason
    orders_remaining: int = 0
    session_mode: str = ""

    @classmethod
    def from_row(cls, row: Optional[Dict[str, Any]]) -> "SpendResult":
        if not row:
            return cls(success=False, reason=SpendReason.SESSION_NOT_FOUND)
        return cls(
            success=bool(row.get("success")),
            reason=SpendReason(row.get("reason") or "SESSION_NOT_FOUND"),
            orders_remaining=int(row.get("orders_remaining") or 0),
            session_mode=str(row.get("session_mode") or ""),
        )


@dataclass(frozen=True)
class PaperFillOutcome:
    """What ``apply_paper_fill`` did: the new cash and holding, or why nothing was written"""
    ok: bool
    reason: Optional[str] = None
    cash: float = 0.0
    position_qty: float = 0.0
    realized_pnl: Optional[float] = None

    @classmethod
    def from_row(cls, row: Optional[Dict[str, Any]]) -> "PaperFillOutcome":
        if not row:
            return cls(ok=False, reason="no_paper_account")
        realized = row.get("realized_pnl")
        return cls(
            ok=bool(row.get("ok")),
            reason=row.get("reason"),
            cash=to_float(row.get("cash")),
            position_qty=to_float(row.get("position_qty")),
            realized_pnl=to_float(realized) if realized is not None else None,
        )


@dataclass
class SystemState:
    status: SystemStatus = SystemStatus.STOPPED
    trade_mode: TradeMode = TradeMode.PAPER
    current_generation_id: Optional[str] = None
    live_armed_until: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "SystemState":
        row = row or {}
        return cls(
            status=SystemStatus(row.get("status") or "stopped"),
            trade_mode=TradeMode(row.get("trade_mode") or "paper"),
            current_generation_id=row.get("current_generation_id"),
            live_armed_until=parse_utc(row.get("live_armed_until")),
        )

    def is_armed(self, now: datetime) -> bool:
        return self.live_armed_until is not None and self.live_armed_until > now


@dataclass
class ShadowTrade:
    id: str
    agent_id: str
    generation_id: str
    symbol: str
    side: str
    entry_time: datetime
    entry_price: float
    intended_qty: float
    confidence: float = 0.0
    outcome_status: str = "pending"
    exit_time: Optional[datetime] = None
    exit_price: Optional[float] = None
    simulated_pnl: Optional[float] = None
    simulated_pnl_pct: Optional[float] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "ShadowTrade":
        return cls(
            id=str(row["id"]),
            agent_id=str(row.get("agent_id") or ""),
            generation_id=str(row.get("generation_id") or ""),
            symbol=str(row["symbol"]),
            side=str(row.get("side") or "BUY").upper(),
            entry_time=parse_utc(row.get("entry_time")),
            entry_price=to_float(row.get("entry_price")),
            intended_qty=to_float(row.get("intended_qty")),
            confidence=to_float(row.get("confidence")),
            outcome_status=str(row.get("outcome_status") or "pending"),
            exit_time=parse_utc(row.get("exit_time")),
            exit_price=to_float(row["exit_price"]) if row.get("exit_price") is not None else None,
            simulated_pnl=to_float(row["simulated_pnl"]) if row.get("simulated_pnl") is not None else None,
            simulated_pnl_pct=to_float(row["simulated_pnl_pct"]) if row.get("simulated_pnl_pct") is not None else None,
        )
