"""
Ledger Store boundary.

Durable accounts, positions, orders, fills, agents, generations, shadow
trades, arm sessions and the append-only ``control_events`` log. Every
transition that must happen at most once is a single atomic operation on
the store (``spend_arm_session``, ``begin_generation_end``, ``end_generation``,
``rollover_generation``, ``start_generation``, ``apply_paper_fill``,
``raise_peak_equity``, ``merge_config``, ``transition_system_status``),
never a read-then-write in the caller.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Sequence

from evotrader.core.types import (
    Agent,
    AgentStatus,
    ArmSession,
    Fill,
    Generation,
    Order,
    OrderSide,
    PaperAccount,
    PaperFillOutcome,
    Position,
    ShadowTrade,
    SpendResult,
    SystemState,
    SystemStatus,
    TerminationReason,
)
from evotrader.errors import InvariantViolation


def deep_merge(base: Dict[str, Any], patch: Dict[str, Any]) -> Dict[str, Any]:
    """Recursive dict merge matching the ``jsonb_merge_deep`` SQL function."""
    merged = dict(base or {})
    for key, value in (patch or {}).items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def fill_rejection(cash: float, held_qty: float, side: OrderSide, qty: float, price: float, fee: float) -> Optional[str]:
    """Funds check of ``apply_paper_fill``; None when the fill may proceed."""
    if side is OrderSide.BUY and cash < qty * price + fee:
        return "insufficient_cash"
    if side is OrderSide.SELL and held_qty < qty:
        return "insufficient_position"
    return None


def apply_fill(
    position: Position,
    cash: float,
    side: OrderSide,
    qty: float,
    price: float,
    fee: float,
):
    """Return the (position, cash) pair after one fill. Average-entry accounting, as in ``apply_paper_fill``."""
    notional = qty * price
    if side is OrderSide.BUY:
        new_qty = position.qty + qty
        avg = (position.qty * position.avg_entry_price + qty * price) / new_qty
        return (
            Position(
                account_id=position.account_id,
                symbol=position.symbol,
                qty=new_qty,
                avg_entry_price=avg,
                realized_pnl=position.realized_pnl,
            ),
            cash - notional - fee,
        )

    if qty > position.qty + 1e-12:
        raise InvariantViolation(f"Sell of {qty} {position.symbol} exceeds held {position.qty}")
    realized = (price - position.avg_entry_price) * qty - fee
    remaining = max(0.0, position.qty - qty)
    return (
        Position(
            account_id=position.account_id,
            symbol=position.symbol,
            qty=remaining,
            avg_entry_price=position.avg_entry_price if remaining > 0 else 0.0,
            realized_pnl=position.realized_pnl + realized,
        ),
        cash + notional - fee,
    )


class LedgerStore(ABC):
    """Typed async access to the ledger. Implementations must keep the atomic operations atomic."""

    # ---- system state / config -------------------------------------------------

    @abstractmethod
    async def get_system_state(self) -> SystemState: ...

    @abstractmethod
    async def update_system_state(self, fields: Dict[str, Any]) -> None: ...

    @abstractmethod
    async def transition_system_status(
        self, allowed_from: Iterable[SystemStatus], new_status: SystemStatus
    ) -> Optional[SystemStatus]:
        """Set status only if the current one is in ``allowed_from``; return the previous status or None."""

    @abstractmethod
    async def get_config(self) -> Dict[str, Any]: ...

    @abstractmethod
    async def merge_config(self, patch: Dict[str, Any]) -> Dict[str, Any]:
        """Deep-merge ``patch`` into the config document in one atomic update."""

    # ---- market data -------------------------------------------------------------

    @abstractmethod
    async def list_market_data(self, symbols: Optional[Sequence[str]] = None) -> List[Dict[str, Any]]: ...

    # ---- agents / generations ------------------------------------------------------

    @abstractmethod
    async def list_agents(
        self, generation_id: str, statuses: Optional[Iterable[AgentStatus]] = None
    ) -> List[Agent]: ...

    @abstractmethod
    async def update_agent_status(self, agent_ids: Sequence[str], status: AgentStatus) -> None: ...

    @abstractmethod
    async def get_generation(self, generation_id: str) -> Optional[Generation]: ...

    @abstractmethod
    async def get_active_generation(self) -> Optional[Generation]: ...

    @abstractmethod
    async def start_generation(self) -> Generation:
        """Atomically deactivate any active generation, open number + 1, point system state at it.

        The new row's ``starting_equity`` is the paper account's cash plus its
        open positions at cost, read in the same step.
        """

    @abstractmethod
    async def begin_generation_end(self, generation_id: str, stale_after_seconds: float = 600) -> bool:
        """Claim the active -> ending transition. Exactly one concurrent caller gets True."""

    @abstractmethod
    async def end_generation(self, generation_id: str, reason: TerminationReason) -> bool:
        """Compare-and-swap end of an active generation. Logs ``generation_ended`` when it wins."""

    @abstractmethod
    async def rollover_generation(
        self, generation_id: str, reason: TerminationReason
    ) -> Optional[Generation]:
        """End ``generation_id`` and open its successor in one atomic step.

        Compare-and-swap on the old row: returns None, changing nothing, when it
        is no longer active. The winner logs ``generation_ended`` and
        ``generation_started`` and gets the new generation back.
        """

    @abstractmethod
    async def update_generation_stats(
        self,
        generation_id: str,
        total_pnl: float,
        total_trades: int,
        max_drawdown: float,
        avg_fitness: Optional[float] = None,
    ) -> None: ...

    # ---- paper account -------------------------------------------------------------

    @abstractmethod
    async def get_paper_account(self) -> Optional[PaperAccount]: ...

    @abstractmethod
    async def set_account_cash(self, account_id: str, cash: float) -> None: ...

    @abstractmethod
    async def raise_peak_equity(self, account_id: str, equity: float) -> float:
        """Atomic ``peak = max(peak, equity)``; returns the resulting peak."""

    @abstractmethod
    async def list_positions(self, account_id: str) -> List[Position]: ...

    @abstractmethod
    async def save_position(self, position: Position) -> None:
        """Upsert the position; a zero quantity removes it."""

    @abstractmethod
    async def insert_order(self, order: Order) -> Order: ...

    @abstractmethod
    async def apply_paper_fill(self, order: Order, fill: Fill) -> PaperFillOutcome:
        """Check funds, record the filled order and its fill, move position and cash in one step.

        A buy needs ``cash >= qty * price + fee``, a sell needs the held
        quantity. When the check fails nothing is written and the outcome
        carries ``insufficient_cash`` or ``insufficient_position``.
        """

    @abstractmethod
    async def count_filled_orders(
        self,
        since: Optional[datetime] = None,
        agent_id: Optional[str] = None,
        generation_id: Optional[str] = None,
        tag: Optional[str] = None,
    ) -> int:
        """Filled orders, optionally restricted to those whose ``tags[tag]`` is true."""

    @abstractmethod
    async def list_filled_orders(
        self, generation_id: Optional[str] = None, agent_id: Optional[str] = None
    ) -> List[Order]: ...

    @abstractmethod
    async def list_fills(
        self, generation_id: Optional[str] = None, agent_id: Optional[str] = None
    ) -> List[Fill]:
        """Fills joined with their order's agent, generation and tags, oldest first."""

    # ---- events ----------------------------------------------------------------------

    @abstractmethod
    async def log_event(
        self,
        action: str,
        metadata: Optional[Dict[str, Any]] = None,
        previous_status: Optional[str] = None,
        new_status: Optional[str] = None,
    ) -> None: ...

    @abstractmethod
    async def list_events(
        self, action: str, since: Optional[datetime] = None, limit: Optional[int] = None
    ) -> List[Dict[str, Any]]:
        """Newest first. Rows carry ``action``, ``triggered_at`` and ``metadata``."""

    @abstractmethod
    async def count_events(self, action: str, since: Optional[datetime] = None) -> int: ...

    @abstractmethod
    async def count_decisions(self, decision: str, since: datetime) -> int:
        """``trade_decision`` events with the given decision since ``since``."""

    # ---- performance / shadow -----------------------------------------------------------

    @abstractmethod
    async def save_performance(self, record: Dict[str, Any]) -> None:
        """Upsert on (agent_id, generation_id)."""

    @abstractmethod
    async def list_performance(self, generation_id: str) -> List[Dict[str, Any]]: ...

    @abstractmethod
    async def insert_shadow_trade(self, trade: ShadowTrade) -> None: ...

    @abstractmethod
    async def list_shadow_trades(
        self,
        status: Optional[str] = None,
        generation_id: Optional[str] = None,
        agent_id: Optional[str] = None,
    ) -> List[ShadowTrade]: ...

    @abstractmethod
    async def update_shadow_trade(self, trade_id: str, fields: Dict[str, Any]) -> None: ...

    # ---- arm sessions ---------------------------------------------------------------------

    @abstractmethod
    async def create_arm_session(self, session: ArmSession) -> ArmSession: ...

    @abstractmethod
    async def get_arm_session(self, session_id: str) -> Optional[ArmSession]: ...

    @abstractmethod
    async def spend_arm_session(self, session_id: str, request_id: str) -> SpendResult:
        """Atomic single-use spend. Exactly one concurrent caller wins."""
