"""
In-process ledger store.

Backs ``--dry-run`` invocations and the test-suite. Every atomic operation of
the ledger boundary runs under one lock, so concurrent callers (threads or
interleaved coroutines) observe compare-and-swap semantics identical to the
SQL functions in ``database/migrations``.
"""

from __future__ import annotations

import threading
import uuid
from copy import deepcopy
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence

from loguru import logger

from evotrader.core.types import (
    Agent,
    AgentStatus,
    ArmSession,
    Fill,
    Generation,
    Order,
    OrderSide,
    OrderStatus,
    PaperAccount,
    PaperFillOutcome,
    Position,
    ShadowTrade,
    SpendReason,
    SpendResult,
    SystemState,
    SystemStatus,
    TerminationReason,
)
from evotrader.core.utils import parse_utc, to_iso, utc_now
from evotrader.database.ledger_store import LedgerStore, apply_fill, deep_merge, fill_rejection


class InMemoryLedgerStore(LedgerStore):
    def __init__(self, clock: Callable[[], datetime] = utc_now, starting_cash: float = 1000.0):
        self.clock = clock
        self._lock = threading.Lock()
        self.system_state: Dict[str, Any] = {
            "status": SystemStatus.STOPPED.value,
            "trade_mode": "paper",
            "current_generation_id": None,
            "live_armed_until": None,
        }
        self.config: Dict[str, Any] = {}
        self.market_data: Dict[str, Dict[str, Any]] = {}
        self.agents: Dict[str, Dict[str, Any]] = {}
        self.generations: Dict[str, Dict[str, Any]] = {}
        self.account: Dict[str, Any] = {
            "id": str(uuid.uuid4()),
            "cash": starting_cash,
            "starting_cash": starting_cash,
            "peak_equity": starting_cash,
            "peak_equity_updated_at": to_iso(clock()),
        }
        self.positions: Dict[str, Dict[str, Any]] = {}
        self.orders: Dict[str, Dict[str, Any]] = {}
        self.fills: List[Dict[str, Any]] = []
        self.events: List[Dict[str, Any]] = []
        self.performance: Dict[tuple, Dict[str, Any]] = {}
        self.shadow_trades: Dict[str, Dict[str, Any]] = {}
        self.arm_sessions: Dict[str, Dict[str, Any]] = {}

    # ---- seeding helpers -------------------------------------------------------------

    def put_market_row(self, row: Dict[str, Any]) -> None:
        with self._lock:
            self.market_data[row["symbol"]] = dict(row)

    def put_agent(self, agent: Agent) -> None:
        with self._lock:
            self.agents[agent.id] = agent.to_row()

    def put_generation(self, generation: Generation) -> None:
        with self._lock:
            self.generations[generation.id] = generation.to_row()

    def _append_event(self, action: str, metadata: Optional[Dict[str, Any]], previous_status=None, new_status=None):
        self.events.append({
            "id": str(uuid.uuid4()),
            "action": action,
            "previous_status": previous_status,
            "new_status": new_status,
            "triggered_at": self.clock(),
            "metadata": deepcopy(metadata or {}),
        })

    # ---- system state / config ---------------------------------------------------------

    async def get_system_state(self) -> SystemState:
        with self._lock:
            return SystemState.from_row(dict(self.system_state))

    async def update_system_state(self, fields: Dict[str, Any]) -> None:
        with self._lock:
            for key, value in fields.items():
                self.system_state[key] = to_iso(value) if isinstance(value, datetime) else value

    async def transition_system_status(
        self, allowed_from: Iterable[SystemStatus], new_status: SystemStatus
    ) -> Optional[SystemStatus]:
        allowed = {SystemStatus(s).value for s in allowed_from}
        with self._lock:
            current = self.system_state["status"]
            if current not in allowed:
                return None
            self.system_state["status"] = new_status.value
            return SystemStatus(current)

    async def get_config(self) -> Dict[str, Any]:
        with self._lock:
            return deepcopy(self.config)

    async def merge_config(self, patch: Dict[str, Any]) -> Dict[str, Any]:
        with self._lock:
            self.config = deep_merge(self.config, deepcopy(patch))
            return deepcopy(self.config)

    # ---- market data ----------------------------------------------------------------------

    async def list_market_data(self, symbols: Optional[Sequence[str]] = None) -> List[Dict[str, Any]]:
        with self._lock:
            rows = [dict(r) for r in self.market_data.values()]
        if symbols is not None:
            wanted = set(symbols)
            rows = [r for r in rows if r["symbol"] in wanted]
        return sorted(rows, key=lambda r: r["symbol"])

    # ---- agents / generations ---------------------------------------------------------------

    async def list_agents(
        self, generation_id: str, statuses: Optional[Iterable[AgentStatus]] = None
    ) -> List[Agent]:
        wanted = {AgentStatus(s).value for s in statuses} if statuses else None
        with self._lock:
            rows = [dict(r) for r in self.agents.values() if r["generation_id"] == generation_id]
        if wanted is not None:
            rows = [r for r in rows if r["status"] in wanted]
        rows.sort(key=lambda r: (r.get("created_at") or "", r["id"]))
        return [Agent.from_row(r) for r in rows]

    async def update_agent_status(self, agent_ids: Sequence[str], status: AgentStatus) -> None:
        with self._lock:
            for agent_id in agent_ids:
                if agent_id in self.agents:
                    self.agents[agent_id]["status"] = status.value

    async def get_generation(self, generation_id: str) -> Optional[Generation]:
        with self._lock:
            row = self.generations.get(generation_id)
            return Generation.from_row(dict(row)) if row else None

    async def get_active_generation(self) -> Optional[Generation]:
        with self._lock:
            for row in self.generations.values():
                if row["is_active"]:
                    return Generation.from_row(dict(row))
        return None

    def _equity_at_cost(self) -> float:
        return self.account["cash"] + sum(r["qty"] * r["avg_entry_price"] for r in self.positions.values())

    def _open_generation(self, now: datetime) -> Dict[str, Any]:
        """Caller holds the lock."""
        previous_id = self.system_state.get("current_generation_id")
        number = max((r["generation_number"] for r in self.generations.values()), default=0) + 1
        for row in self.generations.values():
            if row["is_active"]:
                row["is_active"] = False
                row["end_time"] = to_iso(now)
        generation_id = str(uuid.uuid4())
        row = {
            "id": generation_id,
            "generation_number": number,
            "start_time": to_iso(now),
            "end_time": None,
            "is_active": True,
            "termination_reason": None,
            "total_pnl": 0.0,
            "total_trades": 0,
            "max_drawdown": 0.0,
            "ending_started_at": None,
            "starting_equity": self._equity_at_cost(),
        }
        self.generations[generation_id] = row
        self.system_state["current_generation_id"] = generation_id
        self._append_event("generation_started", {
            "generation_id": generation_id,
            "generation_number": number,
            "previous_generation_id": previous_id,
            "starting_equity": row["starting_equity"],
        })
        return row

    async def start_generation(self) -> Generation:
        with self._lock:
            row = self._open_generation(self.clock())
            return Generation.from_row(dict(row))

    async def begin_generation_end(self, generation_id: str, stale_after_seconds: float = 600) -> bool:
        with self._lock:
            row = self.generations.get(generation_id)
            if not row or not row["is_active"]:
                return False
            now = self.clock()
            claimed_at = parse_utc(row.get("ending_started_at"))
            if claimed_at is not None and now - claimed_at < timedelta(seconds=stale_after_seconds):
                return False
            row["ending_started_at"] = to_iso(now)
            return True

    def _end_generation(self, row: Dict[str, Any], reason: TerminationReason, now: datetime) -> None:
        """Caller holds the lock and has checked the row is active."""
        row["is_active"] = False
        row["end_time"] = to_iso(now)
        row["termination_reason"] = TerminationReason(reason).value
        self._append_event("generation_ended", {"generation_id": row["id"], "reason": row["termination_reason"]})

    async def end_generation(self, generation_id: str, reason: TerminationReason) -> bool:
        with self._lock:
            row = self.generations.get(generation_id)
            if not row or not row["is_active"]:
                return False
            self._end_generation(row, reason, self.clock())
            return True

    async def rollover_generation(self, generation_id: str, reason: TerminationReason) -> Optional[Generation]:
        with self._lock:
            row = self.generations.get(generation_id)
            if not row or not row["is_active"]:
                return None
            now = self.clock()
            self._end_generation(row, reason, now)
            return Generation.from_row(dict(self._open_generation(now)))

    async def update_generation_stats(
        self,
        generation_id: str,
        total_pnl: float,
        total_trades: int,
        max_drawdown: float,
        avg_fitness: Optional[float] = None,
    ) -> None:
        with self._lock:
            row = self.generations.get(generation_id)
            if row is None:
                return
            row.update({"total_pnl": total_pnl, "total_trades": total_trades, "max_drawdown": max_drawdown})
            if avg_fitness is not None:
                row["avg_fitness"] = avg_fitness

    # ---- paper account -------------------------------------------------------------------------

    async def get_paper_account(self) -> Optional[PaperAccount]:
        with self._lock:
            return PaperAccount.from_row(dict(self.account))

    async def set_account_cash(self, account_id: str, cash: float) -> None:
        with self._lock:
            self.account["cash"] = cash

    async def raise_peak_equity(self, account_id: str, equity: float) -> float:
        with self._lock:
            if equity > self.account["peak_equity"]:
                self.account["peak_equity"] = equity
                self.account["peak_equity_updated_at"] = to_iso(self.clock())
            return self.account["peak_equity"]

    async def list_positions(self, account_id: str) -> List[Position]:
        with self._lock:
            return [Position.from_row(dict(r)) for r in self.positions.values() if r["account_id"] == account_id]

    async def save_position(self, position: Position) -> None:
        with self._lock:
            if position.qty <= 0:
                self.positions.pop(position.symbol, None)
                return
            self.positions[position.symbol] = {
                "account_id": position.account_id,
                "symbol": position.symbol,
                "qty": position.qty,
                "avg_entry_price": position.avg_entry_price,
                "realized_pnl": position.realized_pnl,
            }

    async def insert_order(self, order: Order) -> Order:
        with self._lock:
            row = order.to_row()
            if not row.get("created_at"):
                row["created_at"] = to_iso(self.clock())
            self.orders[order.id] = row
            return Order.from_row(dict(row))

    async def apply_paper_fill(self, order: Order, fill: Fill) -> PaperFillOutcome:
        with self._lock:
            if order.account_id != self.account["id"]:
                return PaperFillOutcome(ok=False, reason="no_paper_account")
            held = self.positions.get(order.symbol)
            position = Position.from_row(dict(held)) if held else Position(account_id=order.account_id, symbol=order.symbol)
            cash = self.account["cash"]
            rejection = fill_rejection(cash, position.qty, fill.side, fill.qty, fill.price, fill.fee)
            if rejection is not None:
                return PaperFillOutcome(ok=False, reason=rejection, cash=cash, position_qty=position.qty)

            updated, cash = apply_fill(position, cash, fill.side, fill.qty, fill.price, fill.fee)
            row = order.to_row()
            if not row.get("created_at"):
                row["created_at"] = to_iso(self.clock())
            self.orders[order.id] = row
            self.fills.append(fill.to_row())
            if updated.qty <= 0:
                self.positions.pop(order.symbol, None)
            else:
                self.positions[order.symbol] = {
                    "account_id": updated.account_id,
                    "symbol": updated.symbol,
                    "qty": updated.qty,
                    "avg_entry_price": updated.avg_entry_price,
                    "realized_pnl": updated.realized_pnl,
                }
            self.account["cash"] = cash
            realized = updated.realized_pnl - position.realized_pnl if fill.side is OrderSide.SELL else None
            return PaperFillOutcome(ok=True, cash=cash, position_qty=updated.qty, realized_pnl=realized)

    def _filled_orders(self, agent_id=None, generation_id=None) -> List[Dict[str, Any]]:
        rows = [r for r in self.orders.values() if r["status"] == OrderStatus.FILLED.value]
        if agent_id is not None:
            rows = [r for r in rows if r.get("agent_id") == agent_id]
        if generation_id is not None:
            rows = [r for r in rows if r.get("generation_id") == generation_id]
        return rows

    async def count_filled_orders(
        self,
        since: Optional[datetime] = None,
        agent_id: Optional[str] = None,
        generation_id: Optional[str] = None,
        tag: Optional[str] = None,
    ) -> int:
        with self._lock:
            rows = self._filled_orders(agent_id, generation_id)
        if since is not None:
            rows = [r for r in rows if parse_utc(r.get("created_at")) >= since]
        if tag is not None:
            rows = [r for r in rows if (r.get("tags") or {}).get(tag) is True]
        return len(rows)

    async def list_filled_orders(
        self, generation_id: Optional[str] = None, agent_id: Optional[str] = None
    ) -> List[Order]:
        with self._lock:
            rows = [dict(r) for r in self._filled_orders(agent_id, generation_id)]
        rows.sort(key=lambda r: r.get("created_at") or "")
        return [Order.from_row(r) for r in rows]

    async def list_fills(
        self, generation_id: Optional[str] = None, agent_id: Optional[str] = None
    ) -> List[Fill]:
        with self._lock:
            orders = {oid: dict(o) for oid, o in self.orders.items()}
            fills = [dict(f) for f in self.fills]
        result: List[Fill] = []
        for row in fills:
            order = orders.get(row["order_id"])
            if order is None:
                continue
            if generation_id is not None and order.get("generation_id") != generation_id:
                continue
            if agent_id is not None and order.get("agent_id") != agent_id:
                continue
            row.update({
                "agent_id": order.get("agent_id"),
                "generation_id": order.get("generation_id"),
                "tags": order.get("tags") or {},
            })
            result.append(Fill.from_row(row))
        # stable sort keeps insertion order for same-timestamp ties
        result.sort(key=lambda f: f.timestamp)
        return result

    # ---- events ---------------------------------------------------------------------------------

    async def log_event(
        self,
        action: str,
        metadata: Optional[Dict[str, Any]] = None,
        previous_status: Optional[str] = None,
        new_status: Optional[str] = None,
    ) -> None:
        with self._lock:
            self._append_event(action, metadata, previous_status, new_status)
        logger.debug(f"Event logged: {action}")

    async def list_events(
        self, action: str, since: Optional[datetime] = None, limit: Optional[int] = None
    ) -> List[Dict[str, Any]]:
        with self._lock:
            rows = [deepcopy(e) for e in self.events if e["action"] == action]
        if since is not None:
            rows = [e for e in rows if e["triggered_at"] >= since]
        rows.reverse()
        return rows[:limit] if limit is not None else rows

    async def count_events(self, action: str, since: Optional[datetime] = None) -> int:
        return len(await self.list_events(action, since=since))

    async def count_decisions(self, decision: str, since: datetime) -> int:
        events = await self.list_events("trade_decision", since=since)
        return sum(1 for e in events if (e.get("metadata") or {}).get("decision") == decision)

    # ---- performance / shadow -------------------------------------------------------------------

    async def save_performance(self, record: Dict[str, Any]) -> None:
        with self._lock:
            self.performance[(record["agent_id"], record["generation_id"])] = deepcopy(record)

    async def list_performance(self, generation_id: str) -> List[Dict[str, Any]]:
        with self._lock:
            return [deepcopy(r) for (_, gen), r in self.performance.items() if gen == generation_id]

    async def insert_shadow_trade(self, trade: ShadowTrade) -> None:
        with self._lock:
            self.shadow_trades[trade.id] = {
                "id": trade.id,
                "agent_id": trade.agent_id,
                "generation_id": trade.generation_id,
                "symbol": trade.symbol,
                "side": trade.side,
                "entry_time": to_iso(trade.entry_time),
                "entry_price": trade.entry_price,
                "intended_qty": trade.intended_qty,
                "confidence": trade.confidence,
                "outcome_status": trade.outcome_status,
                "exit_time": None,
                "exit_price": None,
                "simulated_pnl": None,
                "simulated_pnl_pct": None,
            }

    async def list_shadow_trades(
        self,
        status: Optional[str] = None,
        generation_id: Optional[str] = None,
        agent_id: Optional[str] = None,
    ) -> List[ShadowTrade]:
        with self._lock:
            rows = [dict(r) for r in self.shadow_trades.values()]
        if status is not None:
            rows = [r for r in rows if r["outcome_status"] == status]
        if generation_id is not None:
            rows = [r for r in rows if r["generation_id"] == generation_id]
        if agent_id is not None:
            rows = [r for r in rows if r["agent_id"] == agent_id]
        return [ShadowTrade.from_row(r) for r in rows]

    async def update_shadow_trade(self, trade_id: str, fields: Dict[str, Any]) -> None:
        with self._lock:
            row = self.shadow_trades.get(trade_id)
            if row is None:
                return
            for key, value in fields.items():
                row[key] = to_iso(value) if isinstance(value, datetime) else value

    # ---- arm sessions ----------------------------------------------------------------------------

    async def create_arm_session(self, session: ArmSession) -> ArmSession:
        with self._lock:
            self.arm_sessions[session.id] = session.to_row()
        return session

    async def get_arm_session(self, session_id: str) -> Optional[ArmSession]:
        with self._lock:
            row = self.arm_sessions.get(session_id)
            return ArmSession.from_row(dict(row)) if row else None

    async def spend_arm_session(self, session_id: str, request_id: str) -> SpendResult:
        return self.spend_arm_session_sync(session_id, request_id)

    def spend_arm_session_sync(self, session_id: str, request_id: str) -> SpendResult:
        """Same semantics as the ``spend_arm_session`` SQL function (row lock, then CAS)."""
        with self._lock:
            row = self.arm_sessions.get(session_id)
            if row is None:
                return SpendResult(False, SpendReason.SESSION_NOT_FOUND)
            mode = row.get("mode") or ""
            if row.get("spent_at") is not None and row.get("spent_by_request_id") == request_id:
                return SpendResult(True, SpendReason.OK_IDEMPOTENT, 0, mode)
            if row.get("spent_at") is not None:
                return SpendResult(False, SpendReason.CANARY_ALREADY_CONSUMED, 0, mode)
            now = self.clock()
            if parse_utc(row["expires_at"]) < now:
                return SpendResult(False, SpendReason.SESSION_EXPIRED, 0, mode)
            remaining = int(row.get("max_live_orders") or 1) - int(row.get("orders_executed") or 0) - 1
            row["spent_at"] = to_iso(now)
            row["spent_by_request_id"] = request_id
            row["orders_executed"] = int(row.get("orders_executed") or 0) + 1
            return SpendResult(True, SpendReason.OK, remaining, mode)
