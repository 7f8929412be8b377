"""
Gate thresholds and direction-aware offset application.

Every gate is either a ``min`` gate (the observed value must reach the
threshold, so relaxing lowers it) or a ``max`` gate (the observed value must
stay under the threshold, so relaxing raises it). Adaptive offsets are signed
fractions where a positive value always means "relaxed".
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, replace
from enum import Enum
from typing import Dict, Iterable, Mapping, Optional, Tuple

from evotrader.core.types import GateFailure


class GateDirection(str, Enum):
    MIN = "min"
    MAX = "max"


@dataclass(frozen=True)
class GateSpec:
    name: str
    field: str
    direction: GateDirection


GATES: Dict[str, GateSpec] = {
    "trend": GateSpec("trend", "trend_threshold", GateDirection.MIN),
    "rsi": GateSpec("rsi", "rsi_threshold", GateDirection.MIN),
    "pullback": GateSpec("pullback", "pullback_pct", GateDirection.MAX),
    "vol_contraction": GateSpec("vol_contraction", "vol_contraction", GateDirection.MAX),
}


@dataclass(frozen=True)
class Thresholds:
    trend_threshold: float
    pullback_pct: float
    rsi_threshold: float
    vol_contraction: float
    vol_expansion_exit: float
    min_confidence: float = 0.5
    max_confidence: float = 0.85

    def to_dict(self) -> Dict[str, float]:
        return asdict(self)


BASELINE_THRESHOLDS = Thresholds(
    trend_threshold=0.005,
    pullback_pct=5.0,
    rsi_threshold=0.6,
    vol_contraction=1.3,
    vol_expansion_exit=1.2,
)

DROUGHT_THRESHOLDS = Thresholds(
    trend_threshold=0.0035,
    pullback_pct=3.0,
    rsi_threshold=0.4,
    vol_contraction=1.4,
    vol_expansion_exit=1.3,
)

TEST_THRESHOLDS = Thresholds(
    trend_threshold=0.01,
    pullback_pct=1.5,
    rsi_threshold=1.0,
    vol_contraction=1.2,
    vol_expansion_exit=1.3,
)

_GENE_FIELDS = ("trend_threshold", "pullback_pct", "rsi_threshold", "vol_contraction", "vol_expansion_exit")


def thresholds_from_genes(genes: Optional[Mapping[str, float]]) -> Thresholds:
    """Agent genes override the baseline; confidence bounds are never evolved."""
    genes = genes or {}
    overrides = {}
    for name in _GENE_FIELDS:
        value = genes.get(name)
        if value is not None:
            overrides[name] = float(value)
    return replace(BASELINE_THRESHOLDS, **overrides)


def select_thresholds(
    genes: Optional[Mapping[str, float]],
    test_mode: bool,
    drought_mode: bool,
) -> Tuple[Thresholds, str]:
    if test_mode:
        return TEST_THRESHOLDS, "test_mode"
    if drought_mode:
        return DROUGHT_THRESHOLDS, "drought_mode"
    return thresholds_from_genes(genes), "baseline"


def relaxed_value(gate: str, base: float, offset: float) -> float:
    spec = GATES[gate]
    if spec.direction is GateDirection.MIN:
        return base * (1.0 - offset)
    return base * (1.0 + offset)


def apply_offsets(thresholds: Thresholds, offsets: Optional[Mapping[str, float]]) -> Thresholds:
    if not offsets:
        return thresholds
    changes = {}
    for gate, offset in offsets.items():
        spec = GATES.get(gate)
        if spec is None or not offset:
            continue
        changes[spec.field] = relaxed_value(gate, getattr(thresholds, spec.field), float(offset))
    return replace(thresholds, **changes) if changes else thresholds


def threshold_for(thresholds: Thresholds, gate: str) -> float:
    return getattr(thresholds, GATES[gate].field)


def nearest_pass(failures: Iterable[GateFailure]) -> Optional[GateFailure]:
    """The failure closest to clearing (smallest absolute margin); first wins ties."""
    best: Optional[GateFailure] = None
    for failure in failures:
        if best is None or abs(failure.margin) < abs(best.margin):
            best = failure
    return best
