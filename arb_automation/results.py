"""
Typed phase results stored in the cycle log.

Each phase returns its own dataclass; to_dict() adds a "kind" tag so the JSON
payloads in automation_cycle_logs can be told apart without guessing.
"""
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, ClassVar, Dict, List, Optional


def _jsonable(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, dict):
        return {k: _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    return value


class PhaseResult:
    KIND: ClassVar[str] = "phase"

    def to_dict(self) -> Dict[str, Any]:
        payload = {"kind": self.KIND}
        payload.update(_jsonable(asdict(self)))
        return payload


@dataclass
class LegQuote:
    """One leg of a scanned path."""
    leg: int
    source: Optional[str]
    sell_token: str
    buy_token: str
    sell_amount: int
    buy_amount: int
    sources: List[str] = field(default_factory=list)
    relaxed: bool = False


@dataclass
class OpportunityResult:
    """Outcome of one evaluated source combination."""
    strategy_id: str
    mode: str
    token_path: List[str]
    sources: List[Optional[str]]
    notional_in: float
    status: str
    final_amount_out: Optional[float] = None
    gross_profit: Optional[float] = None
    slippage_buffer: float = 0.0
    gas_estimate: float = 0.0
    net_profit: Optional[float] = None
    profit_bps: Optional[float] = None
    reason: Optional[str] = None
    leg_quotes: List[LegQuote] = field(default_factory=list)
    run_id: Optional[str] = None


@dataclass
class ScanResult(PhaseResult):
    KIND: ClassVar[str] = "scan"

    chain: str
    strategies_scanned: int = 0
    combinations_attempted: int = 0
    runs_created: int = 0
    profitable: int = 0
    not_profitable: int = 0
    failed: int = 0
    rate_limit_count: int = 0
    aborted_due_to_rate_limit: bool = False
    duration_ms: int = 0
    errors: List[str] = field(default_factory=list)
    top: List[OpportunityResult] = field(default_factory=list)


@dataclass
class DecisionResult(PhaseResult):
    KIND: ClassVar[str] = "decision"

    evaluated: int = 0
    approved_count: int = 0
    rejected_count: int = 0
    approved_run_ids: List[str] = field(default_factory=list)
    rejection_reasons: Dict[str, int] = field(default_factory=dict)
    skipped_reason: Optional[str] = None


@dataclass
class SafeModeTrip:
    """Safe-mode write produced by the execution phase."""
    reason: str
    triggered_at: datetime


@dataclass
class RunOutcome:
    run_id: str
    strategy_id: str
    success: bool
    tx_reference: Optional[str] = None
    actual_profit: Optional[float] = None
    error: Optional[str] = None


@dataclass
class ExecutionResult(PhaseResult):
    KIND: ClassVar[str] = "execution"

    attempted: int = 0
    executed_count: int = 0
    failed_count: int = 0
    total_pnl: float = 0.0
    revoked_count: int = 0
    halted: bool = False
    safe_mode_trip: Optional[SafeModeTrip] = None
    skipped_reason: Optional[str] = None
    outcomes: List[RunOutcome] = field(default_factory=list)


@dataclass
class WalletCheckResult(PhaseResult):
    KIND: ClassVar[str] = "wallet_check"

    checked: Dict[str, int] = field(default_factory=dict)
    healthy: int = 0
    low: int = 0
    critical: int = 0
    requests_created: int = 0
    errors: List[str] = field(default_factory=list)


@dataclass
class PhaseFailure(PhaseResult):
    """Payload recorded when a phase raised instead of returning."""
    KIND: ClassVar[str] = "error"

    phase: str
    error: str


@dataclass
class CycleSummary(PhaseResult):
    """What one orchestrated cycle did; mirrors its automation_cycle_logs row."""
    KIND: ClassVar[str] = "cycle"

    trigger_type: str
    status: str
    cycle_id: Optional[str] = None
    scan_results: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    decision: Optional[Dict[str, Any]] = None
    execution: Optional[Dict[str, Any]] = None
    wallet_check: Optional[Dict[str, Any]] = None
    approved_count: int = 0
    executed_count: int = 0
    refill_requests_created: int = 0
    error_message: Optional[str] = None
