"""
Persistent data model: strategies, runs, daily risk counters, fee-payer
wallets, refill requests, global settings, cycle logs and the cycle lease.
"""
import enum
import uuid

from sqlalchemy import (
    Column,
    String,
    Integer,
    Float,
    Boolean,
    Date,
    DateTime,
    Text,
    JSON,
    ForeignKey,
    Index,
    UniqueConstraint,
)
from sqlalchemy.orm import declarative_base

from .utils import utcnow

Base = declarative_base()


def _uuid() -> str:
    return str(uuid.uuid4())


class RunStatus(str, enum.Enum):
    SIMULATED = "SIMULATED"
    EXECUTED = "EXECUTED"
    FAILED = "FAILED"


TERMINAL_RUN_STATUSES = (RunStatus.EXECUTED.value, RunStatus.FAILED.value)


class ScanOutcome(str, enum.Enum):
    PROFITABLE = "PROFITABLE"
    NOT_PROFITABLE = "NOT_PROFITABLE"
    FAILED = "FAILED"


class Purpose(str, enum.Enum):
    GENERAL = "GENERAL"
    FEE_PAYER_REFILL = "FEE_PAYER_REFILL"
    OPS_REFILL = "OPS_REFILL"


class RefillStatus(str, enum.Enum):
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    DISMISSED = "DISMISSED"


class WalletHealth(str, enum.Enum):
    UNKNOWN = "UNKNOWN"
    HEALTHY = "HEALTHY"
    LOW = "LOW"
    CRITICAL = "CRITICAL"


class CycleStatus(str, enum.Enum):
    RUNNING = "RUNNING"
    SUCCESS = "SUCCESS"
    PARTIAL = "PARTIAL"
    FAILED = "FAILED"
    SKIPPED = "SKIPPED"


class TriggerType(str, enum.Enum):
    CRON = "cron"
    MANUAL = "manual"


# ==================== STRATEGY ====================


class Strategy(Base):
    """A configured pair/venue combination with its risk bounds."""

    __tablename__ = "strategies"

    id = Column(String, primary_key=True, default=_uuid)
    name = Column(String, nullable=False)
    chain = Column(String, nullable=False)  # SOLANA | EVM
    network = Column(String, nullable=False, default="MAINNET")
    is_mainnet = Column(Boolean, nullable=False, default=True)

    dex_a = Column(String, nullable=True)
    dex_b = Column(String, nullable=True)
    dex_c = Column(String, nullable=True)
    sources = Column(JSON, nullable=True)  # explicit venue set for matrix scans
    scan_mode = Column(String, nullable=False, default="SOURCE_MATRIX")

    token_in = Column(String, nullable=False)
    token_out = Column(String, nullable=False)
    token_c = Column(String, nullable=True)  # third token for triangular paths
    token_in_decimals = Column(Integer, nullable=False, default=6)
    trade_notional = Column(Float, nullable=True)

    is_enabled = Column(Boolean, nullable=False, default=True)
    is_auto_enabled = Column(Boolean, nullable=False, default=False)
    is_for_fee_payer_refill = Column(Boolean, nullable=False, default=False)
    is_for_ops_refill = Column(Boolean, nullable=False, default=False)

    min_expected_profit = Column(Float, nullable=False, default=0.0)
    min_profit_to_gas_ratio = Column(Float, nullable=False, default=1.0)
    max_daily_loss = Column(Float, nullable=False, default=0.0)  # <= 0 means unlimited
    max_trades_per_day = Column(Integer, nullable=False, default=10)
    max_trade_value = Column(Float, nullable=True)  # None means unlimited

    signer_label = Column(String, nullable=True)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (Index("idx_strategy_chain_enabled", "chain", "is_enabled"),)

    @property
    def purpose(self) -> str:
        if self.is_for_fee_payer_refill:
            return Purpose.FEE_PAYER_REFILL.value
        if self.is_for_ops_refill:
            return Purpose.OPS_REFILL.value
        return Purpose.GENERAL.value

    @property
    def venues(self) -> list:
        if self.sources:
            return list(self.sources)
        return [dex for dex in (self.dex_a, self.dex_b, self.dex_c) if dex]


# ==================== RUN ====================


class Run(Base):
    """One simulated or executed opportunity instance."""

    __tablename__ = "runs"

    id = Column(String, primary_key=True, default=_uuid)
    strategy_id = Column(String, ForeignKey("strategies.id"), nullable=False)
    cycle_id = Column(String, nullable=True)
    status = Column(String, nullable=False, default=RunStatus.SIMULATED.value)
    outcome = Column(String, nullable=True)
    scan_mode = Column(String, nullable=True)

    token_path = Column(JSON, nullable=True)
    sources = Column(JSON, nullable=True)
    leg_quotes = Column(JSON, nullable=True)

    notional_in = Column(Float, nullable=False, default=0.0)
    final_amount_out = Column(Float, nullable=True)
    gross_profit = Column(Float, nullable=True)
    slippage_buffer = Column(Float, nullable=True)
    estimated_gas_cost = Column(Float, nullable=False, default=0.0)
    estimated_profit = Column(Float, nullable=False, default=0.0)
    profit_bps = Column(Float, nullable=True)
    actual_profit = Column(Float, nullable=True)

    approved_for_auto_execution = Column(Boolean, nullable=False, default=False)
    auto_executed = Column(Boolean, nullable=False, default=False)
    purpose = Column(String, nullable=False, default=Purpose.GENERAL.value)
    error_message = Column(Text, nullable=True)
    tx_signature = Column(String, nullable=True)

    started_at = Column(DateTime, default=utcnow)
    finished_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow)

    __table_args__ = (
        Index("idx_run_status_created", "status", "created_at"),
        Index("idx_run_strategy", "strategy_id"),
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_RUN_STATUSES

    def transition_to(self, status: str) -> None:
        """Move a SIMULATED run to a terminal status; terminal runs never change."""
        if self.is_terminal:
            raise ValueError(f"Run {self.id} is already {self.status}")
        if status not in TERMINAL_RUN_STATUSES:
            raise ValueError(f"Invalid target status for run {self.id}: {status}")
        self.status = status


# ==================== RISK COUNTERS ====================


class DailyRiskCounter(Base):
    """Per strategy, per date, per chain running totals."""

    __tablename__ = "daily_risk_counters"

    id = Column(Integer, primary_key=True, autoincrement=True)
    strategy_id = Column(String, ForeignKey("strategies.id"), nullable=False)
    date = Column(Date, nullable=False)
    chain = Column(String, nullable=False)
    total_trades = Column(Integer, nullable=False, default=0)
    total_pnl = Column(Float, nullable=False, default=0.0)
    total_loss = Column(Float, nullable=False, default=0.0)

    __table_args__ = (
        UniqueConstraint("strategy_id", "date", "chain", name="uq_daily_risk_strategy_date_chain"),
        Index("idx_daily_risk_date", "date"),
    )


# ==================== WALLETS ====================


class FeePayerWallet(Base):
    __tablename__ = "fee_payer_wallets"

    id = Column(String, primary_key=True, default=_uuid)
    label = Column(String, nullable=False)
    chain = Column(String, nullable=False)
    network = Column(String, nullable=False, default="MAINNET")
    address = Column(String, nullable=False, unique=True)
    is_active = Column(Boolean, nullable=False, default=True)
    balance = Column(Float, nullable=True)  # native units
    balance_updated_at = Column(DateTime, nullable=True)
    health = Column(String, nullable=False, default=WalletHealth.UNKNOWN.value)


class WalletRefillRequest(Base):
    __tablename__ = "wallet_refill_requests"

    id = Column(String, primary_key=True, default=_uuid)
    wallet_type = Column(String, nullable=False, default="FEE_PAYER")
    wallet_address = Column(String, nullable=False)
    chain = Column(String, nullable=False)
    network = Column(String, nullable=True)
    reason = Column(String, nullable=False)
    current_balance = Column(Float, nullable=True)
    required_amount = Column(Float, nullable=True)
    status = Column(String, nullable=False, default=RefillStatus.PENDING.value)
    created_at = Column(DateTime, default=utcnow)
    fulfilled_at = Column(DateTime, nullable=True)
    fulfilled_by_run_id = Column(String, nullable=True)

    __table_args__ = (Index("idx_refill_status_address", "status", "wallet_address"),)


# ==================== GLOBAL STATE ====================


class GlobalSettings(Base):
    """Singleton row (id=1)."""

    __tablename__ = "global_settings"

    id = Column(Integer, primary_key=True, default=1)
    auto_arbitrage_enabled = Column(Boolean, nullable=False, default=False)
    safe_mode_enabled = Column(Boolean, nullable=False, default=False)
    safe_mode_triggered_at = Column(DateTime, nullable=True)
    safe_mode_reason = Column(Text, nullable=True)
    max_global_daily_loss = Column(Float, nullable=False, default=0.0)
    max_global_trades_per_day = Column(Integer, nullable=False, default=0)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class AutomationCycleLog(Base):
    __tablename__ = "automation_cycle_logs"

    id = Column(String, primary_key=True, default=_uuid)
    cycle_started_at = Column(DateTime, nullable=False, default=utcnow)
    cycle_finished_at = Column(DateTime, nullable=True)
    trigger_type = Column(String, nullable=False, default=TriggerType.CRON.value)
    overall_status = Column(String, nullable=False, default=CycleStatus.RUNNING.value)

    scan_results = Column(JSON, nullable=True)
    decision_result = Column(JSON, nullable=True)
    execution_result = Column(JSON, nullable=True)
    wallet_check_result = Column(JSON, nullable=True)

    solana_opportunities = Column(Integer, nullable=False, default=0)
    evm_opportunities = Column(Integer, nullable=False, default=0)
    approved_count = Column(Integer, nullable=False, default=0)
    executed_count = Column(Integer, nullable=False, default=0)
    refill_requests_created = Column(Integer, nullable=False, default=0)
    error_message = Column(Text, nullable=True)

    __table_args__ = (Index("idx_cycle_started", "cycle_started_at"),)


class CycleLease(Base):
    """Single-active-cycle lease keyed on a well-known name."""

    __tablename__ = "cycle_leases"

    name = Column(String, primary_key=True)
    holder = Column(String, nullable=False)
    acquired_at = Column(DateTime, nullable=False, default=utcnow)
    expires_at = Column(DateTime, nullable=False)
