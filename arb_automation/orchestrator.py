"""
Cycle orchestrator: Scan -> Decide -> Execute -> Wallet health, once per tick.

Holds the single-active-cycle lease, bounds the cycle with a timeout, and
writes one automation_cycle_logs row per trigger.
"""
import asyncio
import logging
import time
import uuid
from typing import Dict, List, Optional

from sqlalchemy.ext.asyncio import async_sessionmaker

from . import repository
from .config import CHAIN_EVM, CHAIN_SOLANA, CycleSettings, GlobalConfig
from .decision_engine import DecisionEngine
from .execution_engine import ExecutionEngine
from .models import CycleStatus, TriggerType
from .opportunity_scanner import OpportunityScanner
from .results import CycleSummary, DecisionResult, ExecutionResult, PhaseFailure, ScanResult, WalletCheckResult
from .utils import get_terminal_colors, utcnow
from .wallet_monitor import WalletHealthMonitor

colors = get_terminal_colors()
logger = logging.getLogger(__name__)

LEASE_NAME = "arb-automation-cycle"
MSG_AUTO_DISABLED = "Auto arbitrage is disabled"
MSG_ALREADY_RUNNING = "Another cycle is already running"


class _PhaseTally:
    def __init__(self):
        self.succeeded = 0
        self.failed = 0
        self.errors: List[str] = []

    def ok(self):
        self.succeeded += 1

    def fail(self, phase: str, error: Exception):
        self.failed += 1
        self.errors.append(f"{phase}: {error}")


class CycleOrchestrator:
    """Runs the automation phases in order under a lease and a timeout."""

    def __init__(
        self,
        session_factory: async_sessionmaker,
        scanner: OpportunityScanner,
        decision: DecisionEngine,
        execution: ExecutionEngine,
        wallet_monitor: WalletHealthMonitor,
        settings: Optional[CycleSettings] = None,
    ):
        self.session_factory = session_factory
        self.scanner = scanner
        self.decision = decision
        self.execution = execution
        self.wallet_monitor = wallet_monitor
        self.settings = settings or CycleSettings()

    async def run_cycle(self, trigger_type: str = TriggerType.MANUAL.value) -> CycleSummary:
        """
        Run one full cycle.

        Returns:
            CycleSummary with status SKIPPED, SUCCESS, PARTIAL or FAILED
        """
        trigger_type = TriggerType(trigger_type).value
        config = await repository.load_global_config(self.session_factory)

        if not config.auto_arbitrage_enabled:
            return await self._skip(trigger_type, MSG_AUTO_DISABLED)

        holder = str(uuid.uuid4())
        acquired = await repository.acquire_lease(
            self.session_factory, LEASE_NAME, holder, self.settings.lease_ttl_seconds
        )
        if not acquired:
            return await self._skip(trigger_type, MSG_ALREADY_RUNNING)

        summary = CycleSummary(trigger_type=trigger_type, status=CycleStatus.RUNNING.value)
        tally = _PhaseTally()
        started = time.monotonic()
        try:
            summary.cycle_id = await repository.create_cycle_log(
                self.session_factory,
                trigger_type=trigger_type,
                overall_status=CycleStatus.RUNNING.value,
                cycle_started_at=utcnow(),
            )
            logger.info(
                f"{colors['CYAN']}Cycle {summary.cycle_id[:8]} started{colors['RESET']} ({trigger_type})"
            )

            try:
                timeout = self.settings.timeout_seconds
                if timeout:
                    await asyncio.wait_for(self._run_phases(config, summary, tally), timeout=timeout)
                else:
                    await self._run_phases(config, summary, tally)
            except asyncio.TimeoutError:
                summary.status = CycleStatus.FAILED.value
                summary.error_message = f"Cycle timed out after {self.settings.timeout_seconds:.0f}s"
                logger.error(f"{colors['RED']}{summary.error_message}{colors['RESET']}")
            except Exception as e:
                summary.status = CycleStatus.FAILED.value
                summary.error_message = f"Unrecoverable cycle error: {e}"
                logger.exception("Unrecoverable cycle error")
            else:
                summary.status = self._final_status(tally)
                if tally.errors:
                    summary.error_message = "; ".join(tally.errors)

            await repository.update_cycle_log(
                self.session_factory,
                summary.cycle_id,
                overall_status=summary.status,
                cycle_finished_at=utcnow(),
                error_message=summary.error_message,
                **self._log_values(summary),
            )
        finally:
            await repository.release_lease(self.session_factory, LEASE_NAME, holder)

        color = colors['GREEN'] if summary.status == CycleStatus.SUCCESS.value else colors['RED']
        logger.info(
            f"Cycle {summary.cycle_id[:8] if summary.cycle_id else '-'} finished: "
            f"{color}{summary.status}{colors['RESET']} in {time.monotonic() - started:.1f}s "
            f"(approved {summary.approved_count}, executed {summary.executed_count}, "
            f"refills {summary.refill_requests_created})"
        )
        return summary

    @staticmethod
    def _final_status(tally: _PhaseTally) -> str:
        if tally.failed == 0:
            return CycleStatus.SUCCESS.value
        if tally.succeeded > 0:
            return CycleStatus.PARTIAL.value
        return CycleStatus.FAILED.value

    async def _skip(self, trigger_type: str, reason: str) -> CycleSummary:
        now = utcnow()
        cycle_id = await repository.create_cycle_log(
            self.session_factory,
            trigger_type=trigger_type,
            overall_status=CycleStatus.SKIPPED.value,
            cycle_started_at=now,
            cycle_finished_at=now,
            error_message=reason,
        )
        logger.info(f"{colors['YELLOW']}Cycle skipped:{colors['RESET']} {reason}")
        return CycleSummary(
            trigger_type=trigger_type,
            status=CycleStatus.SKIPPED.value,
            cycle_id=cycle_id,
            error_message=reason,
        )

    @staticmethod
    def _log_values(summary: CycleSummary) -> Dict:
        scans = summary.scan_results
        return {
            "scan_results": scans or None,
            "decision_result": summary.decision,
            "execution_result": summary.execution,
            "wallet_check_result": summary.wallet_check,
            "solana_opportunities": int(scans.get(CHAIN_SOLANA, {}).get("profitable", 0) or 0),
            "evm_opportunities": int(scans.get(CHAIN_EVM, {}).get("profitable", 0) or 0),
            "approved_count": summary.approved_count,
            "executed_count": summary.executed_count,
            "refill_requests_created": summary.refill_requests_created,
        }

    async def _checkpoint(self, summary: CycleSummary) -> None:
        await repository.update_cycle_log(self.session_factory, summary.cycle_id, **self._log_values(summary))

    async def _run_phases(self, config: GlobalConfig, summary: CycleSummary, tally: _PhaseTally) -> None:
        # Scan: one guarded block per chain
        for chain in self.settings.chains:
            try:
                scan = await self.scanner.scan_chain(chain, config, summary.cycle_id)
                summary.scan_results[chain] = scan.to_dict()
                tally.ok()
            except Exception as e:
                logger.exception(f"Scan failed for {chain}")
                summary.scan_results[chain] = PhaseFailure(phase=f"scan:{chain}", error=str(e)).to_dict()
                tally.fail(f"scan:{chain}", e)
        await self._checkpoint(summary)

        # Decide
        decision: Optional[DecisionResult] = None
        try:
            decision = await self.decision.decide(config)
            summary.decision = decision.to_dict()
            summary.approved_count = decision.approved_count
            tally.ok()
        except Exception as e:
            logger.exception("Decision phase failed")
            summary.decision = PhaseFailure(phase="decision", error=str(e)).to_dict()
            tally.fail("decision", e)
        await self._checkpoint(summary)

        # Execute
        if decision is None:
            summary.execution = {"kind": "execution", "skipped_reason": "decision phase failed"}
        elif decision.approved_count == 0:
            summary.execution = {"kind": "execution", "skipped_reason": "no approved runs"}
        else:
            try:
                execution = await self.execution.execute(config)
                summary.execution = execution.to_dict()
                summary.executed_count = execution.executed_count
                tally.ok()
            except Exception as e:
                logger.exception("Execution phase failed")
                summary.execution = PhaseFailure(phase="execution", error=str(e)).to_dict()
                tally.fail("execution", e)
        await self._checkpoint(summary)

        # Wallet health
        try:
            wallets = await self.wallet_monitor.check()
            summary.wallet_check = wallets.to_dict()
            summary.refill_requests_created = wallets.requests_created
            tally.ok()
        except Exception as e:
            logger.exception("Wallet health check failed")
            summary.wallet_check = PhaseFailure(phase="wallet_check", error=str(e)).to_dict()
            tally.fail("wallet_check", e)
        await self._checkpoint(summary)

    # ==================== DIAGNOSTICS ====================

    async def run_scan_only(self, chain: Optional[str] = None) -> Dict[str, ScanResult]:
        config = await repository.load_global_config(self.session_factory)
        chains = [chain] if chain else list(self.settings.chains)
        return {c: await self.scanner.scan_chain(c, config) for c in chains}

    async def run_decide_only(self) -> DecisionResult:
        config = await repository.load_global_config(self.session_factory)
        return await self.decision.decide(config)

    async def run_execute_only(self) -> ExecutionResult:
        config = await repository.load_global_config(self.session_factory)
        return await self.execution.execute(config)

    async def run_wallet_check_only(self) -> WalletCheckResult:
        return await self.wallet_monitor.check()

    async def run_forever(self, interval: Optional[float] = None) -> None:
        """Run cron cycles on a fixed cadence until cancelled."""
        if interval is None:
            interval = self.settings.interval_seconds
        logger.info(f"Cron loop started, interval {colors['GREEN']}{interval:.0f}s{colors['RESET']}")
        while True:
            tick = time.monotonic()
            try:
                await self.run_cycle(TriggerType.CRON.value)
            except Exception:
                logger.exception("Cycle tick failed")
            await asyncio.sleep(max(0.0, interval - (time.monotonic() - tick)))
