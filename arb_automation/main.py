"""
Main entry point for the arbitrage automation service.
"""
import argparse
import asyncio
import logging
import os
import sys
from dataclasses import dataclass
from typing import List, Optional

from sqlalchemy.ext.asyncio import AsyncEngine

from .config import CHAIN_EVM, CHAIN_SOLANA, SUPPORTED_CHAINS, AppConfig, load_config
from .database import create_db_engine, create_session_factory, init_db
from .decision_engine import DecisionEngine
from .evm_client import EvmClient
from .execution_engine import ExecutionEngine, clear_safe_mode
from .executors import EvmExecutor, SolanaExecutor
from .jupiter_client import JupiterClient
from .key_store import KeyStore
from .models import TriggerType
from .opportunity_scanner import OpportunityScanner
from .orchestrator import CycleOrchestrator
from .retry_policy import RetryPolicy
from .solana_client import SolanaClient
from .utils import get_terminal_colors
from .wallet_monitor import WalletHealthMonitor
from .zerox_client import ZeroExClient

colors = get_terminal_colors()
logger = logging.getLogger(__name__)

COMMANDS = ("cycle", "cron", "scan", "decide", "execute", "wallets", "clear-safe-mode", "init-db")


def setup_logging(level: Optional[str] = None) -> None:
    level = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[
            logging.StreamHandler(sys.stdout),
            logging.FileHandler('arb_automation.log')
        ]
    )
    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)


@dataclass
class App:
    """Wired service graph plus the clients that need closing."""
    config: AppConfig
    engine: AsyncEngine
    orchestrator: CycleOrchestrator
    jupiter: JupiterClient
    zerox: ZeroExClient
    solana: SolanaClient
    evm: EvmClient

    @property
    def session_factory(self):
        return self.orchestrator.session_factory

    async def close(self):
        await self.jupiter.close()
        await self.zerox.close()
        await self.solana.close()
        await self.evm.close()
        await self.engine.dispose()


def missing_default_signers(config: AppConfig, key_store: KeyStore) -> List[str]:
    """Default signer labels from the execution settings that have no key loaded."""
    loaded = set(key_store.labels)
    return sorted(
        label for label in config.execution.default_signer_labels.values()
        if label.upper() not in loaded
    )


def build_app(config: AppConfig, key_store: Optional[KeyStore] = None) -> App:
    engine = create_db_engine(config.database_url)
    session_factory = create_session_factory(engine)

    jupiter = JupiterClient(
        config.jupiter_api_url,
        api_key=config.jupiter_api_key,
        timeout=config.quote_timeout,
        requests_per_second=config.quote_requests_per_second,
        slippage_bps=config.scanner.slippage_bps,
    )
    zerox = ZeroExClient(
        api_key=config.zerox_api_key,
        timeout=config.quote_timeout,
        requests_per_second=config.quote_requests_per_second,
        slippage_bps=config.scanner.slippage_bps,
    )
    solana = SolanaClient(config.solana_rpc_url, config.solana_fallback_rpc_url)
    evm = EvmClient(config.evm_rpc_urls)
    key_store = key_store if key_store is not None else KeyStore.from_env()
    missing = missing_default_signers(config, key_store)
    if missing:
        logger.warning(
            f"{colors['YELLOW']}No key loaded for default signer(s):{colors['RESET']} {', '.join(missing)}; "
            f"strategies without their own signer_label will fail to execute"
        )
    logger.info(f"Signers available: {', '.join(key_store.labels) or 'none'}")

    scanner = OpportunityScanner(
        session_factory,
        providers={CHAIN_SOLANA: jupiter, CHAIN_EVM: zerox},
        settings=config.scanner,
        retry_policy=RetryPolicy.from_settings(config.retry),
        gas_models=config.gas_models,
    )
    decision = DecisionEngine(session_factory, config.execution.run_max_age_seconds)
    execution = ExecutionEngine(
        session_factory,
        executors={
            CHAIN_SOLANA: SolanaExecutor(
                jupiter, solana, config.gas_models[CHAIN_SOLANA], config.execution.confirm_timeout_seconds
            ),
            CHAIN_EVM: EvmExecutor(
                zerox, evm, config.gas_models[CHAIN_EVM], config.execution.confirm_timeout_seconds
            ),
        },
        key_store=key_store,
        settings=config.execution,
    )

    async def solana_balance(network: str, address: str) -> float:
        return await solana.get_balance_sol(address)

    wallet_monitor = WalletHealthMonitor(
        session_factory,
        balance_fetchers={CHAIN_SOLANA: solana_balance, CHAIN_EVM: evm.get_native_balance},
        thresholds=config.wallet_thresholds,
    )
    orchestrator = CycleOrchestrator(
        session_factory, scanner, decision, execution, wallet_monitor, config.cycle
    )
    return App(config, engine, orchestrator, jupiter, zerox, solana, evm)


async def main(command: str = "cycle", chain: Optional[str] = None, note: Optional[str] = None) -> int:
    """Run one CLI command. Returns the process exit code."""
    config = load_config()
    app = build_app(config)
    orchestrator = app.orchestrator
    logger.info(f"Starting arbitrage automation: {colors['CYAN']}{command}{colors['RESET']}")

    try:
        await init_db(app.engine)

        if command == "init-db":
            return 0

        if command == "cycle":
            summary = await orchestrator.run_cycle(TriggerType.MANUAL.value)
            return 1 if summary.status == "FAILED" else 0

        if command == "cron":
            await orchestrator.run_forever(config.cycle.interval_seconds)
            return 0

        if command == "scan":
            results = await orchestrator.run_scan_only(chain)
            for chain_name, result in results.items():
                for opp in result.top[:5]:
                    if opp.net_profit is None:
                        continue
                    logger.info(
                        f"  {colors['CYAN']}{chain_name}{colors['RESET']} {opp.sources}: "
                        f"net {colors['YELLOW']}{opp.net_profit:.6f}{colors['RESET']} ({opp.profit_bps:.1f} bps)"
                    )
            return 0

        if command == "decide":
            await orchestrator.run_decide_only()
            return 0

        if command == "execute":
            await orchestrator.run_execute_only()
            return 0

        if command == "wallets":
            await orchestrator.run_wallet_check_only()
            return 0

        if command == "clear-safe-mode":
            cleared = await clear_safe_mode(app.session_factory, note)
            if not cleared:
                logger.info("Safe mode was not enabled")
            return 0

        logger.error(f"Unknown command: {command}. Use one of: {', '.join(COMMANDS)}")
        return 2

    finally:
        await app.close()
        logger.info("Arbitrage automation stopped")


def cli(argv=None) -> None:
    parser = argparse.ArgumentParser(description='Cross-chain arbitrage automation')
    parser.add_argument(
        'command',
        nargs='?',
        default='cycle',
        choices=COMMANDS,
        help='cycle (default, manual trigger), cron, scan, decide, execute, wallets, clear-safe-mode, init-db'
    )
    parser.add_argument('--chain', choices=SUPPORTED_CHAINS, help='Chain for the scan command')
    parser.add_argument('--note', help='Operator note for clear-safe-mode')
    parser.add_argument('--log-level', default=None, help='Overrides LOG_LEVEL')

    args = parser.parse_args(argv)
    setup_logging(args.log_level)

    try:
        exit_code = asyncio.run(main(command=args.command, chain=args.chain, note=args.note))
    except KeyboardInterrupt:
        print("\nStopped by user")
        sys.exit(0)
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)
    sys.exit(exit_code)


if __name__ == '__main__':
    cli()
