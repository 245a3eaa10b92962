"""
Utility functions for the arbitrage automation core.
"""
import sys
from datetime import datetime, date, timezone
from typing import Dict


def get_terminal_colors() -> Dict[str, str]:
    """
    Get ANSI color codes for terminal output.
    
    Returns empty strings if output is not a TTY (e.g., redirected to file),
    so log files stay free of escape codes.
    
    Returns:
        Dictionary with color codes: GREEN, CYAN, YELLOW, RED, DIM, RESET
    """
    use_color = sys.stdout.isatty()
    return {
        'GREEN': '\033[92m' if use_color else '',   # Counts, balances, config values
        'CYAN': '\033[96m' if use_color else '',    # Chains, strategies, venues, token paths
        'YELLOW': '\033[93m' if use_color else '',  # Profit, thresholds, gas
        'RED': '\033[91m' if use_color else '',     # Failures, losses, safe mode
        'DIM': '\033[90m' if use_color else '',     # Service messages
        'RESET': '\033[0m' if use_color else ''
    }


def utcnow() -> datetime:
    """Naive UTC timestamp (SQLite stores datetimes without tz)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def utc_today() -> date:
    return utcnow().date()


def short_address(address: str, keep: int = 6) -> str:
    """Shorten a token/wallet address for log output."""
    if not address or len(address) <= keep * 2:
        return address or ""
    return f"{address[:keep]}...{address[-4:]}"


def format_path(token_path, sources=None) -> str:
    """Render a token path like 'USDC -[Uniswap_V3]-> WETH -[QuickSwap]-> USDC'."""
    if not token_path:
        return ""
    parts = [short_address(token_path[0])]
    for i, token in enumerate(token_path[1:]):
        venue = sources[i] if sources and i < len(sources) else None
        arrow = f" -[{venue}]-> " if venue else " -> "
        parts.append(arrow + short_address(token))
    return "".join(parts)
