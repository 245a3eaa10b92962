#!/usr/bin/env python3
"""
Simple launcher script for the arbitrage automation service.
"""
from arb_automation.main import cli

if __name__ == '__main__':
    cli()
