"""CLI package for patch-swarm.

Modules:
    app.py      - Main Typer app, version callback, fix/analyze/mode/modes
    common.py   - Shared helpers (get_console, config loading)

Usage:
    from patch_swarm.cli import app, cli_main
"""
from patch_swarm.cli.app import app, cli_main

__all__ = ["app", "cli_main"]
