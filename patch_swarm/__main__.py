"""
Entry point for running patch_swarm as a module.

Allows running as: python -m patch_swarm
"""

from patch_swarm.cli import cli_main

if __name__ == "__main__":
    cli_main()
