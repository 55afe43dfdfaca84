"""
Patch Swarm - supervised, mode-sequenced issue fixing with an AI coding agent.

Drives an interactive code-modification agent as a subprocess, answers its
prompts, watches it for stalls, and chains passes into reviewable branches.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
