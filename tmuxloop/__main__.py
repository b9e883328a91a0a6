"""
Entry point for running tmuxloop as a module.

Usage:
    python -m tmuxloop run
    python -m tmuxloop status
"""

from .cli import cli

if __name__ == "__main__":
    cli()
