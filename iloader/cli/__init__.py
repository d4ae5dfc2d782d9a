"""
iloader command-line interface.

This package provides the CLI for signing in, managing the developer
account and signing apps from the command line.
"""

from iloader.cli.main import cli

__all__ = ["cli"]
