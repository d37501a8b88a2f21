"""Command line interface for mcupnp."""

from mcupnp.cli.main import cli, main

__all__ = ["cli", "main"]
