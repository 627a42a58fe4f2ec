"""Kiln command-line interface."""

from kiln.cli.main import cli, main

__all__ = ["cli", "main"]
