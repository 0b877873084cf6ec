"""Command line interface for the keeper (``keeper``)."""

from keeper.cli.app import app

__all__ = ["app"]
