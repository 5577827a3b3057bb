"""Command-line entry point (``conduit``)."""

from conduit.cli.app import app

__all__ = ["app"]
