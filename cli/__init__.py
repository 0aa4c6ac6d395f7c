"""
CLI command registration helpers for candlefill.

Each submodule exposes a ``register`` function that attaches a group of
related commands to the root Click group defined in ``candlefill_cli.py``.
"""

__all__ = ["control", "data", "migrate", "wallet"]
