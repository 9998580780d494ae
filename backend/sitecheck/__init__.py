"""Staged website reachability probe with live stage-by-stage updates."""

__version__ = "1.0.0"
