"""Shared utilities for the flow metrics engine."""

from .logging import configure_logging, get_engine_logger

__all__ = ["configure_logging", "get_engine_logger"]
