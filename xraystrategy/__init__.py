"""Trace sampling, context-missing and exception formatting strategies."""

__version__ = "0.1.0"