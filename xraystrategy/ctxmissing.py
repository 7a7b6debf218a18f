"""Strategies for subsegments created without a parent segment in context."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any

logger = logging.getLogger("xraystrategy")

RUNTIME_ERROR_STRATEGY = "RUNTIME_ERROR"
"""AWS_XRAY_CONTEXT_MISSING value selecting :class:`RuntimeErrorStrategy`."""

LOG_ERROR_STRATEGY = "LOG_ERROR"
"""AWS_XRAY_CONTEXT_MISSING value selecting :class:`LogErrorStrategy`."""

IGNORE_ERROR_STRATEGY = "IGNORE_ERROR"
"""AWS_XRAY_CONTEXT_MISSING value selecting :class:`IgnoreErrorStrategy`."""


class ContextMissingError(RuntimeError):
    """Raised when a segment context is missing and the strategy demands it."""

    def __init__(self, value: Any) -> None:
        super().__init__(value)
        self.value = value

    def __str__(self) -> str:
        return str(self.value)


class ContextMissingStrategy(ABC):
    """Decides what happens when no segment is available in context."""

    @abstractmethod
    def context_missing(self, value: Any) -> None:
        """Handle a missing segment context described by ``value``."""


class RuntimeErrorStrategy(ContextMissingStrategy):
    """Raises :class:`ContextMissingError` when the context is missing."""

    def context_missing(self, value: Any) -> None:
        raise ContextMissingError(value)


class LogErrorStrategy(ContextMissingStrategy):
    """Logs an error when the context is missing."""

    def context_missing(self, value: Any) -> None:
        logger.error("Suppressing AWS X-Ray context missing panic: %s", value)


class IgnoreErrorStrategy(ContextMissingStrategy):
    """Silently ignores a missing context."""

    def context_missing(self, value: Any) -> None:
        return None