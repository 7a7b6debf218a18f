"""Sampling requests, decisions and the strategy interface."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional


@dataclass
class Decision:
    """Whether a request is sampled, and the name of the rule that decided it."""

    sample: bool = False
    rule: Optional[str] = None


@dataclass
class Request:
    """The parameters a sampling decision is made from."""

    host: str = ""
    method: str = ""
    url: str = ""
    service_name: str = ""
    service_type: str = ""


class SamplingStrategy(ABC):
    """Decides whether incoming requests are traced."""

    @abstractmethod
    def should_trace(self, request: Request) -> Decision:
        """Return the sampling decision for ``request``."""