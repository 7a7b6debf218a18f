"""Local and centralized sampling rules."""

from __future__ import annotations

import logging
import random
import re
import threading
from dataclasses import dataclass, field
from typing import Any, Optional

from xraystrategy.sampling.request import Decision, Request
from xraystrategy.sampling.reservoir import CentralizedReservoir, Clock, Reservoir, SystemClock

logger = logging.getLogger("xraystrategy")


def wildcard_match(pattern: str, text: str) -> bool:
    """Case-insensitive match where ``*`` is any run of characters and ``?`` one character."""
    if pattern == "*":
        return True
    regex = re.escape(pattern).replace(r"\*", ".*").replace(r"\?", ".")
    return re.fullmatch(regex, text, re.IGNORECASE | re.DOTALL) is not None


@dataclass
class Properties:
    """The matching criteria and rates that define a sampling rule."""

    service_name: str = ""
    host: str = ""
    http_method: str = ""
    url_path: str = ""
    fixed_target: int = 0
    rate: float = 0.0

    def applies_to(self, host: str, path: str, method: str) -> bool:
        """Return True if the rule matches; empty arguments match anything."""
        return (
            (host == "" or wildcard_match(self.host, host))
            and (path == "" or wildcard_match(self.url_path, path))
            and (method == "" or wildcard_match(self.http_method, method))
        )


@dataclass
class SamplingStatistics:
    """Counters for one rule over one reporting interval."""

    rule_name: str
    request_count: int
    sampled_count: int
    borrow_count: int
    timestamp: float
    client_id: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        """Return the statistics document in service wire form."""
        out: dict[str, Any] = {
            "RuleName": self.rule_name,
            "RequestCount": self.request_count,
            "SampledCount": self.sampled_count,
            "BorrowCount": self.borrow_count,
            "Timestamp": self.timestamp,
        }
        if self.client_id is not None:
            out["ClientID"] = self.client_id
        return out


@dataclass
class CentralizedRule:
    """A sampling rule whose targets are assigned by the tracing service."""

    name: str = ""
    priority: int = 0
    properties: Properties = field(default_factory=Properties)
    reservoir: CentralizedReservoir = field(default_factory=CentralizedReservoir)
    requests: int = 0
    sampled: int = 0
    borrows: int = 0
    used_at: int = 0
    service_type: str = ""
    resource_arn: str = ""
    attributes: dict[str, str] = field(default_factory=dict)
    clock: Clock = field(default_factory=SystemClock, compare=False, repr=False)
    rand: Any = field(default_factory=random.Random, compare=False, repr=False)
    lock: threading.RLock = field(
        default_factory=threading.RLock, init=False, compare=False, repr=False
    )

    def applies_to(self, request: Request) -> bool:
        """Return True if the rule matches; empty request fields match anything."""
        p = self.properties
        return (
            (request.host == "" or wildcard_match(p.host, request.host))
            and (request.url == "" or wildcard_match(p.url_path, request.url))
            and (request.method == "" or wildcard_match(p.http_method, request.method))
            and (
                request.service_name == ""
                or wildcard_match(p.service_name, request.service_name)
            )
            and (
                request.service_type == ""
                or wildcard_match(self.service_type, request.service_type)
            )
        )

    def is_stale(self, now: int) -> bool:
        """Return True if the rule was used and its quota is due for a refresh."""
        with self.lock:
            return (
                self.requests != 0
                and now >= self.reservoir.refreshed_at + self.reservoir.interval
            )

    def sample(self) -> Decision:
        """Make a sampling decision and update the rule's counters."""
        now = int(self.clock.now())
        decision = Decision(rule=self.name)

        with self.lock:
            self.requests += 1

            if self.reservoir.is_expired(now):
                if self.reservoir.borrow(now):
                    logger.debug(
                        "Sampling target has expired for rule %s. Borrowing a request.",
                        self.name,
                    )
                    decision.sample = True
                    self.borrows += 1
                    return decision
                logger.debug(
                    "Sampling target has expired for rule %s. Using fixed rate.", self.name
                )
                decision.sample = self._bernoulli_sample()
                return decision

            if self.reservoir.take(now):
                self.sampled += 1
                decision.sample = True
                return decision

            logger.debug(
                "Sampling target has been exhausted for rule %s. Using fixed rate.", self.name
            )
            decision.sample = self._bernoulli_sample()
            return decision

    def _bernoulli_sample(self) -> bool:
        if self.rand.random() < self.properties.rate:
            self.sampled += 1
            return True
        return False

    def snapshot(self) -> SamplingStatistics:
        """Return the current counters and reset them."""
        with self.lock:
            requests, sampled, borrows = self.requests, self.sampled, self.borrows
            self.requests = self.sampled = self.borrows = 0
        return SamplingStatistics(
            rule_name=self.name,
            request_count=requests,
            sampled_count=sampled,
            borrow_count=borrows,
            timestamp=self.clock.now(),
        )


@dataclass
class Rule:
    """A sampling rule defined locally."""

    properties: Properties = field(default_factory=Properties)
    reservoir: Optional[Reservoir] = None
    rand: Any = field(default_factory=random.Random, compare=False, repr=False)
    lock: threading.Lock = field(
        default_factory=threading.Lock, init=False, compare=False, repr=False
    )

    def __post_init__(self) -> None:
        if self.reservoir is None:
            self.reservoir = Reservoir(capacity=self.properties.fixed_target)

    def sample(self) -> Decision:
        """Sample from the reservoir first, then at the fixed rate."""
        decision = Decision()
        with self.lock:
            if self.reservoir.take():
                decision.sample = True
            else:
                decision.sample = self.rand.random() < self.properties.rate
        return decision