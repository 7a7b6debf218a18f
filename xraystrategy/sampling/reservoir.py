"""Reservoirs that allow a bounded number of samples per second."""

from __future__ import annotations

import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field


class Clock(ABC):
    """Source of the current time."""

    @abstractmethod
    def now(self) -> float:
        """Return the current time in seconds since the Unix epoch."""


class SystemClock(Clock):
    """Clock backed by the system time."""

    def now(self) -> float:
        return time.time()

    def __eq__(self, other: object) -> bool:
        return isinstance(other, SystemClock)

    def __hash__(self) -> int:
        return hash(SystemClock)


@dataclass
class CentralizedReservoir:
    """A reservoir whose quota is shared among all running clients."""

    capacity: int = 0
    quota: int = 0
    used: int = 0
    current_epoch: int = 0
    refreshed_at: int = 0
    expires_at: int = 0
    interval: int = 0
    borrowed: bool = False

    def is_expired(self, now: int) -> bool:
        """Return True if ``now`` is past the quota expiration."""
        return now > self.expires_at

    def borrow(self, now: int) -> bool:
        """Return True if nothing has been borrowed yet during this second."""
        if now != self.current_epoch:
            self.reset(now)
        already = self.borrowed
        self.borrowed = True
        return not already and self.capacity != 0

    def take(self, now: int) -> bool:
        """Consume one unit of quota if any remains this second."""
        if now != self.current_epoch:
            self.reset(now)
        if self.quota > self.used:
            self.used += 1
            return True
        return False

    def reset(self, now: int) -> None:
        """Start a new second: clear usage and the borrow flag."""
        self.current_epoch = now
        self.used = 0
        self.borrowed = False


@dataclass
class Reservoir:
    """A reservoir local to this process."""

    capacity: int = 0
    used: int = 0
    current_epoch: int = 0
    clock: Clock = field(default_factory=SystemClock, compare=False, repr=False)

    def take(self) -> bool:
        """Consume one unit if capacity remains this second."""
        now = int(self.clock.now())
        if now != self.current_epoch:
            self.used = 0
            self.current_epoch = now
        if self.used >= self.capacity:
            return False
        self.used += 1
        return True