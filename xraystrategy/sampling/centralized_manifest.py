"""The ruleset received from the tracing service, kept sorted by priority."""

from __future__ import annotations

import random
import threading
from typing import Any, Iterable, Optional

from xraystrategy.sampling.proxy import SamplingRuleDefinition
from xraystrategy.sampling.reservoir import CentralizedReservoir, Clock, SystemClock
from xraystrategy.sampling.rule import CentralizedRule, Properties

DEFAULT_RULE_NAME = "Default"
DEFAULT_INTERVAL = 10
MANIFEST_TTL = 3600  # seconds

_USER_FIELDS = (
    "service_name",
    "http_method",
    "url_path",
    "reservoir_size",
    "fixed_rate",
    "host",
    "priority",
    "service_type",
    "resource_arn",
)
_DEFAULT_FIELDS = ("reservoir_size", "fixed_rate")


class RuleDefinitionError(ValueError):
    """Raised when a rule definition lacks a field needed to build the rule."""


def _require(definition: SamplingRuleDefinition, names: Iterable[str]) -> dict[str, Any]:
    values = {name: getattr(definition, name) for name in names}
    missing = [name for name, value in values.items() if value is None]
    if missing:
        raise RuleDefinitionError(
            f"sampling rule {definition.rule_name!r} is missing {', '.join(missing)}"
        )
    return values


class CentralizedManifest:
    """Custom rules sorted by priority and name, an index by name, and a default rule."""

    def __init__(
        self,
        clock: Optional[Clock] = None,
        rules: Optional[Iterable[CentralizedRule]] = None,
        default: Optional[CentralizedRule] = None,
    ) -> None:
        self.clock = SystemClock() if clock is None else clock
        self.rules: list[CentralizedRule] = list(rules or [])
        self.default = default
        self.index: dict[str, CentralizedRule] = {r.name: r for r in self.rules}
        if default is not None:
            self.index[default.name] = default
        self.refreshed_at = 0
        self.lock = threading.RLock()

    def put_rule(self, definition: SamplingRuleDefinition) -> CentralizedRule:
        """Update the named rule, or create it; a new rule may break the sort order."""
        name = definition.rule_name
        if name is None:
            raise RuleDefinitionError("sampling rule without rule name")

        if name == DEFAULT_RULE_NAME:
            with self.lock:
                existing = self.default
            if existing is not None:
                self._update_default_rule(existing, definition)
                return existing
            return self._create_default_rule(definition)

        with self.lock:
            existing = self.index.get(name)
        if existing is None:
            return self._create_user_rule(definition)
        self._update_user_rule(existing, definition)
        return existing

    @staticmethod
    def _user_properties(values: dict[str, Any]) -> Properties:
        return Properties(
            service_name=values["service_name"],
            http_method=values["http_method"],
            url_path=values["url_path"],
            fixed_target=int(values["reservoir_size"]),
            rate=float(values["fixed_rate"]),
            host=values["host"],
        )

    def _create_user_rule(self, definition: SamplingRuleDefinition) -> CentralizedRule:
        values = _require(definition, _USER_FIELDS)
        capacity = int(values["reservoir_size"])
        rule = CentralizedRule(
            name=definition.rule_name,
            priority=int(values["priority"]),
            properties=self._user_properties(values),
            reservoir=CentralizedReservoir(capacity=capacity, interval=DEFAULT_INTERVAL),
            service_type=values["service_type"],
            resource_arn=values["resource_arn"],
            attributes=dict(definition.attributes or {}),
            clock=SystemClock(),
            rand=random.Random(),
        )
        with self.lock:
            existing = self.index.get(rule.name)
            if existing is not None:
                return existing
            self.rules.append(rule)
            self.index[rule.name] = rule
        return rule

    def _update_user_rule(self, rule: CentralizedRule, definition: SamplingRuleDefinition) -> None:
        # Read every field before touching the rule so a bad definition leaves it intact.
        values = _require(definition, _USER_FIELDS)
        properties = self._user_properties(values)
        priority = int(values["priority"])
        capacity = int(values["reservoir_size"])
        attributes = dict(definition.attributes or {})
        with rule.lock:
            rule.properties = properties
            rule.priority = priority
            rule.reservoir.capacity = capacity
            rule.service_type = values["service_type"]
            rule.resource_arn = values["resource_arn"]
            rule.attributes = attributes

    def _create_default_rule(self, definition: SamplingRuleDefinition) -> CentralizedRule:
        values = _require(definition, _DEFAULT_FIELDS)
        capacity = int(values["reservoir_size"])
        rule = CentralizedRule(
            name=definition.rule_name,
            properties=Properties(fixed_target=capacity, rate=float(values["fixed_rate"])),
            reservoir=CentralizedReservoir(capacity=capacity, interval=DEFAULT_INTERVAL),
            clock=SystemClock(),
            rand=random.Random(),
        )
        with self.lock:
            if self.default is not None:
                return self.default
            self.default = rule
            self.index[rule.name] = rule
        return rule

    def _update_default_rule(self, rule: CentralizedRule, definition: SamplingRuleDefinition) -> None:
        values = _require(definition, _DEFAULT_FIELDS)
        capacity = int(values["reservoir_size"])
        properties = Properties(fixed_target=capacity, rate=float(values["fixed_rate"]))
        with rule.lock:
            rule.properties = properties
            rule.reservoir.capacity = capacity

    def prune(self, actives: Iterable[CentralizedRule]) -> None:
        """Remove every custom rule not among ``actives``, keeping the order of the rest."""
        keep = {id(rule) for rule in actives}
        with self.lock:
            removed = [rule for rule in self.rules if id(rule) not in keep]
            self.rules[:] = [rule for rule in self.rules if id(rule) in keep]
            for rule in removed:
                self.index.pop(rule.name, None)

    def sort(self) -> None:
        """Order the custom rules by priority, then by name."""
        with self.lock:
            self.rules.sort(key=lambda rule: (rule.priority, rule.name))

    def is_expired(self) -> bool:
        """Return True if the manifest was not refreshed within the last hour."""
        with self.lock:
            return self.refreshed_at < int(self.clock.now()) - MANIFEST_TTL