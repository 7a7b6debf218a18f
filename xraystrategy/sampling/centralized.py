"""Quota-based sampling with the tracing service arbitrating between clients."""

from __future__ import annotations

import logging
import os
import random
import secrets
import threading
from typing import Any, Callable, Optional, Union

from xraystrategy.sampling.centralized_manifest import CentralizedManifest, RuleDefinitionError
from xraystrategy.sampling.localized import LocalizedStrategy
from xraystrategy.sampling.proxy import (
    DEFAULT_DAEMON_ADDRESS,
    DaemonProxy,
    SamplingTargetDocument,
)
from xraystrategy.sampling.request import Decision, Request, SamplingStrategy
from xraystrategy.sampling.reservoir import Clock, SystemClock
from xraystrategy.sampling.rule import CentralizedRule, SamplingStatistics

logger = logging.getLogger("xraystrategy")

RULE_POLL_PERIOD = 300.0
RULE_POLL_JITTER = 5.0
TARGET_POLL_PERIOD = 10.1
TARGET_POLL_JITTER = 0.1


class RefreshError(RuntimeError):
    """Raised when sampling rules or targets could not be refreshed."""


class CentralizedStrategy(SamplingStrategy):
    """Samples using rules and quotas from the tracing service.

    Falls back to a :class:`LocalizedStrategy` while no fresh rules are available.
    """

    def __init__(
        self,
        fallback: Optional[LocalizedStrategy] = None,
        proxy: Optional[Any] = None,
        clock: Optional[Clock] = None,
        rand: Optional[Any] = None,
        client_id: Optional[str] = None,
    ) -> None:
        self.fallback = LocalizedStrategy.from_default_rules() if fallback is None else fallback
        self.proxy = proxy
        self.clock = SystemClock() if clock is None else clock
        self.rand = random.Random() if rand is None else rand
        self.client_id = secrets.token_hex(12) if client_id is None else client_id
        self.manifest = CentralizedManifest(clock=self.clock)
        self.daemon_address: Optional[str] = None
        self._lock = threading.Lock()
        self._stop_event: Optional[threading.Event] = None

    @classmethod
    def from_json_bytes(cls, data: Union[bytes, str]) -> "CentralizedStrategy":
        """Strategy falling back on the local rules given as JSON text."""
        return cls(fallback=LocalizedStrategy.from_json_bytes(data))

    @classmethod
    def from_file_path(cls, path: Union[str, "os.PathLike[str]"]) -> "CentralizedStrategy":
        """Strategy falling back on the local rules in the JSON file at ``path``."""
        return cls(fallback=LocalizedStrategy.from_file_path(path))

    def load_daemon_endpoints(self, address: Optional[str]) -> None:
        """Set the daemon address used when the pollers start."""
        self.daemon_address = address

    @property
    def started(self) -> bool:
        """True while the rule and target pollers are running."""
        return self._stop_event is not None

    def should_trace(self, request: Request) -> Decision:
        with self._lock:
            if self._stop_event is None:
                self._start_locked()

        logger.debug(
            "Determining ShouldTrace decision for:\n\thost: %s\n\tpath: %s\n\tmethod: %s"
            "\n\tservicename: %s\n\tservicetype: %s",
            request.host,
            request.url,
            request.method,
            request.service_name,
            request.service_type,
        )

        manifest = self.manifest
        if manifest.is_expired():
            logger.debug("Centralized sampling data expired. Using fallback sampling strategy")
            return self.fallback.should_trace(request)

        with manifest.lock:
            for rule in manifest.rules:
                with rule.lock:
                    applicable = rule.applies_to(request)
                if not applicable:
                    continue
                logger.debug("Applicable rule: %s", rule.name)
                return rule.sample()

            default = manifest.default
            if default is not None:
                logger.debug("Applicable rule: %s", default.name)
                return default.sample()

        logger.debug(
            "Centralized default sampling rule unavailable. Using fallback sampling strategy"
        )
        return self.fallback.should_trace(request)

    def start(self) -> None:
        """Start the rule and target pollers if they are not running."""
        with self._lock:
            if self._stop_event is None:
                self._start_locked()

    def stop(self) -> None:
        """Stop the pollers; they may be started again later."""
        with self._lock:
            if self._stop_event is not None:
                self._stop_event.set()
                self._stop_event = None

    def _start_locked(self) -> None:
        if self.proxy is None:
            self.proxy = DaemonProxy(self.daemon_address or DEFAULT_DAEMON_ADDRESS)
        stop_event = threading.Event()
        self._stop_event = stop_event
        self._spawn(self._initial_refresh, "xray-rules-initial")
        self._spawn(
            lambda: self._poll(stop_event, RULE_POLL_PERIOD, RULE_POLL_JITTER, self._poll_rules),
            "xray-rule-poller",
        )
        self._spawn(
            lambda: self._poll(
                stop_event, TARGET_POLL_PERIOD, TARGET_POLL_JITTER, self._poll_targets
            ),
            "xray-target-poller",
        )

    @staticmethod
    def _spawn(target: Callable[[], None], name: str) -> None:
        threading.Thread(target=target, name=name, daemon=True).start()

    def _poll(
        self,
        stop_event: threading.Event,
        period: float,
        jitter: float,
        action: Callable[[], None],
    ) -> None:
        while not stop_event.wait(period + self.rand.random() * jitter):
            try:
                action()
            except Exception as exc:  # a poller must never die
                logger.debug("Unexpected error in sampling poller. %s", exc)

    def _initial_refresh(self) -> None:
        try:
            self.refresh_manifest()
        except Exception as exc:
            logger.debug("Error occurred during initial refresh of sampling rules. %s", exc)
        else:
            logger.info("Successfully fetched sampling rules")

    def _poll_rules(self) -> None:
        try:
            self.refresh_manifest()
        except RefreshError as exc:
            logger.debug("Error occurred while refreshing sampling rules. %s", exc)
        else:
            logger.debug("Successfully fetched sampling rules")

    def _poll_targets(self) -> None:
        try:
            self.refresh_targets()
        except RefreshError as exc:
            logger.debug("Error occurred while refreshing targets for sampling rules. %s", exc)

    def _refresh_out_of_band(self) -> None:
        try:
            self.refresh_manifest()
        except Exception as exc:
            logger.debug("Error occurred refreshing sampling rules out-of-band. %s", exc)

    def refresh_manifest(self) -> None:
        """Fetch the sampling rules and bring the manifest up to date.

        Valid rules are created or updated, rules no longer present are removed,
        and the manifest is re-sorted. Raises :class:`RefreshError` if the rules
        could not be fetched or some of them could not be applied.
        """
        manifest = self.manifest
        # Taken before the call so the manifest is never marked fresher than it is.
        now = int(self.clock.now())

        try:
            records = self.proxy.get_sampling_rules()
        except Exception as exc:
            raise RefreshError(str(exc)) from exc

        actives: list[CentralizedRule] = []
        failed = False
        for record in records:
            definition = record.rule
            if definition is None:
                logger.debug("Sampling rule missing from sampling rule record.")
                failed = True
                continue
            name = definition.rule_name
            if name is None:
                logger.debug("Sampling rule without rule name is not supported")
                failed = True
                continue
            if definition.version is None:
                logger.debug("Sampling rule without version number is not supported: %s", name)
                failed = True
                continue
            if definition.version != 1:
                logger.debug("Sampling rule without version 1 is not supported: %s", name)
                failed = True
                continue
            if definition.attributes:
                logger.debug("Sampling rule with non nil Attributes is not applicable: %s", name)
                continue
            if definition.resource_arn is None:
                logger.debug("Sampling rule without ResourceARN is not applicable: %s", name)
                continue
            if definition.resource_arn != "*":
                logger.debug(
                    "Sampling rule with ResourceARN not equal to * is not applicable: %s", name
                )
                continue

            try:
                rule = manifest.put_rule(definition)
            except (RuleDefinitionError, TypeError, ValueError) as exc:
                failed = True
                logger.debug("Error occurred creating/updating rule. %s", exc)
            else:
                actives.append(rule)

        manifest.prune(actives)
        manifest.sort()
        with manifest.lock:
            manifest.refreshed_at = now

        if failed:
            raise RefreshError("error occurred creating/updating rules")

    def refresh_targets(self) -> None:
        """Report statistics for stale rules and apply the targets received.

        Starts an asynchronous manifest refresh when the service reports rules
        modified since the last refresh. Raises :class:`RefreshError` if the call
        fails or some targets could not be applied.
        """
        statistics = self.snapshots()
        if not statistics:
            logger.debug("No statistics to report. Not refreshing sampling targets.")
            return

        try:
            output = self.proxy.get_sampling_targets(statistics)
        except Exception as exc:
            raise RefreshError(str(exc)) from exc

        failed = False
        refresh = False

        for target in output.documents:
            try:
                self.update_target(target)
            except RefreshError as exc:
                failed = True
                logger.debug("Error occurred updating target for rule. %s", exc)

        for item in output.unprocessed_statistics:
            logger.debug(
                "Error occurred updating sampling target for rule: %s, code: %s, message: %s",
                item.rule_name,
                item.error_code,
                item.message,
            )
            if item.error_code is None or item.rule_name is None:
                continue
            if item.error_code.startswith("5"):
                failed = True
            if item.error_code.startswith("4"):
                refresh = True

        if not failed:
            logger.debug("Successfully refreshed sampling targets")

        remote = output.last_rule_modification
        if remote is not None:
            with self.manifest.lock:
                local = self.manifest.refreshed_at
            if int(remote) >= local:
                refresh = True

        if refresh:
            logger.info("Refreshing sampling rules out-of-band.")
            self._spawn(self._refresh_out_of_band, "xray-rules-out-of-band")

        if failed:
            raise RefreshError("error occurred updating sampling targets")

    def snapshots(self) -> list[SamplingStatistics]:
        """Take and reset statistics of every rule due for a target refresh."""
        now = int(self.clock.now())
        manifest = self.manifest
        statistics: list[SamplingStatistics] = []
        with manifest.lock:
            candidates = list(manifest.rules)
            if manifest.default is not None:
                candidates.append(manifest.default)
            for rule in candidates:
                if not rule.is_stale(now):
                    continue
                stats = rule.snapshot()
                stats.client_id = self.client_id
                statistics.append(stats)
        return statistics

    def update_target(self, target: SamplingTargetDocument) -> None:
        """Apply a sampling target to the rule it names."""
        if target.rule_name is None:
            raise RefreshError("invalid sampling target. Missing rule name")
        if target.fixed_rate is None:
            raise RefreshError(
                f"invalid sampling target for rule {target.rule_name}. Missing fixed rate"
            )

        with self.manifest.lock:
            rule = self.manifest.index.get(target.rule_name)
        if rule is None:
            raise RefreshError(f"rule {target.rule_name} not found")

        with rule.lock:
            rule.reservoir.refreshed_at = int(self.clock.now())
            rule.properties.rate = float(target.fixed_rate)
            if target.reservoir_quota is not None:
                rule.reservoir.quota = int(target.reservoir_quota)
            if target.reservoir_quota_ttl is not None:
                rule.reservoir.expires_at = int(target.reservoir_quota_ttl)
            if target.interval is not None:
                rule.reservoir.interval = int(target.interval)