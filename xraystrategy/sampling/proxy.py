"""Client for the sampling API that the tracing daemon proxies to the service."""

from __future__ import annotations

import json
import logging
import urllib.error
import urllib.request
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, Optional

from xraystrategy.sampling.rule import SamplingStatistics

logger = logging.getLogger("xraystrategy")

DEFAULT_DAEMON_ADDRESS = "127.0.0.1:2000"
DEFAULT_TIMEOUT = 5.0

_RULES_PATH = "/GetSamplingRules"
_TARGETS_PATH = "/SamplingTargets"


class ProxyError(RuntimeError):
    """Raised when a call through the daemon fails or returns malformed data."""


@dataclass
class SamplingRuleDefinition:
    """A sampling rule as described by the service; any field may be absent."""

    rule_name: Optional[str] = None
    rule_arn: Optional[str] = None
    resource_arn: Optional[str] = None
    priority: Optional[int] = None
    fixed_rate: Optional[float] = None
    reservoir_size: Optional[int] = None
    service_name: Optional[str] = None
    service_type: Optional[str] = None
    host: Optional[str] = None
    http_method: Optional[str] = None
    url_path: Optional[str] = None
    version: Optional[int] = None
    attributes: Optional[dict[str, str]] = None


@dataclass
class SamplingRuleRecord:
    """A sampling rule together with its creation and modification times."""

    rule: Optional[SamplingRuleDefinition] = None
    created_at: Optional[float] = None
    modified_at: Optional[float] = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SamplingRuleRecord":
        """Build a record from its wire form."""
        _require_mapping(data, "sampling rule record")
        raw_rule = data.get("SamplingRule")
        rule = None if raw_rule is None else _rule_from_dict(raw_rule)
        return cls(
            rule=rule,
            created_at=_parse_time(data.get("CreatedAt")),
            modified_at=_parse_time(data.get("ModifiedAt")),
        )


@dataclass
class SamplingTargetDocument:
    """The quota and rate assigned to one rule for the next interval."""

    rule_name: Optional[str] = None
    fixed_rate: Optional[float] = None
    reservoir_quota: Optional[int] = None
    reservoir_quota_ttl: Optional[float] = None
    interval: Optional[int] = None


@dataclass
class UnprocessedStatistics:
    """A statistics document the service could not process."""

    rule_name: Optional[str] = None
    error_code: Optional[str] = None
    message: Optional[str] = None


@dataclass
class SamplingTargetsResult:
    """The service's answer to a report of sampling statistics."""

    documents: list[SamplingTargetDocument] = field(default_factory=list)
    last_rule_modification: Optional[float] = None
    unprocessed_statistics: list[UnprocessedStatistics] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SamplingTargetsResult":
        """Build a result from its wire form."""
        _require_mapping(data, "sampling targets output")
        documents = [
            SamplingTargetDocument(
                rule_name=_get(item, "RuleName", str),
                fixed_rate=_get(item, "FixedRate", float),
                reservoir_quota=_get(item, "ReservoirQuota", int),
                reservoir_quota_ttl=_parse_time(item.get("ReservoirQuotaTTL")),
                interval=_get(item, "Interval", int),
            )
            for item in _list_of_mappings(data.get("SamplingTargetDocuments"), "target document")
        ]
        unprocessed = [
            UnprocessedStatistics(
                rule_name=_get(item, "RuleName", str),
                error_code=_get(item, "ErrorCode", str),
                message=_get(item, "Message", str),
            )
            for item in _list_of_mappings(data.get("UnprocessedStatistics"), "unprocessed statistics")
        ]
        return cls(
            documents=documents,
            last_rule_modification=_parse_time(data.get("LastRuleModification")),
            unprocessed_statistics=unprocessed,
        )


def _require_mapping(data: Any, what: str) -> None:
    if not isinstance(data, dict):
        raise ProxyError(f"malformed {what}: expected an object, got {data!r}")


def _list_of_mappings(value: Any, what: str) -> list[dict[str, Any]]:
    if value is None:
        return []
    if not isinstance(value, list):
        raise ProxyError(f"malformed {what} list: {value!r}")
    for item in value:
        _require_mapping(item, what)
    return value


def _get(data: dict[str, Any], key: str, conv: Callable[[Any], Any]) -> Any:
    value = data.get(key)
    if value is None:
        return None
    try:
        return conv(value)
    except (TypeError, ValueError) as exc:
        raise ProxyError(f"malformed value for {key}: {value!r}") from exc


def _parse_time(value: Any) -> Optional[float]:
    """Read a timestamp given as epoch seconds or as an ISO 8601 string."""
    if value is None:
        return None
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError:
            pass
        text = value[:-1] + "+00:00" if value.endswith("Z") else value
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError as exc:
            raise ProxyError(f"malformed timestamp: {value!r}") from exc
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed.timestamp()
    raise ProxyError(f"malformed timestamp: {value!r}")


def _attributes(value: Any) -> Optional[dict[str, str]]:
    if value is None:
        return None
    if not isinstance(value, dict):
        raise ProxyError(f"malformed attributes: {value!r}")
    return {str(k): ("" if v is None else str(v)) for k, v in value.items()}


def _rule_from_dict(data: Any) -> SamplingRuleDefinition:
    _require_mapping(data, "sampling rule")
    return SamplingRuleDefinition(
        rule_name=_get(data, "RuleName", str),
        rule_arn=_get(data, "RuleARN", str),
        resource_arn=_get(data, "ResourceARN", str),
        priority=_get(data, "Priority", int),
        fixed_rate=_get(data, "FixedRate", float),
        reservoir_size=_get(data, "ReservoirSize", int),
        service_name=_get(data, "ServiceName", str),
        service_type=_get(data, "ServiceType", str),
        host=_get(data, "Host", str),
        http_method=_get(data, "HTTPMethod", str),
        url_path=_get(data, "URLPath", str),
        version=_get(data, "Version", int),
        attributes=_attributes(data.get("Attributes")),
    )


class DaemonProxy:
    """Sends unsigned sampling API requests to the daemon, which forwards them."""

    def __init__(self, address: str = DEFAULT_DAEMON_ADDRESS, timeout: float = DEFAULT_TIMEOUT) -> None:
        if address.startswith(("http://", "https://")):
            self.base_url = address.rstrip("/")
        else:
            self.base_url = "http://" + address
        self.timeout = timeout
        self._opener = urllib.request.build_opener(urllib.request.ProxyHandler({}))
        logger.info("X-Ray proxy using address : %s", address)

    def _post(self, path: str, payload: dict[str, Any]) -> dict[str, Any]:
        body = json.dumps(payload).encode("utf-8")
        request = urllib.request.Request(
            self.base_url + path,
            data=body,
            method="POST",
            headers={"Content-Type": "application/json"},
        )
        try:
            with self._opener.open(request, timeout=self.timeout) as response:
                raw = response.read()
        except urllib.error.HTTPError as exc:
            detail = exc.read().decode("utf-8", "replace")
            raise ProxyError(f"{path} failed with status {exc.code}: {detail}") from exc
        except (urllib.error.URLError, OSError) as exc:
            raise ProxyError(f"{path} failed: {exc}") from exc
        try:
            data = json.loads(raw) if raw else {}
        except ValueError as exc:
            raise ProxyError(f"{path} returned invalid JSON") from exc
        _require_mapping(data, f"{path} response")
        return data

    def get_sampling_rules(self) -> list[SamplingRuleRecord]:
        """Fetch the sampling rules defined in the service."""
        data = self._post(_RULES_PATH, {})
        return [
            SamplingRuleRecord.from_dict(item)
            for item in _list_of_mappings(data.get("SamplingRuleRecords"), "sampling rule record")
        ]

    def get_sampling_targets(self, statistics: Iterable[SamplingStatistics]) -> SamplingTargetsResult:
        """Report sampling statistics and fetch targets for the next interval."""
        payload = {"SamplingStatisticsDocuments": [s.to_dict() for s in statistics]}
        return SamplingTargetsResult.from_dict(self._post(_TARGETS_PATH, payload))