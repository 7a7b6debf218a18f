"""Local sampling rule manifests loaded from JSON."""

from __future__ import annotations

import json
import os
import random
import time
from dataclasses import dataclass, field
from typing import Any, Optional, Union

from xraystrategy.sampling.reservoir import Reservoir, SystemClock
from xraystrategy.sampling.rule import Properties, Rule

SUPPORTED_VERSIONS = (1, 2)

_RULE_FIELDS = {
    "service_name": str,
    "host": str,
    "http_method": str,
    "url_path": str,
    "fixed_target": int,
    "rate": float,
}

_MANIFEST_FIELDS = {"version": int, "default": dict, "rules": list}


class ManifestError(ValueError):
    """Raised when a sampling rule manifest cannot be read or is invalid."""


@dataclass
class RuleManifest:
    """A full local ruleset: custom rules plus a default for unmatched requests."""

    version: int
    default: Rule
    rules: list[Rule] = field(default_factory=list)


def _decode_object(obj: dict[str, Any], fields: dict[str, type]) -> dict[str, Any]:
    """Map JSON keys onto known field names, exact match first, then case-insensitively.

    Later keys overwrite earlier ones; unknown keys are ignored.
    """
    values: dict[str, Any] = {}
    for key, value in obj.items():
        if key in fields:
            values[key] = value
            continue
        folded = key.casefold()
        name = next((f for f in fields if f.casefold() == folded), None)
        if name is not None:
            values[name] = value
    return values


def _coerce(name: str, value: Any, kind: type) -> Any:
    if kind is str:
        if value is None:
            return ""
        if isinstance(value, str):
            return value
    elif kind is int:
        if value is None:
            return 0
        if isinstance(value, int) and not isinstance(value, bool):
            return value
    elif kind is float:
        if value is None:
            return 0.0
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return float(value)
    raise ManifestError(f"cannot decode {value!r} into field {name} of type {kind.__name__}")


def _decode_properties(obj: Any) -> Properties:
    if not isinstance(obj, dict):
        raise ManifestError(f"sampling rule must be a JSON object, got {obj!r}")
    raw = _decode_object(obj, _RULE_FIELDS)
    values = {name: _coerce(name, raw.get(name), kind) for name, kind in _RULE_FIELDS.items()}
    return Properties(**values)


def _validate_version1(props: Properties) -> None:
    if props.fixed_target < 0 or props.rate < 0:
        raise ManifestError("all rules must have non-negative values for fixed_target and rate")
    if props.host != "" or props.service_name == "" or props.http_method == "" or props.url_path == "":
        raise ManifestError(
            "all non-default rules must have values for url_path, service_name, and http_method"
        )


def _validate_version2(props: Properties) -> None:
    if props.fixed_target < 0 or props.rate < 0:
        raise ManifestError("all rules must have non-negative values for fixed_target and rate")
    if props.service_name != "" or props.host == "" or props.http_method == "" or props.url_path == "":
        raise ManifestError(
            "all non-default rules must have values for url_path, host, and http_method"
        )


def _make_rule(props: Properties) -> Rule:
    reservoir = Reservoir(
        capacity=props.fixed_target,
        used=0,
        current_epoch=int(time.time()),
        clock=SystemClock(),
    )
    return Rule(properties=props, reservoir=reservoir, rand=random.Random())


def _manifest_from_object(obj: Any) -> RuleManifest:
    if obj is None:
        obj = {}
    if not isinstance(obj, dict):
        raise ManifestError("sampling rule manifest must be a JSON object")
    raw = _decode_object(obj, _MANIFEST_FIELDS)

    version = _coerce("version", raw.get("version"), int)
    if version not in SUPPORTED_VERSIONS:
        raise ManifestError(f"sampling rule manifest version {version} not supported")

    default_obj = raw.get("default")
    if default_obj is None:
        raise ManifestError("sampling rule manifest must include a default rule")
    default = _decode_properties(default_obj)
    if default.url_path != "" or default.service_name != "" or default.http_method != "":
        raise ManifestError(
            "the default rule must not specify values for url_path, service_name, or http_method"
        )
    if default.fixed_target < 0 or default.rate < 0:
        raise ManifestError(
            "the default rule must specify non-negative values for fixed_target and rate"
        )

    rules_obj = raw.get("rules")
    if rules_obj is None:
        rules_obj = []
    elif not isinstance(rules_obj, list):
        raise ManifestError("sampling rule manifest rules must be a JSON array")

    rules: list[Rule] = []
    for item in rules_obj:
        props = _decode_properties(item)
        if version == 1:
            _validate_version1(props)
            # Version 1 rules name the host in service_name.
            props.host = props.service_name
            props.service_name = ""
        else:
            _validate_version2(props)
        rules.append(_make_rule(props))

    return RuleManifest(version=version, default=_make_rule(default), rules=rules)


def manifest_from_json_bytes(data: Union[bytes, str]) -> RuleManifest:
    """Build a sampling ruleset from JSON text."""
    try:
        obj = json.loads(data)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise ManifestError(str(exc)) from exc
    return _manifest_from_object(obj)


def manifest_from_file_path(path: Union[str, "os.PathLike[str]"]) -> RuleManifest:
    """Build a sampling ruleset from the JSON file at ``path``."""
    with open(path, "rb") as handle:
        data = handle.read()
    return manifest_from_json_bytes(data)


__all__ = [
    "ManifestError",
    "RuleManifest",
    "manifest_from_json_bytes",
    "manifest_from_file_path",
]

_ = Optional  # kept for annotations in callers