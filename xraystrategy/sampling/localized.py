"""Sampling decisions made from a locally defined ruleset."""

from __future__ import annotations

import json
import logging
import os
from typing import Union

from xraystrategy.sampling.manifest import (
    RuleManifest,
    manifest_from_file_path,
    manifest_from_json_bytes,
)
from xraystrategy.sampling.request import Decision, Request, SamplingStrategy

logger = logging.getLogger("xraystrategy")

# Sample the first request each second, and 5% of requests thereafter.
_DEFAULT_RULES = {
    "version": 2,
    "default": {"fixed_target": 1, "rate": 0.05},
    "rules": [],
}


class LocalizedStrategy(SamplingStrategy):
    """Makes sampling decisions from a set of rules held in this process."""

    def __init__(self, manifest: RuleManifest) -> None:
        self.manifest = manifest

    @classmethod
    def from_default_rules(cls) -> "LocalizedStrategy":
        """Strategy sampling the first request per second and 5% thereafter."""
        return cls(manifest_from_json_bytes(json.dumps(_DEFAULT_RULES)))

    @classmethod
    def from_file_path(cls, path: Union[str, "os.PathLike[str]"]) -> "LocalizedStrategy":
        """Strategy using the ruleset in the JSON file at ``path``."""
        return cls(manifest_from_file_path(path))

    @classmethod
    def from_json_bytes(cls, data: Union[bytes, str]) -> "LocalizedStrategy":
        """Strategy using the ruleset given as JSON text."""
        return cls(manifest_from_json_bytes(data))

    def should_trace(self, request: Request) -> Decision:
        logger.debug(
            "Determining ShouldTrace decision for:\n\thost: %s\n\tpath: %s\n\tmethod: %s",
            request.host,
            request.url,
            request.method,
        )
        for rule in self.manifest.rules:
            props = rule.properties
            if props.applies_to(request.host, request.url, request.method):
                logger.debug(
                    "Applicable rule:\n\tfixed_target: %d\n\trate: %f\n\thost: %s"
                    "\n\turl_path: %s\n\thttp_method: %s",
                    props.fixed_target,
                    props.rate,
                    props.host,
                    props.url_path,
                    props.http_method,
                )
                return rule.sample()
        default = self.manifest.default
        logger.debug(
            "Default rule applies:\n\tfixed_target: %d\n\trate: %f",
            default.properties.fixed_target,
            default.properties.rate,
        )
        return default.sample()