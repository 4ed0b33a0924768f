"""Configuration for an orchestrator run.

Defaults follow what catalog crawls tolerate in practice: three concurrent
fetches, sixty requests a minute overall with at most ten in any ten
seconds, and per-site buckets refilling one token every two seconds.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

from catalogcue.ratelimit import (
    DEFAULT_CAPACITY,
    DEFAULT_MIN_INTERVAL,
    DEFAULT_REFILL_RATE,
    parse_rate,
)


@dataclass
class SiteLimits:
    """Token bucket parameters for one site."""

    capacity: float = DEFAULT_CAPACITY
    refill_rate: float = DEFAULT_REFILL_RATE  # Tokens per second
    min_interval: float = DEFAULT_MIN_INTERVAL  # Seconds

    @classmethod
    def from_requests_per_minute(
        cls, rpm: float, min_interval: float = DEFAULT_MIN_INTERVAL
    ) -> SiteLimits:
        """Half a minute's allowance as burst, refilling at half the nominal rate."""
        if rpm <= 0:
            raise ValueError("requests_per_minute must be positive")
        return cls(capacity=max(1.0, rpm / 2), refill_rate=rpm / 120, min_interval=min_interval)

    @classmethod
    def from_mapping(cls, data: dict[str, Any]) -> SiteLimits:
        data = dict(data)
        if "requests_per_minute" in data:
            return cls.from_requests_per_minute(
                float(data["requests_per_minute"]),
                float(data.get("min_interval", DEFAULT_MIN_INTERVAL)),
            )
        return cls(**_known(cls, data))


@dataclass
class GlobalLimits:
    """Sliding-window limits for the whole process."""

    max_requests: int = 60
    time_window: float = 60.0
    burst_limit: int = 10
    burst_window: float = 10.0

    @classmethod
    def from_mapping(cls, data: dict[str, Any]) -> GlobalLimits:
        data = dict(data)
        if "rate" in data:
            data["max_requests"], data["time_window"] = parse_rate(data.pop("rate"))
        if "burst" in data:
            data["burst_limit"], data["burst_window"] = parse_rate(data.pop("burst"))
        return cls(**_known(cls, data))


@dataclass
class OrchestratorConfig:
    """Everything an orchestrator needs to know up front."""

    concurrency: int = 3
    max_retries: int = 3
    retry_delay: float = 5.0  # Seconds, doubled per attempt
    retry_jitter: float = 0.1  # Fraction of the backoff added at random
    default_priority: int = 5
    tick_interval: float = 1.0
    flush_interval: float = 60.0
    flush_threshold: int = 10
    global_limits: GlobalLimits = field(default_factory=GlobalLimits)
    default_site_limits: SiteLimits = field(default_factory=SiteLimits)
    sites: dict[str, SiteLimits] = field(default_factory=dict)
    validate_records: bool = True

    def __post_init__(self) -> None:
        if self.concurrency < 1:
            raise ValueError("concurrency must be >= 1")
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        if self.retry_delay < 0 or self.retry_jitter < 0:
            raise ValueError("retry_delay and retry_jitter must be >= 0")
        if self.tick_interval <= 0 or self.flush_interval <= 0:
            raise ValueError("tick_interval and flush_interval must be positive")
        if self.flush_threshold < 1:
            raise ValueError("flush_threshold must be >= 1")

    @classmethod
    def from_mapping(cls, data: dict[str, Any]) -> OrchestratorConfig:
        """
        Build a config from plain data, e.g. parsed JSON.

        Example:
            OrchestratorConfig.from_mapping({
                "concurrency": 5,
                "global_limits": {"rate": "120/min", "burst": "20/10s"},
                "sites": {"shop": {"requests_per_minute": 30}},
            })
        """
        data = dict(data)
        if "global_limits" in data:
            data["global_limits"] = GlobalLimits.from_mapping(data["global_limits"])
        if "default_site_limits" in data:
            data["default_site_limits"] = SiteLimits.from_mapping(data["default_site_limits"])
        if "sites" in data:
            data["sites"] = {
                name: SiteLimits.from_mapping(limits) for name, limits in data["sites"].items()
            }
        return cls(**_known(cls, data))


def load_config(path: str | Path) -> OrchestratorConfig:
    """Read an ``OrchestratorConfig`` from a JSON file."""
    with open(path, "r", encoding="utf-8") as f:
        data = json.load(f)
    if not isinstance(data, dict):
        raise ValueError(f"Config file must hold a JSON object: {path}")
    return OrchestratorConfig.from_mapping(data)


def _known(cls: type, data: dict[str, Any]) -> dict[str, Any]:
    """Keep only keys that are fields of ``cls``; reject the rest."""
    names = {f.name for f in fields(cls)}
    unknown = set(data) - names
    if unknown:
        raise ValueError(f"Unknown {cls.__name__} option(s): {', '.join(sorted(unknown))}")
    return data
