"""Running verification counters persisted to a small JSON file."""

from __future__ import annotations

import asyncio
import json
import math
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

from verification_bot.core.logging_utils import get_logger
from verification_bot.core.models import MetricsSnapshot, VerificationStatus

logger = get_logger("metrics")

_DEFAULTS: Dict[str, Any] = {
    "total_verifications": 0,
    "success_count": 0,
    "failure_count": 0,
    "manual_review_count": 0,
    "confidence_sum": 0.0,
    "confidence_samples": 0,
    "dm_cleanup_count": 0,
    "rate_limit_hits": 0,
    "last_updated": 0.0,
}


def _valid_value(value: Any, default: Any) -> bool:
    if isinstance(value, bool):
        return False
    if isinstance(default, int):
        return isinstance(value, int) and value >= 0
    return isinstance(value, (int, float)) and math.isfinite(value)


class MetricsService:
    """
    Counters are updated in memory and written at most once per
    ``debounce_seconds``.  Call :meth:`flush` on shutdown to write pending
    changes immediately.
    """

    def __init__(self, path: str | Path = "logs/metrics.json", *, debounce_seconds: float = 2.0) -> None:
        self.path = Path(path)
        self.debounce_seconds = debounce_seconds
        self._metrics: Dict[str, Any] = dict(_DEFAULTS)
        self._pending: Optional[asyncio.TimerHandle] = None
        self._load()

    def _load(self) -> None:
        if not self.path.exists():
            self._metrics["last_updated"] = time.time()
            self._persist()
            return
        try:
            parsed = json.loads(self.path.read_text(encoding="utf-8"))
            if not isinstance(parsed, dict):
                raise ValueError("metrics file does not hold an object")
        except (OSError, ValueError) as exc:
            logger.warning("Failed to load metrics from %s, starting fresh: %s", self.path, exc)
            self._metrics = dict(_DEFAULTS, last_updated=time.time())
            return
        self._metrics = {}
        for key, default in _DEFAULTS.items():
            value = parsed.get(key, default)
            if not _valid_value(value, default):
                logger.warning("Ignoring invalid metrics value %s=%r in %s", key, value, self.path)
                value = time.time() if key == "last_updated" else default
            self._metrics[key] = value

    def _persist(self) -> None:
        self._pending = None
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.path.write_text(json.dumps(self._metrics, indent=2), encoding="utf-8")
        except OSError as exc:
            logger.warning("Failed to persist metrics to %s: %s", self.path, exc)

    def _schedule_persist(self) -> None:
        if self._pending is not None:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self._persist()
            return
        self._pending = loop.call_later(self.debounce_seconds, self._persist)

    def _touch(self) -> None:
        self._metrics["last_updated"] = time.time()
        self._schedule_persist()

    def record_verification(self, status: VerificationStatus, confidence: Optional[float] = None) -> None:
        self._metrics["total_verifications"] += 1
        if status is VerificationStatus.SUCCESS:
            self._metrics["success_count"] += 1
        elif status is VerificationStatus.FAILURE:
            self._metrics["failure_count"] += 1
        else:
            self._metrics["manual_review_count"] += 1
        if confidence is not None:
            self._metrics["confidence_sum"] += confidence
            self._metrics["confidence_samples"] += 1
        self._touch()

    def increment_dm_cleanup(self, count: int = 1) -> None:
        self._metrics["dm_cleanup_count"] += count
        self._touch()

    def increment_rate_limit_hits(self, count: int = 1) -> None:
        self._metrics["rate_limit_hits"] += count
        self._touch()

    def snapshot(self) -> MetricsSnapshot:
        samples = self._metrics["confidence_samples"]
        average = self._metrics["confidence_sum"] / samples if samples else 0.0
        last_updated = datetime.fromtimestamp(self._metrics["last_updated"], tz=timezone.utc)
        return MetricsSnapshot(
            total_verifications=self._metrics["total_verifications"],
            success_count=self._metrics["success_count"],
            failure_count=self._metrics["failure_count"],
            manual_review_count=self._metrics["manual_review_count"],
            average_confidence=average,
            confidence_samples=samples,
            dm_cleanup_count=self._metrics["dm_cleanup_count"],
            rate_limit_hits=self._metrics["rate_limit_hits"],
            last_updated=last_updated.isoformat(),
        )

    def flush(self) -> None:
        if self._pending is not None:
            self._pending.cancel()
        self._persist()


__all__ = ["MetricsService"]
