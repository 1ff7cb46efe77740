from __future__ import annotations

import asyncio
import logging
import math
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable

from .config import Settings, get_settings
from .errors import ValidationError, log_failure
from .models import CyberCellReport, OfficialStatus, ScamPattern, TruthVerificationResult, utcnow
from .pattern_store import PatternStore
from .resilience import DependencyKind, ResilientCaller

logger = logging.getLogger(__name__)

STATUS_WEIGHTS: dict[str, float] = {
    "confirmed": 0.5,
    "investigating": 0.3,
    "resolved": 0.1,
}
TREND_WEIGHT = 0.25
REPORT_WEIGHT = 0.6
REPORT_SCALE = 10.0


def compute_local_weight(
    local_flags: int,
    trending_locally: bool,
    cyber_cell_status: OfficialStatus | None,
) -> float:
    """Combine district evidence into a weight in [0, 1].

    Each signal is mapped to an independent probability-like term and the
    terms are merged with a noisy-OR. Report counts saturate, so the first
    reports move the weight most. Every term is non-decreasing in its input.
    """
    report_term = REPORT_WEIGHT * (1.0 - math.exp(-max(0, local_flags) / REPORT_SCALE))
    trend_term = TREND_WEIGHT if trending_locally else 0.0
    status_term = STATUS_WEIGHTS.get(cyber_cell_status or "", 0.0)
    weight = 1.0 - (1.0 - report_term) * (1.0 - trend_term) * (1.0 - status_term)
    return round(min(1.0, max(0.0, weight)), 4)


@dataclass
class _Snapshot:
    patterns: list[ScamPattern] = field(default_factory=list)
    recent_reports: int = 0
    report: CyberCellReport | None = None


class RegionalTruthEngine:
    """Checks forwarded content against district-scoped scam history."""

    def __init__(
        self,
        store: PatternStore,
        *,
        caller: ResilientCaller | None = None,
        settings: Settings | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._settings = settings or get_settings()
        self._store = store
        self._caller = caller or ResilientCaller.from_settings(self._settings)
        self._clock = clock
        self._cache: OrderedDict[tuple[str, str], _Snapshot] = OrderedDict()
        self._cache_size = self._settings.degraded_cache_size

    async def verify_claim(
        self,
        pattern_hash: str,
        district: str | None,
        language: str | None = None,
    ) -> TruthVerificationResult:
        if not pattern_hash:
            raise ValidationError("pattern_hash is required")
        if not district:
            return TruthVerificationResult(pattern_hash=pattern_hash, language=language)

        key = (pattern_hash, district.lower())
        try:
            snapshot = await self._fetch(pattern_hash, district)
        except Exception as exc:
            log_failure("regional_truth", exc, pattern_hash=pattern_hash[:12], district=district)
            cached = self._cache.get(key)
            if cached is None:
                return TruthVerificationResult(
                    pattern_hash=pattern_hash,
                    district=district,
                    language=language,
                    degraded=True,
                )
            logger.info("Serving cached patterns for %s/%s in degraded mode", pattern_hash[:12], district)
            return self._evaluate(pattern_hash, district, language, cached, degraded=True)

        self._remember(key, snapshot)
        return self._evaluate(pattern_hash, district, language, snapshot, degraded=False)

    async def _fetch(self, pattern_hash: str, district: str) -> _Snapshot:
        since = self._clock() - timedelta(days=self._settings.trend_window_days)
        patterns, recent, report = await asyncio.gather(
            self._caller.call(DependencyKind.PATTERN_STORE, lambda: self._store.get(pattern_hash, district)),
            self._caller.call(
                DependencyKind.PATTERN_STORE,
                lambda: self._store.query_trend(district, since, pattern_hash),
            ),
            self._caller.call(
                DependencyKind.PATTERN_STORE,
                lambda: self._store.get_cyber_cell_report(pattern_hash),
            ),
        )
        return _Snapshot(patterns=list(patterns), recent_reports=int(recent), report=report)

    def _remember(self, key: tuple[str, str], snapshot: _Snapshot) -> None:
        self._cache[key] = snapshot
        self._cache.move_to_end(key)
        while len(self._cache) > self._cache_size:
            self._cache.popitem(last=False)

    def _evaluate(
        self,
        pattern_hash: str,
        district: str,
        language: str | None,
        snapshot: _Snapshot,
        *,
        degraded: bool,
    ) -> TruthVerificationResult:
        now = self._clock()
        window_start = now - timedelta(days=self._settings.lookback_days)
        matches = [
            pattern
            for pattern in snapshot.patterns
            if pattern.district.lower() == district.lower()
            and pattern.status != "resolved"
            and pattern.last_seen >= window_start
        ]
        local_flags = sum(pattern.report_count for pattern in matches)
        trending = self._is_trending(local_flags, snapshot.recent_reports)

        report = snapshot.report
        status = report.official_status if report else None
        warnings = [report.public_warning] if report and report.public_warning else []
        related = sorted(report.related_patterns) if report else []

        return TruthVerificationResult(
            pattern_hash=pattern_hash,
            district=district,
            language=language,
            local_flags=local_flags,
            cyber_cell_status=status,
            trending_locally=trending,
            related_patterns=related,
            official_warnings=warnings,
            local_weight=compute_local_weight(local_flags, trending, status),
            degraded=degraded,
        )

    def _is_trending(self, local_flags: int, recent_reports: int) -> bool:
        """Recent reports compared with the weekly rate seen earlier in the lookback window."""
        if recent_reports < self._settings.trend_min_reports:
            return False
        history_days = max(7, self._settings.lookback_days - self._settings.trend_window_days)
        baseline = max(0, local_flags - recent_reports) / (history_days / 7)
        return recent_reports > self._settings.trend_ratio * baseline
