"""
Narrow interface over the regional pattern store.

The physical engine behind the store is external; ``InMemoryPatternStore`` is
the reference implementation used in-process and in tests.
"""

from __future__ import annotations

import hashlib
import logging
import re
from abc import ABC, abstractmethod
from datetime import datetime, timedelta

from .errors import ValidationError
from .models import CyberCellReport, ScamPattern, utcnow

logger = logging.getLogger(__name__)

# status may only move forward along this order
STATUS_ORDER = {"active": 0, "historical": 1, "resolved": 2}


def fingerprint(text: str) -> str:
    """Content fingerprint used as ``pattern_hash``; insensitive to case, spacing and punctuation."""
    normalized = re.sub(r"\s+", " ", text.lower().strip())
    normalized = re.sub(r"[^\w\s]", "", normalized)
    return hashlib.sha256(normalized.encode("utf-8")).hexdigest()


class PatternStore(ABC):
    @abstractmethod
    async def get(self, pattern_hash: str, district: str) -> list[ScamPattern]:
        ...

    @abstractmethod
    async def put(self, pattern: ScamPattern) -> None:
        ...

    @abstractmethod
    async def mark_inactive(self, pattern_hash: str) -> int:
        ...

    @abstractmethod
    async def query_trend(self, district: str, since: datetime, pattern_hash: str | None = None) -> int:
        ...

    @abstractmethod
    async def get_cyber_cell_report(self, pattern_hash: str) -> CyberCellReport | None:
        ...


class InMemoryPatternStore(PatternStore):
    def __init__(self, *, expiry: timedelta = timedelta(days=365)) -> None:
        self._patterns: dict[tuple[str, str], ScamPattern] = {}
        # (pattern_hash, district, seen_at, new_reports)
        self._events: list[tuple[str, str, datetime, int]] = []
        self._reports: list[CyberCellReport] = []
        self._expiry = expiry

    def _expired(self, pattern: ScamPattern, now: datetime) -> bool:
        return now - pattern.last_seen > self._expiry

    async def get(self, pattern_hash: str, district: str) -> list[ScamPattern]:
        now = utcnow()
        self._purge(now)
        pattern = self._patterns.get((pattern_hash, district.lower()))
        if pattern is None or pattern.status == "resolved":
            return []
        return [pattern.model_copy()]

    async def put(self, pattern: ScamPattern) -> None:
        key = (pattern.pattern_hash, pattern.district.lower())
        existing = self._patterns.get(key)
        if existing is not None and STATUS_ORDER[pattern.status] < STATUS_ORDER[existing.status]:
            raise ValidationError(
                f"pattern {pattern.pattern_hash} cannot move from {existing.status} back to {pattern.status}"
            )
        self._patterns[key] = pattern.model_copy()
        new_reports = pattern.report_count - (existing.report_count if existing else 0)
        if new_reports > 0:
            self._events.append((key[0], key[1], pattern.last_seen, new_reports))

    async def mark_inactive(self, pattern_hash: str) -> int:
        changed = 0
        for key, pattern in self._patterns.items():
            if key[0] == pattern_hash and pattern.status == "active":
                self._patterns[key] = pattern.model_copy(update={"status": "historical"})
                changed += 1
        logger.info("Marked %d record(s) of pattern %s historical", changed, pattern_hash)
        return changed

    async def query_trend(self, district: str, since: datetime, pattern_hash: str | None = None) -> int:
        district = district.lower()
        return sum(
            count
            for hash_, dist, seen_at, count in self._events
            if dist == district and seen_at >= since and (pattern_hash is None or hash_ == pattern_hash)
        )

    async def get_cyber_cell_report(self, pattern_hash: str) -> CyberCellReport | None:
        matches = [report for report in self._reports if pattern_hash in report.related_patterns]
        if not matches:
            return None
        return max(matches, key=lambda report: report.updated_at).model_copy()

    def add_cyber_cell_report(self, report: CyberCellReport) -> None:
        """Entry point for the external Cyber Cell ingestion path."""
        self._reports.append(report.model_copy())

    def _purge(self, now: datetime) -> None:
        expired = [key for key, pattern in self._patterns.items() if self._expired(pattern, now)]
        for key in expired:
            del self._patterns[key]
        cutoff = now - self._expiry
        self._events = [event for event in self._events if event[2] >= cutoff]
