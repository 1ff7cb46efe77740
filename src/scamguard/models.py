from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone
from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator

ReputationTier = Literal["trusted", "unknown", "suspicious", "malicious"]
PatternStatus = Literal["active", "historical", "resolved"]
OfficialStatus = Literal["investigating", "confirmed", "resolved"]
Classification = Literal["Likely Safe", "Suspicious", "High Scam Probability"]

LIKELY_SAFE: Classification = "Likely Safe"
SUSPICIOUS: Classification = "Suspicious"
HIGH_SCAM_PROBABILITY: Classification = "High Scam Probability"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TextContent(BaseModel):
    kind: Literal["text"] = "text"
    text: str


class ImageDerivedText(BaseModel):
    """Text recovered from an image by the OCR collaborator."""

    kind: Literal["image"] = "image"
    text: str
    source_ref: str | None = None
    ocr_confidence: float | None = Field(default=None, ge=0.0, le=1.0)


class VoiceDerivedText(BaseModel):
    """Transcript produced by the speech collaborator."""

    kind: Literal["voice"] = "voice"
    text: str
    source_ref: str | None = None
    transcript_confidence: float | None = Field(default=None, ge=0.0, le=1.0)


ContentItem = Annotated[
    Union[TextContent, ImageDerivedText, VoiceDerivedText],
    Field(discriminator="kind"),
]


class Indicators(BaseModel):
    """Normalized signals extracted from the content by upstream collaborators.

    ``reasoning`` is free text from the reasoning collaborator. It is carried
    verbatim into the output reasons and never inspected.
    """

    model_config = ConfigDict(frozen=True)

    urgency: bool = False
    credential_request: bool = False
    impersonation: bool = False
    financial_request: bool = False
    sentiment_score: float = 0.0
    reasoning: str | None = None


class DomainFacts(BaseModel):
    age_days: int | None = None
    reputation_tier: ReputationTier = "unknown"
    ssl_valid: bool | None = None


class UrlFact(BaseModel):
    url: str
    domain: str
    age_days: int | None = None
    reputation_tier: ReputationTier = "unknown"
    is_shortener: bool = False
    resolved_destination: str | None = None
    hop_count: int = 0
    typosquat_distance: int | None = None
    typosquat_target: str | None = None
    ssl_valid: bool | None = None
    trust_score: float = Field(0.5, ge=0.0, le=1.0)
    flags: list[str] = Field(default_factory=list)
    degraded: bool = False

    @property
    def is_new_domain(self) -> bool:
        return "new-domain" in self.flags

    @property
    def is_risky(self) -> bool:
        risky_flags = {"new-domain", "typosquat", "hop-limit-exceeded", "redirect-loop", "shortener"}
        return bool(risky_flags.intersection(self.flags)) or self.reputation_tier in ("suspicious", "malicious")


class DomainTrustRecord(BaseModel):
    domain: str
    trust_score: float = Field(..., ge=0.0, le=1.0)
    reputation_tier: ReputationTier = "unknown"
    last_checked: datetime = Field(default_factory=utcnow)
    ttl: int = Field(86400, ge=0)
    age_days: int | None = None
    ssl_valid: bool | None = None
    typosquat_distance: int | None = None
    typosquat_target: str | None = None
    flags: list[str] = Field(default_factory=list)

    def is_stale(self, now: datetime | None = None) -> bool:
        now = now or utcnow()
        return now - self.last_checked >= timedelta(seconds=self.ttl)


class ScamPattern(BaseModel):
    pattern_hash: str = Field(..., min_length=1)
    district: str = Field(..., min_length=1)
    scam_type: str = "other"
    language: str = "en"
    first_seen: datetime = Field(default_factory=utcnow)
    last_seen: datetime = Field(default_factory=utcnow)
    report_count: int = Field(1, ge=0)
    status: PatternStatus = "active"
    severity: int = Field(1, ge=1, le=5)

    @model_validator(mode="after")
    def _ordered_timestamps(self) -> "ScamPattern":
        if self.last_seen < self.first_seen:
            raise ValueError("last_seen must not precede first_seen")
        return self


class CyberCellReport(BaseModel):
    official_status: OfficialStatus
    related_patterns: set[str] = Field(default_factory=set)
    public_warning: str | None = None
    district: str | None = None
    updated_at: datetime = Field(default_factory=utcnow)


class TruthVerificationResult(BaseModel):
    pattern_hash: str
    district: str | None = None
    language: str | None = None
    local_flags: int = 0
    cyber_cell_status: OfficialStatus | None = None
    trending_locally: bool = False
    related_patterns: list[str] = Field(default_factory=list)
    official_warnings: list[str] = Field(default_factory=list)
    local_weight: float = Field(0.0, ge=0.0, le=1.0)
    degraded: bool = False

    @property
    def has_local_context(self) -> bool:
        return self.local_flags > 0 or self.trending_locally or bool(self.official_warnings)


class LocalContext(BaseModel):
    district: str | None = None
    local_flags: int = 0
    trending_locally: bool = False
    cyber_cell_status: OfficialStatus | None = None
    official_warnings: list[str] = Field(default_factory=list)
    related_patterns: list[str] = Field(default_factory=list)

    @classmethod
    def from_truth(cls, truth: TruthVerificationResult | None) -> "LocalContext | None":
        if truth is None or not truth.has_local_context:
            return None
        return cls(
            district=truth.district,
            local_flags=truth.local_flags,
            trending_locally=truth.trending_locally,
            cyber_cell_status=truth.cyber_cell_status,
            official_warnings=list(truth.official_warnings),
            related_patterns=list(truth.related_patterns),
        )


class ScoreBreakdown(BaseModel):
    score: float = Field(..., ge=0.0, le=100.0)
    classification: Classification
    pattern_score: float = 0.0
    truth_score: float = 0.0
    url_score: float = 0.0
    sentiment_score: float = 0.0
    escalated: bool = False
    reasons: list[str] = Field(default_factory=list)

    @property
    def components(self) -> dict[str, float]:
        return {
            "pattern": self.pattern_score,
            "truth": self.truth_score,
            "url": self.url_score,
            "sentiment": self.sentiment_score,
        }


class Alert(BaseModel):
    language: str
    classification: Classification
    title: str
    message: str
    reasons: list[str] = Field(default_factory=list)
    district_notice: str | None = None
    reduced_confidence: bool = False


class AnalysisRequest(BaseModel):
    content: ContentItem
    indicators: Indicators | None = None
    urls: list[str] = Field(default_factory=list)
    url_facts: list[UrlFact] = Field(default_factory=list)
    district: str | None = None
    language: str | None = None
    pattern_hash: str | None = None
    request_id: str = Field(default_factory=lambda: uuid.uuid4().hex)


class AnalysisOutput(BaseModel):
    scam_probability_score: float = Field(..., ge=0.0, le=100.0)
    classification: Classification
    reasons: list[str]
    local_context: LocalContext | None = None
    alert: Alert
    processing_time_ms: float = 0.0
    partial: bool = False
    degraded: bool = False
    url_facts: list[UrlFact] = Field(default_factory=list)
    components: dict[str, float] = Field(default_factory=dict)
