from __future__ import annotations

import math
from collections.abc import Sequence
from dataclasses import dataclass

from .models import (
    HIGH_SCAM_PROBABILITY,
    LIKELY_SAFE,
    SUSPICIOUS,
    Classification,
    Indicators,
    ScoreBreakdown,
    TruthVerificationResult,
    UrlFact,
)

SUSPICIOUS_THRESHOLD = 30.0
HIGH_THRESHOLD = 70.0

INDICATOR_WEIGHTS: dict[str, float] = {
    "urgency": 25.0,
    "credential_request": 30.0,
    "impersonation": 25.0,
    "financial_request": 20.0,
}
INDICATOR_REASONS: dict[str, str] = {
    "urgency": "Urgent or time-pressure language",
    "credential_request": "Asks for credentials such as OTP, PIN, password or KYC details",
    "impersonation": "Impersonates a bank, government agency or known brand",
    "financial_request": "Requests a payment or money transfer",
}
STATUS_SEVERITY: dict[str, float] = {
    "confirmed": 1.0,
    "investigating": 0.6,
    "resolved": 0.2,
}


@dataclass
class ScoringWeights:
    pattern: float = 0.40
    truth: float = 0.35
    url: float = 0.15
    sentiment: float = 0.10

    def as_dict(self) -> dict[str, float]:
        total = self.pattern + self.truth + self.url + self.sentiment
        if total <= 0:
            raise ValueError("ScoringWeights sum must be positive")
        return {
            "pattern": self.pattern / total,
            "truth": self.truth / total,
            "url": self.url / total,
            "sentiment": self.sentiment / total,
        }


def classify(score: float) -> Classification:
    if score >= HIGH_THRESHOLD:
        return HIGH_SCAM_PROBABILITY
    if score >= SUSPICIOUS_THRESHOLD:
        return SUSPICIOUS
    return LIKELY_SAFE


def _clamp(value: float, low: float = 0.0, high: float = 100.0) -> float:
    if not math.isfinite(value):
        return low
    return max(low, min(high, value))


class ScoringEngine:
    """Weighted combination of indicator, truth, URL and sentiment signals."""

    def __init__(self, weights: ScoringWeights | None = None, *, reason_threshold: float = 1.0) -> None:
        self.weights = weights or ScoringWeights()
        self._weight_map = self.weights.as_dict()
        self._reason_threshold = reason_threshold

    def calculate_score(
        self,
        indicators: Indicators | None,
        truth: TruthVerificationResult | None,
        url_facts: Sequence[UrlFact] = (),
        sentiment: float | None = None,
    ) -> ScoreBreakdown:
        indicators = indicators or Indicators()
        if sentiment is None:
            sentiment = indicators.sentiment_score
        sentiment = _clamp(sentiment, -1.0, 1.0) if math.isfinite(sentiment) else 0.0

        components = {
            "pattern": self._pattern_score(indicators),
            "truth": self._truth_score(truth),
            "url": self._url_score(url_facts),
            "sentiment": self._sentiment_score(sentiment, indicators.urgency),
        }
        score = self._combine_components(components)
        escalated = self._critical_combination(indicators, url_facts)
        if escalated:
            # rescale into the high band, keeping the ordering of base scores
            score = HIGH_THRESHOLD + (100.0 - HIGH_THRESHOLD) * score / 100.0
        score = round(_clamp(score), 2)
        classification = classify(score)

        reasons = self._build_reasons(indicators, truth, url_facts, sentiment, components, escalated)
        if not reasons and classification != LIKELY_SAFE:
            reasons.append("Several weak risk signals combined")
        if indicators.reasoning:
            reasons.append(indicators.reasoning)

        return ScoreBreakdown(
            score=score,
            classification=classification,
            pattern_score=round(components["pattern"], 2),
            truth_score=round(components["truth"], 2),
            url_score=round(components["url"], 2),
            sentiment_score=round(components["sentiment"], 2),
            escalated=escalated,
            reasons=reasons,
        )

    def _combine_components(self, components: dict[str, float]) -> float:
        total = 0.0
        for key, weight in self._weight_map.items():
            total += components.get(key, 0.0) * weight
        return _clamp(total)

    @staticmethod
    def _pattern_score(indicators: Indicators) -> float:
        return _clamp(sum(weight for name, weight in INDICATOR_WEIGHTS.items() if getattr(indicators, name)))

    @staticmethod
    def _truth_score(truth: TruthVerificationResult | None) -> float:
        if truth is None:
            return 0.0
        severity = STATUS_SEVERITY.get(truth.cyber_cell_status or "", 0.0)
        weight = _clamp(truth.local_weight, 0.0, 1.0)
        return _clamp(100.0 * (1.0 - (1.0 - weight) * (1.0 - 0.5 * severity)))

    @staticmethod
    def _url_score(url_facts: Sequence[UrlFact]) -> float:
        if not url_facts:
            return 0.0
        badness = max(1.0 - _clamp(fact.trust_score, 0.0, 1.0) for fact in url_facts)
        return _clamp(badness * 100.0)

    @staticmethod
    def _sentiment_score(sentiment: float, urgency: bool) -> float:
        return _clamp(70.0 * max(0.0, -sentiment) + (30.0 if urgency else 0.0))

    @staticmethod
    def _critical_combination(indicators: Indicators, url_facts: Sequence[UrlFact]) -> bool:
        return indicators.urgency and indicators.credential_request and any(fact.is_risky for fact in url_facts)

    def _contributes(self, component: str, value: float) -> bool:
        return value * self._weight_map[component] >= self._reason_threshold

    def _build_reasons(
        self,
        indicators: Indicators,
        truth: TruthVerificationResult | None,
        url_facts: Sequence[UrlFact],
        sentiment: float,
        components: dict[str, float],
        escalated: bool,
    ) -> list[str]:
        ranked: list[tuple[float, str]] = []
        for name, weight in INDICATOR_WEIGHTS.items():
            if getattr(indicators, name):
                ranked.append((weight * self._weight_map["pattern"], INDICATOR_REASONS[name]))

        if truth is not None and self._contributes("truth", components["truth"]):
            truth_contribution = components["truth"] * self._weight_map["truth"]
            where = truth.district or "your area"
            if truth.local_flags > 0:
                ranked.append((truth_contribution, f"{truth.local_flags} similar scam reports in {where}"))
            if truth.trending_locally:
                ranked.append((truth_contribution * 0.9, f"This scam is trending in {where} this week"))
            if truth.cyber_cell_status:
                ranked.append((truth_contribution * 0.8, f"Cyber Cell status for this pattern: {truth.cyber_cell_status}"))

        url_weight = self._weight_map["url"]
        for fact in url_facts:
            contribution = (1.0 - fact.trust_score) * 100.0 * url_weight
            for text in self._url_reasons(fact):
                if contribution >= self._reason_threshold or "new-domain" in fact.flags:
                    ranked.append((contribution, text))

        if self._contributes("sentiment", components["sentiment"]) and sentiment < 0:
            ranked.append((components["sentiment"] * self._weight_map["sentiment"], "Fear-inducing or strongly negative tone"))

        if escalated:
            ranked.append((100.0, "Urgency, a credential request and a risky link appear together"))

        ranked.sort(key=lambda item: item[0], reverse=True)
        reasons: list[str] = []
        for _, text in ranked:
            if text not in reasons:
                reasons.append(text)
        return reasons

    @staticmethod
    def _url_reasons(fact: UrlFact) -> list[str]:
        reasons = []
        domain = fact.domain or fact.url
        if "new-domain" in fact.flags:
            age = f"{fact.age_days} days ago" if fact.age_days is not None else "recently"
            reasons.append(f"Link points to a new domain ({domain}, registered {age})")
        if "typosquat" in fact.flags and fact.typosquat_target:
            reasons.append(f"{domain} imitates {fact.typosquat_target}")
        elif "typosquat" in fact.flags:
            reasons.append(f"{domain} looks like a misspelled well-known domain")
        if fact.reputation_tier in ("suspicious", "malicious"):
            reasons.append(f"{domain} has a {fact.reputation_tier} reputation")
        if "redirect-loop" in fact.flags or "hop-limit-exceeded" in fact.flags:
            reasons.append(f"Shortened link {fact.url} hides its destination behind too many redirects")
        elif fact.is_shortener:
            reasons.append(f"Link uses a URL shortener ({fact.url})")
        if "invalid-ssl" in fact.flags:
            reasons.append(f"{domain} has no valid SSL certificate")
        if "lookup-failed" in fact.flags:
            reasons.append(f"Could not verify {domain}; treated as suspicious")
        return reasons
