"""
Regex fallback for building ``Indicators`` when the reasoning collaborator is
unavailable, plus URL extraction from normalized text.
"""

from __future__ import annotations

import re

from .models import Indicators

URGENCY_PATTERNS = (
    r"\burgent(?:ly)?\b",
    r"\bimmediately\b",
    r"\bnow\b",
    r"\bwithin\s+\d+\s*(?:hours?|hrs?|minutes?|mins?)\b",
    r"\bexpir(?:e|es|ed|ing|y)\b",
    r"\blast\s+(?:chance|date|day)\b",
    r"\btoday\s+only\b",
    r"तुरंत",
    r"आज ही",
    r"உடனடியாக",
)
CREDENTIAL_PATTERNS = (
    r"\bkyc\b",
    r"\botp\b",
    r"\bpin\b",
    r"\bcvv\b",
    r"\bpassword\b",
    r"\b(?:aadhaar|aadhar|pan)\s*(?:card|number|no\.?)?\b",
    r"\bverify\s+(?:your\s+)?(?:account|details|identity)\b",
    r"\bupdate\s+(?:your\s+)?(?:kyc|details|account)\b",
    r"ओटीपी",
    r"पासवर्ड",
)
IMPERSONATION_PATTERNS = (
    r"\b(?:sbi|hdfc|icici|axis|kotak|rbi|reserve\s+bank|uidai|npci|trai|cbi)\b",
    r"\b(?:income\s+tax|customs|police|cyber\s+cell|electricity\s+board)\b",
    r"\b(?:customer\s+care|bank\s+manager|official\s+notice)\b",
    r"\b(?:paytm|phonepe|amazon|flipkart)\s+(?:team|support|officer)\b",
)
FINANCIAL_PATTERNS = (
    r"(?:₹|\brs\.?|\binr\b)\s?\d",
    r"\bupi\b",
    r"\b(?:processing|registration|delivery)\s+fee\b",
    r"\b(?:pay|transfer|send)\b.{0,40}\b(?:money|amount|fee|rupees)\b",
    r"\b(?:lottery|prize|cashback|refund)\b",
)
NEGATIVE_PATTERNS = (
    r"\bblock(?:ed)?\b",
    r"\bsuspend(?:ed)?\b",
    r"\barrest(?:ed)?\b",
    r"\bpenalty\b",
    r"\blegal\s+action\b",
    r"\bexpir(?:e|es|ed|ing)\b",
    r"\bdeactivat(?:e|ed|ion)\b",
)

URL_PATTERN = re.compile(r"(?:https?://|www\.)[^\s<>\"')]+", re.IGNORECASE)


def _compile(patterns: tuple[str, ...]) -> list[re.Pattern]:
    return [re.compile(pattern, re.IGNORECASE | re.UNICODE) for pattern in patterns]


def extract_urls(text: str) -> list[str]:
    if not text:
        return []
    urls: list[str] = []
    for match in URL_PATTERN.findall(text):
        url = match.rstrip(".,!?;:")
        if url not in urls:
            urls.append(url)
    return urls


class HeuristicIndicatorExtractor:
    def __init__(self) -> None:
        self._urgency = _compile(URGENCY_PATTERNS)
        self._credential = _compile(CREDENTIAL_PATTERNS)
        self._impersonation = _compile(IMPERSONATION_PATTERNS)
        self._financial = _compile(FINANCIAL_PATTERNS)
        self._negative = _compile(NEGATIVE_PATTERNS)

    @staticmethod
    def _hits(patterns: list[re.Pattern], text: str) -> int:
        return sum(1 for pattern in patterns if pattern.search(text))

    def extract(self, text: str) -> Indicators:
        text = text or ""
        # URLs are scored separately; keep their paths out of keyword matching
        stripped = URL_PATTERN.sub(" ", text)
        negative_hits = self._hits(self._negative, stripped)
        exclamations = stripped.count("!")
        sentiment = -min(1.0, 0.25 * negative_hits + (0.1 if exclamations >= 2 else 0.0))
        return Indicators(
            urgency=self._hits(self._urgency, stripped) > 0,
            credential_request=self._hits(self._credential, stripped) > 0,
            impersonation=self._hits(self._impersonation, stripped) > 0,
            financial_request=self._hits(self._financial, stripped) > 0,
            sentiment_score=round(sentiment, 3),
        )
