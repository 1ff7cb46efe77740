from __future__ import annotations

import logging
from typing import Any

from .data_loader import default_datasets
from .models import HIGH_SCAM_PROBABILITY, Alert, Classification, LocalContext

logger = logging.getLogger(__name__)

TOP_REASONS = 3


class AlertFormatter:
    """Localized warning text keyed by (classification, language)."""

    def __init__(
        self,
        templates: dict[str, Any] | None = None,
        *,
        default_language: str = "en",
        top_reasons: int = TOP_REASONS,
    ) -> None:
        self._templates = templates if templates is not None else default_datasets().get("alert_templates", {})
        if default_language not in self._templates:
            raise ValueError(f"No alert templates for default language '{default_language}'")
        self.default_language = default_language
        self._top_reasons = top_reasons

    @property
    def languages(self) -> list[str]:
        return sorted(self._templates)

    def generate_alert(
        self,
        score: float,
        classification: Classification,
        reasons: list[str],
        language: str | None,
        local_context: LocalContext | None = None,
    ) -> Alert:
        lang = (language or "").split("-")[0].lower()
        reduced_confidence = lang not in self._templates
        if reduced_confidence:
            logger.info("No alert templates for language %r; falling back to %s", language, self.default_language)
            lang = self.default_language
        bundle = self._templates[lang]
        template = bundle["classifications"][classification]

        lines = [template["message"].format(score=round(score))]
        top = list(reasons[: self._top_reasons]) if classification == HIGH_SCAM_PROBABILITY else []
        if top:
            lines.append(bundle["reasons_header"])
            lines.extend(f"- {reason}" for reason in top)

        district_notice = self._district_notice(bundle, local_context)
        if district_notice:
            lines.append(district_notice)
        if classification == HIGH_SCAM_PROBABILITY:
            lines.append(bundle["help"])
        if reduced_confidence:
            lines.append(bundle["reduced_confidence"])

        return Alert(
            language=lang,
            classification=classification,
            title=template["title"],
            message="\n".join(lines),
            reasons=top,
            district_notice=district_notice,
            reduced_confidence=reduced_confidence,
        )

    @staticmethod
    def _district_notice(bundle: dict[str, Any], context: LocalContext | None) -> str | None:
        if context is None:
            return None
        district = context.district or ""
        parts = []
        if context.local_flags > 0:
            parts.append(bundle["district_reports"].format(local_flags=context.local_flags, district=district))
        if context.trending_locally:
            parts.append(bundle["district_trending"].format(district=district))
        if context.cyber_cell_status:
            status = bundle["statuses"].get(context.cyber_cell_status, context.cyber_cell_status)
            if context.official_warnings:
                for warning in context.official_warnings:
                    parts.append(bundle["official_warning"].format(status=status, warning=warning))
            else:
                parts.append(bundle["official_status"].format(status=status))
        elif context.official_warnings:
            parts.extend(context.official_warnings)
        return " ".join(parts) or None
