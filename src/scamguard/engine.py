"""
Risk engine: joins URL trust and regional truth stages under a request
deadline, scores the result and formats the localized alert.
"""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import timedelta
from typing import Any, Awaitable, Callable

from .alerts import AlertFormatter
from .config import Settings, get_settings
from .domain_trust import (
    CONSERVATIVE_TRUST,
    DomainIntelProvider,
    DomainTrustAnalyzer,
    DomainTrustStore,
    HttpDomainIntelClient,
    RedisDomainTrustStore,
)
from .errors import DeadlineExceededError, EngineError, ValidationError, log_failure, request_context
from .models import AnalysisOutput, AnalysisRequest, LocalContext, TruthVerificationResult, UrlFact
from .pattern_store import InMemoryPatternStore, PatternStore, fingerprint
from .regional_truth import RegionalTruthEngine
from .resilience import BreakerRegistry, Deadline, ResilientCaller, RetryPolicy, current_deadline
from .scoring import ScoringEngine

logger = logging.getLogger(__name__)

URL_STAGE = "url-trust"
TRUTH_STAGE = "regional-truth"


class RiskEngine:
    def __init__(
        self,
        domain_analyzer: DomainTrustAnalyzer,
        truth_engine: RegionalTruthEngine,
        scoring: ScoringEngine | None = None,
        formatter: AlertFormatter | None = None,
        *,
        settings: Settings | None = None,
        caller: ResilientCaller | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._settings = settings or get_settings()
        self._domains = domain_analyzer
        self._truth = truth_engine
        self._scoring = scoring or ScoringEngine()
        self._formatter = formatter or AlertFormatter(default_language=self._settings.default_language)
        self.caller = caller or ResilientCaller.from_settings(self._settings)
        self._clock = clock

    @classmethod
    def from_settings(
        cls,
        settings: Settings | None = None,
        *,
        pattern_store: PatternStore | None = None,
        trust_store: DomainTrustStore | None = None,
        intel: DomainIntelProvider | None = None,
        registry: BreakerRegistry | None = None,
    ) -> "RiskEngine":
        settings = settings or get_settings()
        caller = ResilientCaller(
            registry or BreakerRegistry.from_settings(settings),
            RetryPolicy.from_settings(settings),
        )
        store = pattern_store or InMemoryPatternStore(expiry=timedelta(days=settings.pattern_expiry_days))
        if trust_store is None and settings.domain_trust_redis_url:
            trust_store = RedisDomainTrustStore.from_url(settings.domain_trust_redis_url)
        analyzer = DomainTrustAnalyzer(
            intel or HttpDomainIntelClient(settings),
            store=trust_store,
            caller=caller,
            settings=settings,
        )
        truth = RegionalTruthEngine(store, caller=caller, settings=settings)
        return cls(analyzer, truth, settings=settings, caller=caller)

    async def analyze(self, request: AnalysisRequest) -> AnalysisOutput:
        text = request.content.text.strip()
        if not text:
            raise ValidationError("content text is empty")
        token = request_context.set(
            {"request_id": request.request_id, "district": request.district or "-", "content": request.content.kind}
        )
        try:
            return await self._analyze(request, text)
        finally:
            request_context.reset(token)

    def _deadline_for(self, request: AnalysisRequest) -> Deadline:
        budget = self._settings.text_deadline if request.content.kind == "text" else self._settings.media_deadline
        return Deadline(budget, clock=self._clock)

    async def _analyze(self, request: AnalysisRequest, text: str) -> AnalysisOutput:
        started = self._clock()
        deadline = self._deadline_for(request)
        pattern_hash = request.pattern_hash or fingerprint(text)
        known = {fact.url for fact in request.url_facts}
        urls = [url for url in dict.fromkeys(request.urls) if url not in known]

        stages: dict[str, asyncio.Task[Any]] = {}
        # stage tasks copy the current context, so retries inside them see this budget
        deadline_token = current_deadline.set(deadline)
        try:
            if urls:
                stages[URL_STAGE] = asyncio.create_task(
                    self._run_stage(URL_STAGE, deadline, lambda: self._domains.analyze_many(urls))
                )
            stages[TRUTH_STAGE] = asyncio.create_task(
                self._run_stage(
                    TRUTH_STAGE,
                    deadline,
                    lambda: self._truth.verify_claim(pattern_hash, request.district, request.language),
                )
            )
        finally:
            current_deadline.reset(deadline_token)

        _, pending = await asyncio.wait(stages.values(), timeout=deadline.remaining())
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

        timed_out: list[str] = []
        failed: list[str] = []
        results: dict[str, Any] = {}
        for name, task in stages.items():
            if task in pending:
                timed_out.append(name)
                log_failure("engine", DeadlineExceededError(name), stage=name, budget=deadline.budget)
                continue
            exc = task.exception()
            if isinstance(exc, TimeoutError):
                timed_out.append(name)
                log_failure("engine", exc, stage=name, budget=deadline.budget)
            elif exc is not None:
                failed.append(name)
                log_failure("engine", exc, stage=name)
            else:
                results[name] = task.result()

        if request.indicators is None and not request.url_facts and not results and failed and not timed_out:
            raise EngineError(f"no stage produced a signal (failed: {', '.join(failed)})")

        url_facts = list(request.url_facts)
        if URL_STAGE in results:
            url_facts.extend(results[URL_STAGE])
        elif URL_STAGE in failed:
            url_facts.extend(self._conservative_facts(urls))
        truth: TruthVerificationResult | None = results.get(TRUTH_STAGE)

        degraded = bool(failed) or any(fact.degraded for fact in url_facts) or bool(truth and truth.degraded)
        breakdown = self._scoring.calculate_score(request.indicators, truth, url_facts)
        local_context = LocalContext.from_truth(truth)

        reasons = list(breakdown.reasons)
        if timed_out:
            reasons.append(f"Analysis timed out before {', '.join(timed_out)} finished; the result is partial")
        if degraded:
            reasons.append("Some checks ran in degraded mode; conservative defaults were used")

        alert = self._formatter.generate_alert(
            breakdown.score,
            breakdown.classification,
            breakdown.reasons,
            request.language,
            local_context,
        )
        elapsed_ms = round((self._clock() - started) * 1000, 2)
        logger.info(
            "Request %s scored %.2f (%s) in %.0fms partial=%s degraded=%s",
            request.request_id,
            breakdown.score,
            breakdown.classification,
            elapsed_ms,
            bool(timed_out),
            degraded,
        )
        return AnalysisOutput(
            scam_probability_score=breakdown.score,
            classification=breakdown.classification,
            reasons=reasons,
            local_context=local_context,
            alert=alert,
            processing_time_ms=elapsed_ms,
            partial=bool(timed_out),
            degraded=degraded,
            url_facts=url_facts,
            components=breakdown.components,
        )

    @staticmethod
    async def _run_stage(name: str, deadline: Deadline, factory: Callable[[], Awaitable[Any]]) -> Any:
        deadline.check(name)
        return await factory()

    @staticmethod
    def _conservative_facts(urls: list[str]) -> list[UrlFact]:
        return [
            UrlFact(url=url, domain="", trust_score=CONSERVATIVE_TRUST, flags=["lookup-failed"], degraded=True)
            for url in urls
        ]
