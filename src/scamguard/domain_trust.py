from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Protocol
from urllib.parse import urljoin, urlparse

import httpx
import tldextract

from .config import Settings, get_settings
from .data_loader import default_datasets
from .errors import (
    DegradedServiceError,
    DependencyError,
    classify_http_error,
    log_failure,
)
from .models import DomainFacts, DomainTrustRecord, ReputationTier, UrlFact, utcnow
from .resilience import DependencyKind, ResilientCaller

logger = logging.getLogger(__name__)

CONSERVATIVE_TRUST = 0.25
UNKNOWN_AGE_SCORE = 0.3

REPUTATION_SCORES: dict[str, float] = {
    "trusted": 1.0,
    "unknown": 0.5,
    "suspicious": 0.2,
    "malicious": 0.0,
}
VALID_TIERS = frozenset(REPUTATION_SCORES)

# offline extraction: never fetch the public suffix list at runtime
_extract = tldextract.TLDExtract(suffix_list_urls=())


def registered_domain(url_or_host: str) -> str:
    """Return the registrable domain (``example.co.in``) for a URL or hostname."""
    if not url_or_host:
        return ""
    candidate = url_or_host.strip()
    extracted = _extract(candidate)
    if extracted.domain and extracted.suffix:
        return f"{extracted.domain}.{extracted.suffix}".lower()
    parsed = urlparse(candidate if "://" in candidate else f"http://{candidate}")
    return (parsed.hostname or "").lower()


def levenshtein(s1: str, s2: str) -> int:
    if len(s1) < len(s2):
        return levenshtein(s2, s1)
    if not s2:
        return len(s1)
    previous_row = list(range(len(s2) + 1))
    for i, c1 in enumerate(s1):
        current_row = [i + 1]
        for j, c2 in enumerate(s2):
            insertions = previous_row[j + 1] + 1
            deletions = current_row[j] + 1
            substitutions = previous_row[j] + (c1 != c2)
            current_row.append(min(insertions, deletions, substitutions))
        previous_row = current_row
    return previous_row[-1]


def typosquat_distance(domain: str, legit_domains: list[str]) -> tuple[int | None, str | None]:
    """Closest high-value domain and its edit distance. ``(0, domain)`` for an exact match."""
    domain = domain.lower()
    best: tuple[int | None, str | None] = (None, None)
    for legit in legit_domains:
        distance = levenshtein(domain, legit)
        if distance == 0:
            return 0, legit
        if best[0] is None or distance < best[0]:
            best = (distance, legit)
    return best


def is_typosquat(distance: int | None, target: str | None, max_distance: int = 2) -> bool:
    if distance is None or target is None or distance == 0:
        return False
    # short names sit close to many unrelated domains
    allowed = 1 if len(target) <= 8 else max_distance
    return distance <= allowed


def compute_trust_score(
    *,
    age_days: int | None,
    reputation_tier: str,
    ssl_valid: bool | None,
    typosquat: bool,
    new_domain_days: int = 30,
    chain_unresolved: bool = False,
) -> float:
    age_score = UNKNOWN_AGE_SCORE if age_days is None else min(1.0, max(0, age_days) / 365)
    reputation = REPUTATION_SCORES.get(reputation_tier, REPUTATION_SCORES["unknown"])
    ssl_score = 1.0 if ssl_valid else 0.0
    score = 0.30 * age_score + 0.40 * reputation + 0.10 * ssl_score + 0.20 * (0.0 if typosquat else 1.0)
    if age_days is not None and age_days < new_domain_days:
        score = min(score, 0.30)
    if typosquat:
        score = min(score, 0.25)
    if chain_unresolved:
        score = min(score, 0.20)
    if reputation_tier == "malicious":
        score = min(score, 0.05)
    return round(max(0.0, min(1.0, score)), 3)


class DomainIntelProvider(Protocol):
    async def lookup(self, domain: str) -> DomainFacts:
        ...


class HttpDomainIntelClient:
    """Domain age / reputation / SSL facts from a JSON lookup service."""

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._endpoint = self._settings.domain_intel_url
        self._api_key = self._settings.domain_intel_api_key
        self._timeout = self._settings.http_timeout
        self._transport = transport

    async def lookup(self, domain: str) -> DomainFacts:
        if not self._endpoint:
            return DomainFacts()
        headers = {"Authorization": f"Bearer {self._api_key}"} if self._api_key else {}
        async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
            try:
                response = await client.get(self._endpoint, params={"domain": domain}, headers=headers)
                response.raise_for_status()
                payload = response.json()
            except (httpx.HTTPError, ValueError) as exc:
                raise classify_http_error(DependencyKind.DOMAIN_INTEL.value, exc) from exc
        if not isinstance(payload, dict):
            raise DependencyError(DependencyKind.DOMAIN_INTEL.value, "malformed payload", retryable=False)
        tier = str(payload.get("reputation", "unknown")).lower()
        age = payload.get("age_days")
        ssl_valid = payload.get("ssl_valid")
        return DomainFacts(
            age_days=int(age) if isinstance(age, (int, float)) else None,
            reputation_tier=tier if tier in VALID_TIERS else "unknown",
            ssl_valid=bool(ssl_valid) if ssl_valid is not None else None,
        )


@dataclass
class Resolution:
    final_url: str
    hops: int = 0
    flags: list[str] = field(default_factory=list)

    @property
    def completed(self) -> bool:
        return not ({"redirect-loop", "hop-limit-exceeded"} & set(self.flags))


class ShortenerResolver:
    """Follows shortener redirects one hop at a time with a fixed hop cap."""

    def __init__(
        self,
        shorteners: list[str],
        *,
        caller: ResilientCaller | None = None,
        max_hops: int = 5,
        timeout: float = 4.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._shorteners = {s.lower() for s in shorteners}
        self._caller = caller or ResilientCaller()
        self._max_hops = max_hops
        self._timeout = timeout
        self._transport = transport

    def is_shortener(self, domain: str) -> bool:
        return domain.lower() in self._shorteners

    async def resolve(self, url: str) -> Resolution:
        seen = {url}
        current = url
        hops = 0
        async with httpx.AsyncClient(
            timeout=self._timeout,
            follow_redirects=False,
            transport=self._transport,
        ) as client:
            while True:
                target = current
                location = await self._caller.call(
                    DependencyKind.URL_RESOLVER,
                    lambda: self._next_location(client, target),
                )
                if location is None:
                    return Resolution(final_url=current, hops=hops)
                hops += 1
                if location in seen:
                    logger.info("Redirect loop detected for %s at %s", url, location)
                    return Resolution(final_url=location, hops=hops, flags=["redirect-loop"])
                if hops > self._max_hops:
                    logger.info("Redirect chain for %s exceeded %d hops", url, self._max_hops)
                    return Resolution(final_url=location, hops=hops, flags=["hop-limit-exceeded"])
                seen.add(location)
                current = location

    @staticmethod
    async def _next_location(client: httpx.AsyncClient, url: str) -> str | None:
        try:
            response = await client.head(url)
            if response.status_code >= 500:
                response.raise_for_status()
        except httpx.HTTPError as exc:
            raise classify_http_error(DependencyKind.URL_RESOLVER.value, exc) from exc
        location = response.headers.get("location")
        if response.is_redirect and location:
            return urljoin(url, location)
        return None


class DomainTrustStore(ABC):
    @abstractmethod
    async def get(self, domain: str) -> DomainTrustRecord | None:
        ...

    @abstractmethod
    async def put(self, record: DomainTrustRecord) -> None:
        ...


class InMemoryDomainTrustStore(DomainTrustStore):
    """Process-local trust records; last write wins.

    Expired records are dropped when read, and every write purges all expired
    records, so domains seen only once do not accumulate.
    """

    def __init__(self) -> None:
        self._records: dict[str, DomainTrustRecord] = {}

    def __len__(self) -> int:
        return len(self._records)

    async def get(self, domain: str) -> DomainTrustRecord | None:
        record = self._records.get(domain.lower())
        if record is not None and record.is_stale():
            self._records.pop(domain.lower(), None)
            return None
        return record

    async def put(self, record: DomainTrustRecord) -> None:
        self._purge_stale()
        self._records[record.domain.lower()] = record

    def _purge_stale(self) -> None:
        now = utcnow()
        stale = [domain for domain, record in self._records.items() if record.is_stale(now)]
        for domain in stale:
            del self._records[domain]
        if stale:
            logger.debug("Purged %d expired trust record(s)", len(stale))


class RedisDomainTrustStore(DomainTrustStore):
    """Trust records shared across processes through Redis with per-key TTL."""

    def __init__(self, client, *, prefix: str = "scamguard:domain:") -> None:
        self._client = client
        self._prefix = prefix

    @classmethod
    def from_url(cls, url: str, **kwargs) -> "RedisDomainTrustStore":
        import redis.asyncio as redis

        return cls(redis.from_url(url, decode_responses=True, socket_connect_timeout=5), **kwargs)

    def _key(self, domain: str) -> str:
        return f"{self._prefix}{domain.lower()}"

    async def get(self, domain: str) -> DomainTrustRecord | None:
        data = await self._client.get(self._key(domain))
        if not data:
            return None
        return DomainTrustRecord.model_validate_json(data)

    async def put(self, record: DomainTrustRecord) -> None:
        await self._client.set(self._key(record.domain), record.model_dump_json(), ex=max(1, record.ttl))

    async def close(self) -> None:
        await self._client.close()


class DomainTrustAnalyzer:
    """Turns an extracted URL into a scored ``UrlFact``.

    Lookups for the same domain are de-duplicated: while one lookup is in
    flight, concurrent callers await its result instead of issuing their own.
    """

    def __init__(
        self,
        intel: DomainIntelProvider,
        *,
        store: DomainTrustStore | None = None,
        resolver: ShortenerResolver | None = None,
        caller: ResilientCaller | None = None,
        settings: Settings | None = None,
        legit_domains: list[str] | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._intel = intel
        self._store = store or InMemoryDomainTrustStore()
        self._caller = caller or ResilientCaller.from_settings(self._settings)
        datasets = default_datasets()
        self._legit_domains = legit_domains if legit_domains is not None else datasets.get("legit_domains", [])
        self._resolver = resolver or ShortenerResolver(
            datasets.get("url_shorteners", []),
            caller=self._caller,
            max_hops=self._settings.shortener_max_hops,
            timeout=self._settings.http_timeout,
        )
        self._trusted = {d.lower() for d in self._settings.trusted_domains} | set(self._legit_domains)
        self._suspicious = {d.lower() for d in self._settings.suspicious_domains}
        self._inflight: dict[str, asyncio.Task[DomainTrustRecord]] = {}

    async def analyze_many(self, urls: list[str]) -> list[UrlFact]:
        return list(await asyncio.gather(*(self.analyze(url) for url in urls)))

    async def analyze(self, url: str) -> UrlFact:
        url = url.strip()
        if "://" not in url:
            url = f"http://{url}"
        domain = registered_domain(url)
        if not domain:
            return UrlFact(url=url, domain="", trust_score=CONSERVATIVE_TRUST, flags=["invalid-url"])

        flags: list[str] = []
        is_shortener = self._resolver.is_shortener(domain)
        resolved: str | None = None
        hops = 0
        if is_shortener:
            flags.append("shortener")
            try:
                resolution = await self._resolver.resolve(url)
            except (DependencyError, DegradedServiceError) as exc:
                log_failure("domain_trust", exc, url=url, step="resolve")
                return self._conservative_fact(url, domain, flags + ["resolution-failed"], is_shortener=True)
            hops = resolution.hops
            flags.extend(resolution.flags)
            if not resolution.completed:
                return UrlFact(
                    url=url,
                    domain=domain,
                    is_shortener=True,
                    hop_count=hops,
                    trust_score=compute_trust_score(
                        age_days=None,
                        reputation_tier="suspicious",
                        ssl_valid=None,
                        typosquat=False,
                        chain_unresolved=True,
                    ),
                    flags=flags,
                )
            resolved = resolution.final_url
            domain = registered_domain(resolved) or domain

        try:
            record = await self._record_for(domain)
        except (DependencyError, DegradedServiceError) as exc:
            log_failure("domain_trust", exc, url=url, domain=domain, step="lookup")
            return self._conservative_fact(
                url,
                domain,
                flags,
                is_shortener=is_shortener,
                resolved=resolved,
                hops=hops,
            )

        return UrlFact(
            url=url,
            domain=domain,
            age_days=record.age_days,
            reputation_tier=record.reputation_tier,
            is_shortener=is_shortener,
            resolved_destination=resolved,
            hop_count=hops,
            typosquat_distance=record.typosquat_distance,
            typosquat_target=record.typosquat_target,
            ssl_valid=record.ssl_valid,
            trust_score=record.trust_score,
            flags=flags + [f for f in record.flags if f not in flags],
        )

    async def _record_for(self, domain: str) -> DomainTrustRecord:
        cached = await self._cached(domain)
        if cached is not None and not cached.is_stale():
            return cached
        task = self._inflight.get(domain)
        if task is None:
            task = asyncio.create_task(self._lookup_and_store(domain))
            self._inflight[domain] = task
            task.add_done_callback(lambda t, d=domain: self._finish_inflight(d, t))
        return await asyncio.shield(task)

    def _finish_inflight(self, domain: str, task: asyncio.Task) -> None:
        self._inflight.pop(domain, None)
        if not task.cancelled():
            # mark the exception retrieved; waiters re-raise it themselves
            task.exception()

    async def _cached(self, domain: str) -> DomainTrustRecord | None:
        try:
            return await self._caller.call(DependencyKind.DOMAIN_TRUST_STORE, lambda: self._store.get(domain))
        except (DependencyError, DegradedServiceError):
            return None
        except Exception as exc:
            log_failure("domain_trust", exc, domain=domain, step="cache-get")
            return None

    async def _lookup_and_store(self, domain: str) -> DomainTrustRecord:
        facts = await self._caller.call(DependencyKind.DOMAIN_INTEL, lambda: self._intel.lookup(domain))
        distance, target = typosquat_distance(domain, self._legit_domains)
        squat = is_typosquat(distance, target, self._settings.typosquat_max_distance)
        tier = self._effective_tier(domain, facts.reputation_tier)
        flags = self._fact_flags(facts.age_days, tier, facts.ssl_valid, squat)
        record = DomainTrustRecord(
            domain=domain,
            trust_score=compute_trust_score(
                age_days=facts.age_days,
                reputation_tier=tier,
                ssl_valid=facts.ssl_valid,
                typosquat=squat,
                new_domain_days=self._settings.new_domain_days,
            ),
            reputation_tier=tier,
            last_checked=utcnow(),
            ttl=self._settings.domain_trust_ttl,
            age_days=facts.age_days,
            ssl_valid=facts.ssl_valid,
            typosquat_distance=distance,
            typosquat_target=target if squat else None,
            flags=flags,
        )
        try:
            await self._caller.call(DependencyKind.DOMAIN_TRUST_STORE, lambda: self._store.put(record))
        except (DependencyError, DegradedServiceError):
            pass
        except Exception as exc:
            log_failure("domain_trust", exc, domain=domain, step="cache-put")
        logger.debug("Trust for %s: %.3f (%s)", domain, record.trust_score, ",".join(flags) or "clean")
        return record

    def _effective_tier(self, domain: str, tier: ReputationTier) -> ReputationTier:
        if tier == "malicious":
            return tier
        if domain in self._suspicious:
            return "suspicious"
        if domain in self._trusted:
            return "trusted"
        return tier

    def _fact_flags(self, age_days: int | None, tier: str, ssl_valid: bool | None, squat: bool) -> list[str]:
        flags = []
        if age_days is not None and age_days < self._settings.new_domain_days:
            flags.append("new-domain")
        if tier in ("suspicious", "malicious"):
            flags.append(f"reputation-{tier}")
        if ssl_valid is False:
            flags.append("invalid-ssl")
        if squat:
            flags.append("typosquat")
        return flags

    def _conservative_fact(
        self,
        url: str,
        domain: str,
        flags: list[str],
        *,
        is_shortener: bool = False,
        resolved: str | None = None,
        hops: int = 0,
    ) -> UrlFact:
        distance, target = typosquat_distance(domain, self._legit_domains)
        squat = is_typosquat(distance, target, self._settings.typosquat_max_distance)
        extra = ["lookup-failed"] + (["typosquat"] if squat else [])
        return UrlFact(
            url=url,
            domain=domain,
            is_shortener=is_shortener,
            resolved_destination=resolved,
            hop_count=hops,
            typosquat_distance=distance,
            typosquat_target=target if squat else None,
            trust_score=CONSERVATIVE_TRUST,
            flags=flags + [f for f in extra if f not in flags],
            degraded=True,
        )
