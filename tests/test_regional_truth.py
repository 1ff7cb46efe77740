from datetime import timedelta

import pytest

from scamguard.errors import ValidationError
from scamguard.models import CyberCellReport, ScamPattern, utcnow
from scamguard.pattern_store import InMemoryPatternStore
from scamguard.regional_truth import RegionalTruthEngine, compute_local_weight


class FlakyPatternStore(InMemoryPatternStore):
    def __init__(self) -> None:
        super().__init__()
        self.fail = False

    async def get(self, pattern_hash, district):
        if self.fail:
            raise RuntimeError("pattern store unreachable")
        return await super().get(pattern_hash, district)


async def seed_kyc_pattern(store, *, district="Pune", reports=12, status="confirmed"):
    now = utcnow()
    await store.put(
        ScamPattern(
            pattern_hash="kyc-hash",
            district=district,
            scam_type="kyc_fraud",
            first_seen=now - timedelta(days=2),
            last_seen=now,
            report_count=reports,
        )
    )
    if status:
        store.add_cyber_cell_report(
            CyberCellReport(
                official_status=status,
                related_patterns={"kyc-hash", "kyc-hash-v2"},
                public_warning="Banks never ask for KYC updates over SMS links",
                district=district,
            )
        )


def test_local_weight_is_monotonic_in_each_signal():
    assert compute_local_weight(0, False, None) == 0.0
    flags = [compute_local_weight(n, False, None) for n in (0, 1, 5, 12, 50)]
    assert flags == sorted(flags)
    assert len(set(flags)) == len(flags)
    assert compute_local_weight(5, True, None) > compute_local_weight(5, False, None)
    assert (
        compute_local_weight(5, False, "confirmed")
        > compute_local_weight(5, False, "investigating")
        > compute_local_weight(5, False, "resolved")
        > compute_local_weight(5, False, None)
    )
    assert compute_local_weight(10_000, True, "confirmed") <= 1.0


@pytest.mark.asyncio
async def test_verify_claim_reports_trending_confirmed_pattern(settings, caller):
    store = InMemoryPatternStore()
    await seed_kyc_pattern(store)
    engine = RegionalTruthEngine(store, caller=caller, settings=settings)

    result = await engine.verify_claim("kyc-hash", "Pune", "hi")

    assert result.local_flags == 12
    assert result.trending_locally
    assert result.cyber_cell_status == "confirmed"
    assert result.related_patterns == ["kyc-hash", "kyc-hash-v2"]
    assert result.official_warnings == ["Banks never ask for KYC updates over SMS links"]
    assert result.local_weight == pytest.approx(0.782, abs=0.001)
    assert result.has_local_context
    assert not result.degraded


@pytest.mark.asyncio
async def test_other_district_sees_no_local_flags(settings, caller):
    store = InMemoryPatternStore()
    await seed_kyc_pattern(store, status=None)
    engine = RegionalTruthEngine(store, caller=caller, settings=settings)

    result = await engine.verify_claim("kyc-hash", "Madurai")

    assert result.local_flags == 0
    assert not result.trending_locally
    assert result.local_weight == 0.0
    assert not result.has_local_context


@pytest.mark.asyncio
async def test_steady_reports_are_not_trending(settings, caller):
    store = InMemoryPatternStore()
    now = utcnow()
    start = now - timedelta(days=80)
    await store.put(
        ScamPattern(pattern_hash="h", district="Pune", first_seen=start, last_seen=start, report_count=40)
    )
    await store.put(ScamPattern(pattern_hash="h", district="Pune", first_seen=start, last_seen=now, report_count=44))
    engine = RegionalTruthEngine(store, caller=caller, settings=settings)

    result = await engine.verify_claim("h", "Pune")

    assert result.local_flags == 44
    assert not result.trending_locally


@pytest.mark.asyncio
async def test_patterns_outside_lookback_window_are_ignored(settings, caller):
    store = InMemoryPatternStore()
    seen = utcnow() - timedelta(days=120)
    await store.put(ScamPattern(pattern_hash="h", district="Pune", first_seen=seen, last_seen=seen, report_count=9))
    engine = RegionalTruthEngine(store, caller=caller, settings=settings)

    result = await engine.verify_claim("h", "Pune")

    assert result.local_flags == 0


@pytest.mark.asyncio
async def test_missing_district_yields_empty_result(settings, caller):
    engine = RegionalTruthEngine(InMemoryPatternStore(), caller=caller, settings=settings)
    result = await engine.verify_claim("kyc-hash", None)
    assert result.local_weight == 0.0
    assert result.district is None


@pytest.mark.asyncio
async def test_empty_pattern_hash_is_rejected(settings, caller):
    engine = RegionalTruthEngine(InMemoryPatternStore(), caller=caller, settings=settings)
    with pytest.raises(ValidationError):
        await engine.verify_claim("", "Pune")


@pytest.mark.asyncio
async def test_store_outage_serves_cached_snapshot(settings, caller):
    store = FlakyPatternStore()
    await seed_kyc_pattern(store)
    engine = RegionalTruthEngine(store, caller=caller, settings=settings)
    fresh = await engine.verify_claim("kyc-hash", "Pune")

    store.fail = True
    cached = await engine.verify_claim("kyc-hash", "Pune")

    assert cached.degraded
    assert cached.local_flags == fresh.local_flags
    assert cached.local_weight == fresh.local_weight


@pytest.mark.asyncio
async def test_store_outage_without_cache_is_neutral(settings, caller):
    store = FlakyPatternStore()
    await seed_kyc_pattern(store)
    store.fail = True
    engine = RegionalTruthEngine(store, caller=caller, settings=settings)

    result = await engine.verify_claim("kyc-hash", "Pune")

    assert result.degraded
    assert result.local_flags == 0
    assert result.local_weight == 0.0
