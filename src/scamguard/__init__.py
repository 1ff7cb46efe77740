"""
ScamGuard risk engine: scam-probability scoring for forwarded messages with
district-level context and localized alerts.
"""

from .alerts import AlertFormatter
from .config import Settings, configure_logging, get_settings
from .domain_trust import DomainTrustAnalyzer, HttpDomainIntelClient, ShortenerResolver
from .engine import RiskEngine
from .errors import (
    DeadlineExceededError,
    DegradedServiceError,
    DependencyError,
    EngineError,
    ScamGuardError,
    ValidationError,
)
from .indicators import HeuristicIndicatorExtractor, extract_urls
from .models import (
    AnalysisOutput,
    AnalysisRequest,
    ImageDerivedText,
    Indicators,
    TextContent,
    VoiceDerivedText,
)
from .pattern_store import InMemoryPatternStore, PatternStore, fingerprint
from .regional_truth import RegionalTruthEngine
from .resilience import BreakerRegistry, CircuitBreaker, ResilientCaller, RetryPolicy, with_retry
from .scoring import ScoringEngine, classify

__all__ = [
    "AlertFormatter",
    "AnalysisOutput",
    "AnalysisRequest",
    "BreakerRegistry",
    "CircuitBreaker",
    "DeadlineExceededError",
    "DegradedServiceError",
    "DependencyError",
    "DomainTrustAnalyzer",
    "EngineError",
    "HeuristicIndicatorExtractor",
    "HttpDomainIntelClient",
    "ImageDerivedText",
    "Indicators",
    "InMemoryPatternStore",
    "PatternStore",
    "RegionalTruthEngine",
    "ResilientCaller",
    "RetryPolicy",
    "RiskEngine",
    "ScamGuardError",
    "ScoringEngine",
    "Settings",
    "ShortenerResolver",
    "TextContent",
    "ValidationError",
    "VoiceDerivedText",
    "classify",
    "configure_logging",
    "extract_urls",
    "fingerprint",
    "get_settings",
    "with_retry",
]
