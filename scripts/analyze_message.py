#!/usr/bin/env python3
"""
Score a single forwarded message from the command line.

Indicators come from the regex fallback extractor, so the output reflects
what the engine returns when the reasoning collaborator is unavailable.
"""

from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path

from dotenv import load_dotenv

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT / "src") not in sys.path:
    sys.path.insert(0, str(ROOT / "src"))

from scamguard import (  # noqa: E402
    AnalysisRequest,
    HeuristicIndicatorExtractor,
    RiskEngine,
    TextContent,
    configure_logging,
    extract_urls,
    get_settings,
)


async def run(args: argparse.Namespace) -> int:
    settings = get_settings()
    configure_logging(settings)
    engine = RiskEngine.from_settings(settings)

    indicators = HeuristicIndicatorExtractor().extract(args.text)
    request = AnalysisRequest(
        content=TextContent(text=args.text),
        indicators=indicators,
        urls=extract_urls(args.text),
        district=args.district,
        language=args.language,
    )
    output = await engine.analyze(request)
    if args.json:
        print(output.model_dump_json(indent=2))
        return 0

    print(f"{output.classification}: {output.scam_probability_score:.1f}/100")
    for reason in output.reasons:
        print(f" - {reason}")
    print()
    print(output.alert.title)
    print(output.alert.message)
    return 0


def main() -> int:
    load_dotenv()
    parser = argparse.ArgumentParser(description="Score a forwarded message for scam probability.")
    parser.add_argument("text", help="Normalized message text")
    parser.add_argument("--district", default=None, help="Recipient district for local context")
    parser.add_argument("--language", default="en", help="Alert language (en, hi, ta)")
    parser.add_argument("--json", action="store_true", help="Print the full analysis as JSON")
    args = parser.parse_args()
    return asyncio.run(run(args))


if __name__ == "__main__":
    raise SystemExit(main())
