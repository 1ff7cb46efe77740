"""
Dataset loader for the bundled JSON reference data (alert templates,
high-value legitimate domains, URL shorteners).
"""

from __future__ import annotations

import json
import logging
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, Iterable, List

logger = logging.getLogger(__name__)

DEFAULT_DATA_DIR = Path(__file__).resolve().parent / "data"


def load_json(path: Path) -> Any:
    """Load a JSON file with UTF-8 encoding."""
    with path.open("r", encoding="utf-8") as f:
        return json.load(f)


def _dedup_list(values: Iterable[Any]) -> List[Any]:
    seen = set()
    output: List[Any] = []
    for val in values:
        key = json.dumps(val, sort_keys=True) if isinstance(val, (dict, list)) else val
        if key in seen:
            continue
        seen.add(key)
        output.append(val)
    return output


def _normalize_domains(values: Iterable[Any]) -> List[str]:
    return _dedup_list(str(v).strip().lower() for v in values if str(v).strip())


def load_datasets(data_dir: str | Path | None = None) -> Dict[str, Any]:
    """
    Load every ``*.json`` file under ``data_dir`` keyed by file stem.
    Domain lists are lower-cased and de-duplicated.
    """
    base = Path(data_dir) if data_dir else DEFAULT_DATA_DIR
    datasets: Dict[str, Any] = {}
    if not base.exists():
        logger.warning("Data dir %s does not exist; using empty datasets", base)
        return datasets

    for path in sorted(base.glob("*.json")):
        try:
            datasets[path.stem] = load_json(path)
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("Skip dataset %s: %s", path.name, exc)

    for key in ("legit_domains", "url_shorteners"):
        if isinstance(datasets.get(key), list):
            datasets[key] = _normalize_domains(datasets[key])
    logger.debug("Loaded datasets from %s: %s", base, ", ".join(sorted(datasets)))
    return datasets


@lru_cache(1)
def default_datasets() -> Dict[str, Any]:
    return load_datasets(DEFAULT_DATA_DIR)
