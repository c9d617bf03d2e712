# classes/settings.py
from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Callable, Dict, List

import commentjson
from dotenv import load_dotenv

load_dotenv()

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

logging.basicConfig(
    level=getattr(logging, LOG_LEVEL, logging.INFO),
    format="%(asctime)s | %(levelname)s | %(name)s\n%(message)s\n"
)

logger = logging.getLogger("draftguard_backend")

_KNOWN_KEYS = (
    "RETRY_MAX_RETRIES",
    "RETRY_BASE_DELAY",
    "RETRY_MAX_DELAY",
    "RETRY_MAX_JITTER",
    "MAX_CONCURRENT_OPERATIONS",
    "OPERATION_TIMEOUT_SECONDS",
    "RETENTION_SECONDS",
    "CONTEXT_CONFIDENCE_THRESHOLD",
    "RESPONSE_CACHE_TTL_SECONDS",
    "CONTAMINATION_PATTERNS",
)


def load_resilience_config(path: str | None = None) -> Dict[str, Any]:
    """
    Load overrides from a JSON-with-comments file.
    No path configured means no overrides. A configured path that is missing,
    or a file with unknown top-level keys, fails fast.
    """
    path = path if path is not None else os.getenv("RESILIENCE_CONFIG_PATH")
    if not path:
        return {}

    cfg_path = Path(path)
    if not cfg_path.exists():
        raise FileNotFoundError(
            f"Resilience config file not found at '{cfg_path}'. "
        )

    with cfg_path.open("r", encoding="utf-8") as f:
        data = commentjson.load(f)

    if not isinstance(data, dict):
        raise ValueError("Resilience config must be a JSON object")
    unknown = [k for k in data if k not in _KNOWN_KEYS]
    if unknown:
        raise ValueError(f"Resilience config has unknown keys: {unknown}")

    patterns = data.get("CONTAMINATION_PATTERNS", {})
    if not isinstance(patterns, dict) or not all(isinstance(v, list) for v in patterns.values()):
        raise ValueError("CONTAMINATION_PATTERNS must map table names to lists of patterns")

    logger.info(f"[SETTINGS] Loaded resilience overrides from {cfg_path}: {sorted(data)}")
    return data


_CONFIG = load_resilience_config()


def _setting(name: str, default: Any, cast: Callable[[Any], Any]) -> Any:
    # env var > config file > default
    raw = os.getenv(name)
    if raw is not None and raw != "":
        return cast(raw)
    if name in _CONFIG:
        return cast(_CONFIG[name])
    return default


#! RETRY
RETRY_MAX_RETRIES: int = _setting("RETRY_MAX_RETRIES", 3, int)
RETRY_BASE_DELAY: float = _setting("RETRY_BASE_DELAY", 1.0, float)
RETRY_MAX_DELAY: float = _setting("RETRY_MAX_DELAY", 60.0, float)
RETRY_MAX_JITTER: float = _setting("RETRY_MAX_JITTER", 2.0, float)

#! OPERATIONS
MAX_CONCURRENT_OPERATIONS: int = _setting("MAX_CONCURRENT_OPERATIONS", 3, int)
OPERATION_TIMEOUT_SECONDS: float = _setting("OPERATION_TIMEOUT_SECONDS", 30.0, float)
RETENTION_SECONDS: Dict[str, float] = {
    "completed": 5 * 60.0,
    "failed": 10 * 60.0,
    "cancelled": 60.0,
}
RETENTION_SECONDS.update({k: float(v) for k, v in (_CONFIG.get("RETENTION_SECONDS") or {}).items()})

#! PROVENANCE
CONTEXT_CONFIDENCE_THRESHOLD: float = _setting("CONTEXT_CONFIDENCE_THRESHOLD", 0.7, float)
EXTRA_CONTAMINATION_PATTERNS: Dict[str, List[str]] = dict(_CONFIG.get("CONTAMINATION_PATTERNS") or {})

#! CACHE
RESPONSE_CACHE_TTL_SECONDS: float = _setting("RESPONSE_CACHE_TTL_SECONDS", 60 * 60.0, float)

#! LLM
PROJECT_ID = os.getenv("GOOGLE_CLOUD_PROJECT", "your-project-id")
REGION = os.getenv("GOOGLE_CLOUD_REGION", "us-central1")
LLM_MODEL = os.getenv("LLM_MODEL", "gpt-4o-mini")
LLM_TIMEOUT: float | None = float(os.getenv("LLM_TIMEOUT")) if os.getenv("LLM_TIMEOUT") else None

#! SERVER
PORT = os.getenv("PORT", "8080")
