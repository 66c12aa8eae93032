# ensoul/settings.py
import logging
import os
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any, Dict

import commentjson
from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger("ensoul_backend")

# --- Configuration ---
ENV = os.getenv("ENV", "development")
PROJECT_ID = os.getenv("GOOGLE_CLOUD_PROJECT", "your-project-id")
REGION = os.getenv("GOOGLE_CLOUD_REGION", "us-central1")

DATABASE_URL        = os.getenv("DATABASE_URL", "")
DB_HOST             = os.environ.get("DB_HOST", "localhost")
DB_PORT             = int(os.environ.get("DB_PORT", "5432"))
DB_NAME             = os.environ.get("DB_NAME", "ensoul")
DB_USER             = os.environ.get("DB_USER", "ensoul")
DB_PASSWORD         = os.environ.get("DB_PASSWORD")
DB_SECRET_ID        = os.environ.get("DB_SECRET_ID")

LLM_MODEL = os.getenv("LLM_MODEL", "")
LLM_TIMEOUT = float(os.getenv("LLM_TIMEOUT", "60"))

BSC_RPC_URL = os.getenv("BSC_RPC_URL", "https://bsc-dataseed.binance.org/")
IDENTITY_REGISTRY_ADDR = os.getenv("IDENTITY_REGISTRY_ADDR", "0x8004A169FB4a3325136EB29fA0ceB6D2e539a432")
CHAIN_TIMEOUT = float(os.getenv("CHAIN_TIMEOUT", "30"))

OPERATOR_KEY = os.getenv("OPERATOR_KEY", "").strip()

# "inline": review right after submission, "queue": leave it to worker_main.py
CURATION_MODE = os.getenv("CURATION_MODE", "inline")

ENSOUL_TUNING_PATH = os.getenv("ENSOUL_TUNING_PATH", "ensoul_tuning.jsonc")


def is_production() -> bool:
    return ENV in ("production", "prod")


@dataclass(frozen=True)
class Tuning:
    """
    Thresholds and limits of the fragment lifecycle.
    Defaults here; ensoul_tuning.jsonc may override any subset of them.
    """
    min_batch_size: int = 3
    max_batch_size: int = 6
    min_content_length: int = 50
    max_content_length: int = 5000

    batch_cooldown_seconds: int = 300
    max_souls_per_wallet: int = 3

    max_review_attempts: int = 5
    review_backoff_seconds: int = 30
    review_lease_seconds: int = 300
    judge_retries: int = 2
    existing_fragments_context: int = 20
    reward_per_accept: float = 0.0

    growing_threshold: int = 1
    mature_threshold: int = 50
    evolving_condensations: int = 3

    condensation_threshold: int = 10
    condensation_max_attempts: int = 3
    condensation_evidence_weight: float = 5.0

    reconcile_interval_seconds: int = 120
    session_ttl_seconds: int = 7 * 24 * 3600
    login_message_max_age_seconds: int = 600

    chat_guest_max_rounds: int = 5
    chat_history_window: int = 20
    task_score_threshold: int = 30

    def with_overrides(self, **kwargs) -> "Tuning":
        return replace(self, **kwargs)


def load_tuning(path: str | None = None) -> Tuning:
    """
    Load the tuning file (JSON with comments) on top of the defaults.
    A missing file means defaults; unknown keys fail fast.
    """
    cfg_path = Path(path or ENSOUL_TUNING_PATH)
    if not cfg_path.exists():
        logger.info(f"[config] Tuning file '{cfg_path}' not found, using defaults")
        return Tuning()

    with cfg_path.open("r", encoding="utf-8") as f:
        data: Dict[str, Any] = commentjson.load(f)

    if not isinstance(data, dict):
        raise ValueError(f"Tuning file '{cfg_path}' must contain a JSON object")

    known = {f.name for f in fields(Tuning)}
    unknown = sorted(set(data) - known)
    if unknown:
        raise ValueError(f"Tuning file '{cfg_path}' has unknown keys: {unknown}")

    return Tuning(**data)
