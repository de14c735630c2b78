"""
Runtime configuration.

Values come from environment variables (optionally a .env file) and are read
at call time so tests and long-running processes pick up changes.
"""

import os

from dotenv import load_dotenv

load_dotenv()


def _float_env(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        parsed = float(raw)
    except ValueError:
        return default
    return parsed if parsed > 0 else default


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        parsed = int(raw)
    except ValueError:
        return default
    return parsed if parsed > 0 else default


def gemini_api_key() -> str | None:
    return os.getenv("GEMINI_API_KEY") or os.getenv("GOOGLE_GEMINI_API_KEY")


def supabase_url() -> str | None:
    return os.getenv("SUPABASE_URL")


def supabase_service_role_key() -> str | None:
    return os.getenv("SUPABASE_SERVICE_ROLE_KEY")


def run_ledger_backend() -> str:
    """
    Which run ledger implementation to use: "supabase" or "memory".

    Defaults to Supabase when SUPABASE_URL is configured.
    """
    raw = os.getenv("RUN_LEDGER_BACKEND", "").strip().lower()
    if raw in {"supabase", "memory"}:
        return raw
    return "supabase" if os.getenv("SUPABASE_URL") else "memory"


def media_fetch_timeout() -> float:
    return _float_env("MEDIA_FETCH_TIMEOUT_SECONDS", 120.0)


def image_fetch_timeout() -> float:
    return _float_env("IMAGE_FETCH_TIMEOUT_SECONDS", 60.0)


def node_run_output_max_bytes() -> int:
    return _int_env("NODE_RUN_OUTPUT_MAX_BYTES", 5_000_000)


def log_level() -> str:
    return os.getenv("LOG_LEVEL", "INFO").upper()


DEFAULT_TEMPERATURE = 0.7
