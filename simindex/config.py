"""
Process-wide defaults, overridable through environment variables.
"""

import os

DEFAULT_DB_PATH = "simindex_vectors.db"
DEFAULT_REBUILD_THRESHOLD = 100
DEFAULT_APPROXIMATION_FACTOR = 0.1


def env_str(name: str, default: str) -> str:
    return os.getenv(name, default).strip() or default


def env_int(name: str, default: int) -> int:
    try:
        return int(env_str(name, str(default)))
    except ValueError:
        return default


def env_float(name: str, default: float) -> float:
    try:
        return float(env_str(name, str(default)))
    except ValueError:
        return default


def db_path() -> str:
    return env_str("SIMINDEX_DB_PATH", DEFAULT_DB_PATH)


def rebuild_threshold() -> int:
    """Mutations accumulated before a built index is rebuilt automatically."""
    value = env_int("SIMINDEX_REBUILD_THRESHOLD", DEFAULT_REBUILD_THRESHOLD)
    return value if value > 0 else DEFAULT_REBUILD_THRESHOLD


def approximation_factor() -> float:
    value = env_float("SIMINDEX_APPROXIMATION_FACTOR", DEFAULT_APPROXIMATION_FACTOR)
    return value if 0 < value <= 1 else DEFAULT_APPROXIMATION_FACTOR


def log_level() -> str:
    return os.getenv("SIMINDEX_LOG_LEVEL", "").strip().upper()
