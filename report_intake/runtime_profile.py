from __future__ import annotations

from collections.abc import Mapping
import os


def _as_bool(value: str) -> bool:
    return value.strip().lower() in {"1", "true", "yes", "on"}


def true_stack_required(environ: Mapping[str, str] | None = None) -> bool:
    """Real backends only: no silent fallback to in-memory queue or store."""
    env = os.environ if environ is None else environ
    return _as_bool(env.get("INTAKE_REQUIRE_TRUESTACK", "false"))


def env_int(env: Mapping[str, str], name: str, *, default: int, minimum: int = 0) -> int:
    raw = str(env.get(name, "")).strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    return max(minimum, value)


def env_float(env: Mapping[str, str], name: str, *, default: float) -> float:
    raw = str(env.get(name, "")).strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        return default
