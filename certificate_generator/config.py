"""Runtime configuration loaded from environment variables."""

from __future__ import annotations

import os
import tempfile
from typing import Sequence


def env_int(name: str, default: int, minimum: int = 1) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    return value if value >= minimum else default


def env_float(name: str, default: float, minimum: float = 0.0, maximum: float = float("inf")) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        value = float(raw)
    except ValueError:
        return default
    return value if minimum <= value <= maximum else default


def env_str(name: str, default: str) -> str:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip()


def env_choice(name: str, default: str, choices: Sequence[str]) -> str:
    value = env_str(name, default).lower()
    return value if value in choices else default


HOST = env_str("CERTGEN_HOST", "0.0.0.0")
PORT = env_int("CERTGEN_PORT", 5000, minimum=0)
LOG_LEVEL = env_str("CERTGEN_LOG_LEVEL", "INFO").upper()

DEFAULT_MAX_CONCURRENT_RENDERS = max(1, min(4, os.cpu_count() or 1))
MAX_CONCURRENT_RENDERS = env_int(
    "CERTGEN_MAX_CONCURRENT_RENDERS",
    DEFAULT_MAX_CONCURRENT_RENDERS,
    minimum=1,
)
RENDER_POOL_KIND = env_choice("CERTGEN_RENDER_POOL", "process", ("process", "thread"))
RENDER_TIMEOUT_MS = env_int("CERTGEN_RENDER_TIMEOUT_MS", 60000, minimum=100)
RENDER_BATCH_SIZE = env_int("CERTGEN_RENDER_BATCH_SIZE", MAX_CONCURRENT_RENDERS, minimum=1)

RESOURCE_FETCH_TIMEOUT_MS = env_int("CERTGEN_RESOURCE_FETCH_TIMEOUT_MS", 10000, minimum=100)
MAX_TEMPLATE_BYTES = env_int("CERTGEN_MAX_TEMPLATE_BYTES", 30 * 1024 * 1024, minimum=1024)

# Process-wide memory budget; the watermark is a fraction of the ceiling.
MEMORY_CEILING_MB = env_int("CERTGEN_MEMORY_CEILING_MB", 512, minimum=16)
MEMORY_HIGH_WATERMARK = env_float("CERTGEN_MEMORY_HIGH_WATERMARK", 0.85, minimum=0.1, maximum=1.0)
MEMORY_PAUSE_MS = env_int("CERTGEN_MEMORY_PAUSE_MS", 500, minimum=0)
MEMORY_MAX_PAUSES = env_int("CERTGEN_MEMORY_MAX_PAUSES", 10, minimum=0)

QUEUE_COOLDOWN_MS = env_int("CERTGEN_QUEUE_COOLDOWN_MS", 1000, minimum=0)
ARTIFACT_RETENTION_S = env_int("CERTGEN_ARTIFACT_RETENTION_S", 30 * 60, minimum=1)
ARTIFACT_DIR = env_str(
    "CERTGEN_ARTIFACT_DIR",
    os.path.join(tempfile.gettempdir(), "certificate-artifacts"),
)
HEARTBEAT_INTERVAL_MS = env_int("CERTGEN_HEARTBEAT_INTERVAL_MS", 3000, minimum=10)

MAX_BODY_BYTES = env_int("CERTGEN_MAX_BODY_BYTES", 30 * 1024 * 1024, minimum=1024)
MAX_ROWS = env_int("CERTGEN_MAX_ROWS", 10000, minimum=1)
LISTEN_BACKLOG = env_int("CERTGEN_LISTEN_BACKLOG", 512, minimum=1)

# Canvas used when a job has no template, in points (1 px == 1 pt).
FALLBACK_CANVAS_WIDTH = 600
FALLBACK_CANVAS_HEIGHT = 400
MAX_ENTRY_NAME_LENGTH = 100
