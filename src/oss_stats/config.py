from __future__ import annotations

import os
from datetime import date
from pathlib import Path

ROOT_DIR = Path(__file__).resolve().parents[2]


def _unquote_env_value(value: str) -> str:
    stripped = value.strip()
    if len(stripped) >= 2 and stripped[0] == stripped[-1] and stripped[0] in {"'", '"'}:
        return stripped[1:-1]
    return stripped


def _load_env_file(path: Path) -> None:
    if not path.exists():
        return
    for raw_line in path.read_text(encoding="utf-8").splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#"):
            continue
        if line.startswith("export "):
            line = line[len("export ") :].strip()
        if "=" not in line:
            continue
        key, raw_value = line.split("=", 1)
        key = key.strip()
        if not key or key in os.environ:
            continue
        os.environ[key] = _unquote_env_value(raw_value)


def _optional(name: str) -> str | None:
    return (os.getenv(name) or "").strip() or None


_load_env_file(ROOT_DIR / ".env")

NPM_ORG = (os.getenv("OSS_STATS_NPM_ORG") or "tanstack").strip() or "tanstack"

GITHUB_TOKEN = _optional("GITHUB_TOKEN")
ADMIN_TOKEN = _optional("OSS_STATS_ADMIN_TOKEN")

LANCEDB_API_KEY = (os.getenv("LANCEDB_API_KEY") or "").strip()
LANCEDB_HOST_OVERRIDE = (os.getenv("LANCEDB_HOST_OVERRIDE") or "").strip()
LANCEDB_REGION = (os.getenv("LANCEDB_REGION") or "us-east-1").strip() or "us-east-1"

REQUEST_TIMEOUT_SECONDS = int(os.getenv("OSS_STATS_TIMEOUT_SECONDS", "30"))
USER_AGENT = "oss-stats"

# npm ignores its own Retry-After header in practice (it is often "0").
RATE_LIMIT_WAIT_SECONDS = float(os.getenv("OSS_STATS_RATE_LIMIT_WAIT_SECONDS", "60"))

BATCH_CONCURRENCY = int(os.getenv("OSS_STATS_BATCH_CONCURRENCY", "8"))
BATCH_START_DELAY_SECONDS = float(
    os.getenv("OSS_STATS_BATCH_START_DELAY_SECONDS", "0.5")
)

# npm's range endpoint caps a query at 18 months.
CHUNK_DAYS = 500
NPM_FLOOR_DATE = date(2015, 1, 10)
BIN_SIZE_DAILY = "daily"

MUTABLE_CHUNK_TTL_HOURS = 6
PACKAGE_STATS_TTL_HOURS = 24
ORG_STATS_TTL_HOURS = 24
REPO_STATS_TTL_HOURS = 1
METADATA_RECHECK_DAYS = 7

SCRAPE_MAX_ATTEMPTS = 3
REPO_REFRESH_DELAY_SECONDS = 0.5
