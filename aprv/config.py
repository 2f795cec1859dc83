"""Central configuration for aprv."""

import os
import re
from pathlib import Path

# ── Paths ──────────────────────────────────────────────────────────────
_PROJECT_ROOT = Path(__file__).resolve().parent.parent

# Load .env from project root
_env_path = _PROJECT_ROOT / ".env"
if _env_path.exists():
    for _line in _env_path.read_text().splitlines():
        _line = _line.strip()
        if _line and not _line.startswith("#") and "=" in _line:
            _k, _, _v = _line.partition("=")
            os.environ.setdefault(_k.strip(), _v.strip())


def _default_data_dir() -> Path:
    env = os.environ.get("APRV_DATA_DIR")
    if env:
        return Path(env)
    if (_PROJECT_ROOT / "pyproject.toml").exists():
        return _PROJECT_ROOT / "data"
    return Path.home() / ".aprv"


DATA_DIR = _default_data_dir()
DB_PATH = DATA_DIR / "reports.db"
LOG_PATH = DATA_DIR / "aprv.log"

# ── Report format ──────────────────────────────────────────────────────
STREAM_PREFIX = "com.apple.privacy.accounting.stream."
END_OF_INTERVAL = "intervalEnd"

MARKER_END_OF_SECTION = "<end-of-section>"
MARKER_METADATA = "<metadata>"

# Report files are identified by their stem: "App_Privacy_Report_v4_2021-09-25.ndjson"
FILENAME_RE = re.compile(r"^([A-Za-z0-9_-]+)\.(nd)?json$")

# ── Icons ──────────────────────────────────────────────────────────────
ITUNES_LOOKUP_URL = "https://itunes.apple.com/lookup"
ICON_FETCH_TIMEOUT = 15  # seconds
ICON_MAX_CONCURRENCY = 1  # one request at a time to the itunes api
ICON_PREFIXES_STRIPPED = ("terminusd/",)
