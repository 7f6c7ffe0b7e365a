from __future__ import annotations

import logging
from pathlib import Path

REPO_ROOT = Path(__file__).resolve().parent.parent
LOG_DIR = REPO_ROOT / "log"
ENV_FILE = REPO_ROOT / ".env.local"
API_PID_FILE = REPO_ROOT / "draftmate_api.pid"
API_HOST = "127.0.0.1"
API_PORT = 5577

logging.basicConfig(level=logging.INFO, format="[%(levelname)s] %(message)s")
logger = logging.getLogger("draftmate.scripts")


def api_url(path: str = "/status") -> str:
    return f"http://{API_HOST}:{API_PORT}{path}"


def read_pid(path: Path) -> int | None:
    """PIDファイルを読む。壊れていれば None."""
    try:
        return int(path.read_text(encoding="ascii").strip())
    except FileNotFoundError:
        return None
    except ValueError:
        logger.warning("PIDファイルが壊れています: %s", path)
        return None


def write_pid(path: Path, pid: int) -> None:
    path.write_text(f"{pid}\n", encoding="ascii")
