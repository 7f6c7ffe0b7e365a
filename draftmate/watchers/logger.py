import logging
import os
from pathlib import Path

__all__ = ["configure_logging", "logger"]

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def configure_logging(log_dir: Path, level: str = "INFO") -> logging.Logger:
    """draftmate ロガーにファイル出力を一度だけ付ける."""
    root = logging.getLogger("draftmate")
    if root.handlers:
        return root
    root.setLevel(level.upper())
    log_dir.mkdir(parents=True, exist_ok=True)
    handler = logging.FileHandler(log_dir / "draftmate.log", encoding="utf-8")
    handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))
    root.addHandler(handler)
    return root


logger = configure_logging(
    Path(os.getenv("DRAFTMATE_LOG_DIR", "./log")),
    os.getenv("DRAFTMATE_LOG_LEVEL", "INFO"),
)
