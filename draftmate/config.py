"""Runtime settings read from the environment (and ``.env.local``)."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

from dotenv import load_dotenv

from draftmate.model.ai import AIModel
from draftmate.model.models import StuckConfiguration

ENV_FILE = ".env.local"
DEFAULT_MODEL = AIModel.CLAUDE_OPUS


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError as exc:
        msg = f"{name} must be a number, got {raw!r}"
        raise ValueError(msg) from exc


def _env_model(name: str, default: AIModel) -> AIModel:
    raw = os.getenv(name)
    if not raw:
        return default
    try:
        return AIModel(raw)
    except ValueError as exc:
        msg = f"{name} is not a known model id: {raw!r}"
        raise ValueError(msg) from exc


@dataclass(frozen=True)
class Settings:
    """アプリ全体の設定値."""

    stuck: StuckConfiguration = field(default_factory=StuckConfiguration)
    tick_interval: float = 1.0
    connect_timeout: float = 10.0
    request_timeout: float = 120.0
    resource_timeout: float = 300.0
    default_model: AIModel = DEFAULT_MODEL
    secrets_path: Path = Path(ENV_FILE)

    @classmethod
    def from_env(cls, env_file: str | Path | None = ENV_FILE) -> Settings:
        """``DRAFTMATE_*`` 環境変数から設定を組み立てる.

        ``env_file`` が存在すれば先に読み込む（既存の環境変数は上書きしない）.
        """
        if env_file is not None and Path(env_file).exists():
            load_dotenv(env_file)

        defaults = StuckConfiguration()
        stuck = StuckConfiguration(
            pause_threshold=_env_float(
                "DRAFTMATE_PAUSE_THRESHOLD", defaults.pause_threshold
            ),
            long_pause_threshold=_env_float(
                "DRAFTMATE_LONG_PAUSE_THRESHOLD", defaults.long_pause_threshold
            ),
            stuck_threshold=_env_float(
                "DRAFTMATE_STUCK_THRESHOLD", defaults.stuck_threshold
            ),
            flow_threshold=_env_float("DRAFTMATE_FLOW_THRESHOLD", defaults.flow_threshold),
            rewrite_window=_env_float("DRAFTMATE_REWRITE_WINDOW", defaults.rewrite_window),
            navigation_window=_env_float(
                "DRAFTMATE_NAVIGATION_WINDOW", defaults.navigation_window
            ),
            cooldown_period=_env_float(
                "DRAFTMATE_COOLDOWN_PERIOD", defaults.cooldown_period
            ),
        )
        return cls(
            stuck=stuck,
            tick_interval=_env_float("DRAFTMATE_TICK_INTERVAL", 1.0),
            connect_timeout=_env_float("DRAFTMATE_CONNECT_TIMEOUT", 10.0),
            request_timeout=_env_float("DRAFTMATE_REQUEST_TIMEOUT", 120.0),
            resource_timeout=_env_float("DRAFTMATE_RESOURCE_TIMEOUT", 300.0),
            default_model=_env_model("DRAFTMATE_DEFAULT_MODEL", DEFAULT_MODEL),
            secrets_path=Path(os.getenv("DRAFTMATE_SECRETS_PATH", ENV_FILE)),
        )
