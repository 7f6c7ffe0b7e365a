#!/usr/bin/env python3
"""Draftmate API を裏で起動し、/status が返るまで待つ."""

from __future__ import annotations

import os
import platform
import subprocess
import sys
import time

import requests
from dotenv import dotenv_values
from utils import (
    API_HOST,
    API_PID_FILE,
    API_PORT,
    ENV_FILE,
    LOG_DIR,
    REPO_ROOT,
    api_url,
    logger,
    read_pid,
    write_pid,
)

READY_ATTEMPTS = 30
READY_INTERVAL_SEC = 1.0
STATUS_TIMEOUT_SEC = 2.5
WINDOWS_DETACH_FLAGS = 0x00000200 | 0x00000008


def child_environment() -> dict[str, str]:
    env = os.environ.copy()
    if ENV_FILE.exists():
        env.update({k: v for k, v in dotenv_values(ENV_FILE).items() if v is not None})
        logger.info("Loaded %s", ENV_FILE.name)
    else:
        logger.warning("%s がありません。キーは /providers/{name}/key で登録できます", ENV_FILE.name)
    env["PYTHONPATH"] = str(REPO_ROOT)
    return env


def fetch_status(session: requests.Session) -> dict | None:
    """サーバーが応答すれば /status の中身を返す."""
    try:
        response = session.get(api_url("/status"), timeout=STATUS_TIMEOUT_SEC)
    except requests.RequestException:
        return None
    if response.status_code != requests.codes.ok:
        return None
    try:
        return response.json()
    except ValueError:
        return None


def wait_until_ready(session: requests.Session) -> dict | None:
    for attempt in range(1, READY_ATTEMPTS + 1):
        status = fetch_status(session)
        if status is not None:
            return status
        logger.debug("waiting for API (%d/%d)", attempt, READY_ATTEMPTS)
        time.sleep(READY_INTERVAL_SEC)
    return None


def spawn_api(env: dict[str, str]) -> subprocess.Popen[bytes]:
    LOG_DIR.mkdir(parents=True, exist_ok=True)
    command = [
        sys.executable,
        "-m",
        "uvicorn",
        "draftmate.api.main:app",
        "--host",
        API_HOST,
        "--port",
        str(API_PORT),
    ]
    detach: dict[str, object] = {"start_new_session": True}
    if platform.system() == "Windows":
        detach = {"creationflags": WINDOWS_DETACH_FLAGS}
    with (LOG_DIR / "api.log").open("ab") as out, (LOG_DIR / "api.err.log").open("ab") as err:
        return subprocess.Popen(  # noqa: S603
            command, cwd=REPO_ROOT, stdout=out, stderr=err, env=env, **detach
        )


def main() -> int:
    session = requests.Session()
    running = read_pid(API_PID_FILE)
    if running is not None and fetch_status(session) is not None:
        logger.info("API はすでに起動しています (PID %s)", running)
        return 0

    proc = spawn_api(child_environment())
    write_pid(API_PID_FILE, proc.pid)
    logger.info("uvicorn を起動しました (PID %s)。応答待ち...", proc.pid)

    status = wait_until_ready(session)
    if status is None:
        logger.error("API が応答しません。log/api.err.log を確認してください")
        return 1

    providers = status.get("configured_providers") or []
    if providers:
        logger.info("Providers: %s", ", ".join(providers))
    else:
        logger.warning("APIキーが未設定です。生成系のエンドポイントは 401 を返します")
    logger.info("Default model: %s", status.get("default_model"))
    logger.info("API: %s  / stop: python scripts/stop.py", api_url(""))
    return 0


if __name__ == "__main__":
    try:
        raise SystemExit(main())
    except OSError as e:
        logger.exception("起動に失敗しました")
        raise SystemExit(1) from e
