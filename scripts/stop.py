#!/usr/bin/env python3
"""scripts/start.py で起動した API サーバーを止める."""

import psutil
from utils import API_PID_FILE, logger, read_pid

GRACE_PERIOD_SEC = 5.0


def stop_api() -> bool:
    pid = read_pid(API_PID_FILE)
    if pid is None:
        logger.info("PIDファイルがありません（起動していない可能性があります）")
        return False
    try:
        proc = psutil.Process(pid)
        children = proc.children(recursive=True)
        for target in [proc, *children]:
            target.terminate()
        _gone, alive = psutil.wait_procs([proc, *children], timeout=GRACE_PERIOD_SEC)
        for target in alive:
            logger.warning("PID %s が終了しないため kill します", target.pid)
            target.kill()
    except psutil.NoSuchProcess:
        logger.info("PID %s はすでに停止済みです", pid)
    API_PID_FILE.unlink(missing_ok=True)
    return True


if __name__ == "__main__":
    if stop_api():
        logger.info("API server stopped")
    raise SystemExit(0)
