"""
Local launcher for the API, the Celery worker and Celery beat.

Usage:
    python -m cohort_scheduler.start_apps              # everything
    python -m cohort_scheduler.start_apps worker beat  # just the scheduler side
"""

import argparse
import signal
import subprocess
import sys
import time
from pathlib import Path
from typing import Dict, List

import redis

from cohort_scheduler.config.settings import settings
from cohort_scheduler.utils.logging import get_logger

logger = get_logger()

PROJECT_ROOT = Path(__file__).resolve().parent.parent
CELERY_APP = "cohort_scheduler.celery"

COMMANDS: Dict[str, List[str]] = {
    "api": ["-m", "uvicorn", "cohort_scheduler.main:app", "--host", "0.0.0.0", "--port", "8000"],
    "worker": ["-m", "celery", "-A", CELERY_APP, "worker", "-Q", "scheduling,delivery", "--loglevel=info"],
    "beat": ["-m", "celery", "-A", CELERY_APP, "beat", "--loglevel=info"],
}


def broker_reachable() -> bool:
    client = redis.Redis(
        host=settings.REDIS_HOST,
        port=settings.REDIS_PORT,
        db=settings.REDIS_DB,
        password=settings.REDIS_PASSWORD or None,
        socket_connect_timeout=5,
    )
    try:
        client.ping()
    except redis.RedisError as e:
        logger.error(f"Redis at {settings.REDIS_HOST}:{settings.REDIS_PORT} unreachable: {e}")
        return False
    return True


def spawn(names: List[str]) -> Dict[str, subprocess.Popen]:
    children = {}
    for name in names:
        logger.info(f"Starting {name}")
        children[name] = subprocess.Popen([sys.executable, *COMMANDS[name]], cwd=str(PROJECT_ROOT))
    return children


def shutdown(children: Dict[str, subprocess.Popen], grace: float = 10.0):
    for child in children.values():
        if child.poll() is None:
            child.terminate()
    deadline = time.monotonic() + grace
    for name, child in children.items():
        try:
            child.wait(timeout=max(0.0, deadline - time.monotonic()))
        except subprocess.TimeoutExpired:
            logger.warning(f"{name} ignored SIGTERM, killing")
            child.kill()
            child.wait()


def supervise(children: Dict[str, subprocess.Popen]) -> int:
    """Block until a child exits; return its exit code."""
    while True:
        for name, child in children.items():
            code = child.poll()
            if code is not None:
                logger.error(f"{name} exited with code {code}")
                return code or 1
        time.sleep(1)


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description=f"Run {settings.NAME} locally")
    parser.add_argument("services", nargs="*", help=f"any of: {', '.join(COMMANDS)}")
    args = parser.parse_args(argv)
    services = args.services or list(COMMANDS)
    unknown = set(services) - set(COMMANDS)
    if unknown:
        parser.error(f"unknown service(s): {', '.join(sorted(unknown))}")

    if ({"worker", "beat"} & set(services)) and not broker_reachable():
        return 1

    def _interrupt(signum, _frame):
        raise KeyboardInterrupt(signum)

    signal.signal(signal.SIGTERM, _interrupt)

    children = spawn(services)
    try:
        return supervise(children)
    except KeyboardInterrupt:
        logger.info("Shutting down")
        return 0
    finally:
        shutdown(children)


if __name__ == "__main__":
    sys.exit(main())
