from __future__ import annotations

import logging
import os
import signal
import threading

from watcher.src.health import start_health_server
from watcher.src.kube import build_core_api, load_kube_configuration
from watcher.src.logs import configure_logging
from watcher.src.metrics import METRICS
from watcher.src.mirror import build_mirror_from_env, env_int

RUNTIME_VERSION = "0.3.0"


def main() -> None:
    """Entrypoint: configure logging, build the mirror from env, and watch until signalled.

    Exits with status 1 when the mirror stopped because of a fatal store
    error, so the orchestrator restarts the pod and surfaces the failure.
    """
    configure_logging()
    logger = logging.getLogger(__name__)
    METRICS.build_info.info(
        {
            "version": os.getenv("APP_VERSION", RUNTIME_VERSION),
            "revision": os.getenv("GIT_SHA", "unknown"),
        }
    )

    load_kube_configuration()
    mirror = build_mirror_from_env(core_api=build_core_api())

    @mirror.on_reload
    def _log_reload(data: dict[str, str | None]) -> None:
        logger.info("Settings reloaded (%d key(s))", len(data))

    health_port = env_int("HEALTH_PORT", 8080, minimum=1, maximum=65535)
    health_server = start_health_server(mirror=mirror, port=health_port)

    shutdown_event = threading.Event()

    def _handle_signal(signum: int, frame: object) -> None:
        logger.info("Received signal %d, shutting down", signum)
        shutdown_event.set()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    try:
        mirror.run_forever(shutdown_event=shutdown_event)
    finally:
        health_server.shutdown()

    if mirror.fatal_error is not None:
        logger.error("Settings mirror stopped after a fatal error: %s", mirror.fatal_error)
        raise SystemExit(1)
    logger.info("Settings mirror stopped")


if __name__ == "__main__":
    main()
