from __future__ import annotations

import json
import logging
import os
import re
import signal
import threading

from kubernetes.client import CoordinationV1Api

from imageregistry.src.config import OperatorConfig, load_config
from imageregistry.src.controller import Controller, build_controller
from imageregistry.src.health import start_health_server
from imageregistry.src.kube import build_clients, load_kube_configuration
from imageregistry.src.leader import LeaseLeaderElector
from imageregistry.src.metrics import METRICS

RUNTIME_VERSION = "0.1.0"
LOGGER = logging.getLogger(__name__)

_SECRET_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"(?i)(bearer\s+)[A-Za-z0-9._~+/=-]+"),
    re.compile(
        r"(?i)(\b(?:authorization|token|password|passwd|secret|api[_-]?key|httpsecret)\b\s*[:=]\s*)[^\s,;]+"
    ),
    re.compile(r"(?i)([?&](?:token|access_token|api_key|password)=)[^&\s]+"),
)


def redact_sensitive_text(value: str) -> str:
    for pattern in _SECRET_PATTERNS:
        value = pattern.sub(r"\1[REDACTED]", value)
    return value


class JSONFormatter(logging.Formatter):
    """Emit logs as single-line JSON objects for structured log aggregation.

    The thread name is included because informer threads, the sync worker
    and leader election all log concurrently.
    """

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "ts": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "thread": record.threadName,
            "msg": redact_sensitive_text(record.getMessage()),
        }
        if record.exc_info and record.exc_info[0] is not None:
            log_entry["error"] = redact_sensitive_text(self.formatException(record.exc_info))
        return json.dumps(log_entry)


def configure_logging(level: str) -> None:
    handler = logging.StreamHandler()
    handler.setFormatter(JSONFormatter())
    logging.root.addHandler(handler)
    logging.root.setLevel(getattr(logging, level, logging.INFO))


def _run_with_leader_election(
    controller: Controller,
    config: OperatorConfig,
    shutdown_event: threading.Event,
    leader_ready: threading.Event,
) -> None:
    """Run the controller only while this replica holds the lease.

    A new term never starts while the previous term's controller thread is
    still alive; if it refuses to stop the whole process shuts down instead,
    so two sync workers never overlap.
    """
    election = config.leader_election
    elector = LeaseLeaderElector(
        coordination_api=CoordinationV1Api(),
        namespace=config.operator_namespace,
        config=election,
    )

    controller_thread: threading.Thread | None = None
    controller_stop = threading.Event()
    state_lock = threading.Lock()

    def on_started_leading() -> None:
        nonlocal controller_thread, controller_stop
        with state_lock:
            if shutdown_event.is_set():
                return
            if controller_thread is not None and controller_thread.is_alive():
                LOGGER.error(
                    "Refusing to start a new controller while the previous one is still running"
                )
                shutdown_event.set()
                return

            controller_stop = threading.Event()
            term_stop = controller_stop
            leader_ready.set()

            def _run_controller() -> None:
                unexpected_exit = False
                try:
                    controller.run(shutdown_event=term_stop)
                    unexpected_exit = not term_stop.is_set() and not shutdown_event.is_set()
                    if unexpected_exit:
                        LOGGER.error("Controller exited without a stop signal; terminating process")
                except Exception:
                    unexpected_exit = True
                    LOGGER.exception("Controller crashed")
                finally:
                    if unexpected_exit:
                        shutdown_event.set()

            controller_thread = threading.Thread(
                target=_run_controller, name="controller", daemon=True
            )
            controller_thread.start()

    def on_stopped_leading() -> None:
        nonlocal controller_thread
        with state_lock:
            leader_ready.clear()
            controller.request_stop()
            controller_stop.set()
            if controller_thread is None:
                return

            controller_thread.join(timeout=election.controller_stop_timeout_seconds)
            if controller_thread.is_alive():
                LOGGER.error(
                    "Controller did not stop within %ss during leadership handoff; "
                    "forcing process shutdown",
                    election.controller_stop_timeout_seconds,
                )
                shutdown_event.set()
                return
            controller_thread = None

    elector.run(
        on_started_leading=on_started_leading,
        on_stopped_leading=on_stopped_leading,
        stop_event=shutdown_event,
    )
    on_stopped_leading()


def main() -> None:
    """Operator entrypoint: configure logging, then reconcile until signalled."""
    config = load_config()
    configure_logging(config.log_level)
    METRICS.build_info.info(
        {
            "version": os.getenv("APP_VERSION", RUNTIME_VERSION),
            "revision": os.getenv("GIT_SHA", "unknown"),
        }
    )

    load_kube_configuration()
    clients = build_clients()
    controller = build_controller(clients, config)

    leader_ready = threading.Event() if config.leader_election.enabled else None
    health_server = start_health_server(
        ready=controller.ready,
        port=config.health_port,
        leader=leader_ready,
        worker_alive=controller.worker_alive,
    )

    shutdown_event = threading.Event()

    def _handle_signal(signum: int, frame: object) -> None:
        LOGGER.info("Received signal %d, shutting down", signum)
        shutdown_event.set()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    try:
        if leader_ready is not None:
            _run_with_leader_election(controller, config, shutdown_event, leader_ready)
        else:
            controller.run(shutdown_event=shutdown_event)
    finally:
        health_server.shutdown()
    LOGGER.info("Operator stopped")


if __name__ == "__main__":
    main()
