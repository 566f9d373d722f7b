"""Background jobs that move Redis data into the database and prune links."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable

from linkly.link import delete_expired_links, sync_click_counts, sync_visit_logs
from linkly.state import AppState, ServiceError

logger = logging.getLogger(__name__)

CLICK_COUNT_SYNC_INTERVAL = 900
VISIT_LOG_SYNC_INTERVAL = 1200
EXPIRED_LINKS_DELETE_INTERVAL = 1800
SYNC_BATCH = 100


class PeriodicTask:
    """Run an action in a daemon thread now and then every `interval` seconds."""

    def __init__(self, interval: float, action: Callable[[], object], name: str) -> None:
        self.interval = interval
        self.action = action
        self.name = name
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        """Start the task's thread."""
        if self.running:
            raise RuntimeError(f"task {self.name} is already running")
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name=self.name, daemon=True)
        self._thread.start()

    def stop(self) -> None:
        """Ask the task to finish and wait for its thread."""
        self._stop.set()
        if self._thread is not None:
            self._thread.join()
            self._thread = None

    def _run(self) -> None:
        while True:
            try:
                self.action()
            except Exception:
                logger.exception("Task %s failed", self.name)
            if self._stop.wait(self.interval):
                break


def run_click_count_sync(state: AppState) -> None:
    """Move click counts from Redis into the database once."""
    logger.info("Syncing click counts start")
    try:
        redis_client = state.redis()
    except ServiceError:
        logger.error("No Redis manager")
        return
    try:
        sync_click_counts(state.engine, redis_client, SYNC_BATCH)
    except ServiceError as exc:
        logger.error("Failed to sync click counts: %r", exc)
    logger.info("Synced click counts end")


def run_visit_log_sync(state: AppState) -> None:
    """Move visit logs from the Redis stream into the database once."""
    logger.info("Syncing visit logs start")
    try:
        redis_client = state.redis()
    except ServiceError:
        logger.error("No Redis manager(vist_log_sync)")
        return
    try:
        sync_visit_logs(state.engine, redis_client, SYNC_BATCH)
    except ServiceError as exc:
        logger.error("Failed to sync visit logs: %r", exc)
    logger.info("Synced visit logs end")


def run_expired_links_delete(state: AppState) -> None:
    """Delete expired links once."""
    logger.info("Syncing expired links start")
    try:
        delete_expired_links(state.engine)
    except ServiceError as exc:
        logger.error("Failed to delete expired links: %r", exc)
    logger.info("Synced expired links end")


def start_background_tasks(state: AppState) -> list[PeriodicTask]:
    """Start the three periodic jobs and return them."""
    tasks = [
        PeriodicTask(
            CLICK_COUNT_SYNC_INTERVAL, lambda: run_click_count_sync(state), "click-count-sync"
        ),
        PeriodicTask(
            VISIT_LOG_SYNC_INTERVAL, lambda: run_visit_log_sync(state), "visit-log-sync"
        ),
        PeriodicTask(
            EXPIRED_LINKS_DELETE_INTERVAL,
            lambda: run_expired_links_delete(state),
            "expired-links-delete",
        ),
    ]
    for task in tasks:
        task.start()
    return tasks