"""
Poller
Background worker that drives one pipeline cycle per interval.

Cycle:
    source.fetch_records → drop terminal jobs → AlertEngine.evaluate_jobs
                         → ChangeDetector.detect_changes → stats + events

Usage:
    poller = Poller(source, engine, detector, events=bus, interval_sec=30)
    poller.start()      # first cycle runs immediately
    poller.get_health()
    poller.stop()
"""

import threading
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from loguru import logger

from alerts import AlertEngine
from core.detector import ChangeDetector
from core.exceptions import FetchError
from core.models import Record
from . import events as ev
from .events import EventBus
from .source import TERMINAL_STATUSES, RecordSource


def is_terminal(record: Record) -> bool:
    """Jobs deleted or voided at the source are not monitored"""
    status = record.get("job_status")
    return status is None or status in TERMINAL_STATUSES


@dataclass
class PollerStats:
    """Running poll statistics"""
    total_polls: int = 0
    successful_polls: int = 0
    failed_polls: int = 0
    total_jobs_processed: int = 0
    total_alerts_generated: int = 0
    average_response_time: float = 0.0
    detection_failures: int = 0
    last_error: Optional[Dict[str, Any]] = None

    def record_success(self, job_count: int, new_alerts: int, response_time_ms: float) -> None:
        self.successful_polls += 1
        self.total_jobs_processed += job_count
        self.total_alerts_generated += new_alerts
        # Running mean over successful polls
        self.average_response_time += (response_time_ms - self.average_response_time) / self.successful_polls

    def record_failure(self, error: Exception) -> None:
        self.failed_polls += 1
        self.last_error = {
            "message": str(error),
            "timestamp": datetime.now().isoformat(),
        }

    @property
    def success_rate(self) -> float:
        if self.total_polls == 0:
            return 100.0
        return self.successful_polls / self.total_polls * 100

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_polls": self.total_polls,
            "successful_polls": self.successful_polls,
            "failed_polls": self.failed_polls,
            "total_jobs_processed": self.total_jobs_processed,
            "total_alerts_generated": self.total_alerts_generated,
            "average_response_time": round(self.average_response_time, 2),
            "detection_failures": self.detection_failures,
            "last_error": self.last_error,
        }


class Poller:
    """
    Scheduled poll loop on a daemon thread.

    Cycles never overlap: the worker runs them back to back, and a manual
    poll() while a cycle is in flight returns {"skipped": True}.
    A failed cycle keeps the cache and active alerts untouched. A failing
    change detection pass is logged and counted; the cycle still reports
    its alert result.
    """

    def __init__(
        self,
        source: RecordSource,
        engine: AlertEngine,
        detector: Optional[ChangeDetector] = None,
        events: Optional[EventBus] = None,
        interval_sec: float = 30.0,
        batch_size: int = 100,
        health_threshold: float = 90.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._source = source
        self._engine = engine
        self._detector = detector
        self.events = events or EventBus()
        self.interval_sec = interval_sec
        self.batch_size = batch_size
        self.health_threshold = health_threshold
        self._clock = clock

        self._stats = PollerStats()
        self._poll_count = 0
        self._error_count = 0
        self._last_poll_time: Optional[datetime] = None
        self._last_success: Optional[float] = None
        self._last_cycle_failed = False

        self._running = False
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._state_lock = threading.Lock()
        self._cycle_lock = threading.Lock()

    @property
    def is_running(self) -> bool:
        return self._running

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def start(self) -> Dict[str, Any]:
        """Start the worker. No-op when already running."""
        with self._state_lock:
            if self._running:
                return {"status": "already_running"}
            self._running = True
            self._stop_event = threading.Event()
            self._thread = threading.Thread(
                target=self._run, args=(self._stop_event,), name="poller", daemon=True
            )
            self._thread.start()

        logger.info(f"Polling started (interval {self.interval_sec}s, batch {self.batch_size})")
        self.events.emit(ev.STARTED, {"interval_ms": int(self.interval_sec * 1000)})
        return {"status": "started"}

    def stop(self, timeout: Optional[float] = None) -> Dict[str, Any]:
        """Stop scheduling; the in-flight cycle finishes, then the source session is closed"""
        with self._state_lock:
            if not self._running:
                return {"status": "not_running"}
            self._running = False
            self._stop_event.set()
            thread = self._thread
            self._thread = None

        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)

        try:
            self._source.close_session()
        except Exception as e:
            logger.warning(f"Closing source session failed: {e}")

        logger.info(f"Polling stopped after {self._poll_count} polls")
        self.events.emit(ev.STOPPED, {"poll_count": self._poll_count})
        return {"status": "stopped", "poll_count": self._poll_count}

    def _run(self, stop_event: threading.Event) -> None:
        while not stop_event.is_set():
            self.poll()
            if stop_event.wait(self.interval_sec):
                break

    # =========================================================================
    # Cycle
    # =========================================================================

    def poll(self) -> Dict[str, Any]:
        """Run one cycle now. Returns {"success": ...} or {"skipped": True}."""
        if not self._cycle_lock.acquire(blocking=False):
            logger.debug("Poll already in progress, skipping")
            return {"success": False, "skipped": True}
        try:
            return self._poll_once()
        finally:
            self._cycle_lock.release()

    def _poll_once(self) -> Dict[str, Any]:
        started = self._clock()
        self._poll_count += 1
        self._stats.total_polls += 1

        with logger.contextualize(poll=self._poll_count):
            try:
                records = self._source.fetch_records(limit=self.batch_size)
                active = [r for r in records if not is_terminal(r)]
                logger.debug(f"Retrieved {len(active)} active jobs ({len(records)} total)")

                alert_result = self._engine.evaluate_jobs(active)
            except FetchError as e:
                logger.warning(f"Poll failed: {e.message}")
                return self._fail(e)
            except Exception as e:
                logger.exception(f"Poll failed: {e}")
                return self._fail(e)

            # Alerts are committed here; a detection failure does not fail the cycle
            changes = None
            if self._detector is not None and active:
                try:
                    changes = self._detector.detect_changes(active)
                except Exception as e:
                    logger.exception(f"Change detection failed: {e}")
                    self._stats.detection_failures += 1
                    self.events.emit(ev.ERROR, {
                        "error": str(e),
                        "type": type(e).__name__,
                        "stage": "change_detection",
                    })

            response_time = (self._clock() - started) * 1000
            self._stats.record_success(len(active), alert_result.new, response_time)
            self._last_poll_time = datetime.now()
            self._last_success = self._clock()
            self._last_cycle_failed = False

            logger.info(
                f"Poll complete in {response_time:.0f}ms - {alert_result.total} active alerts "
                f"({alert_result.new} new, {alert_result.resolved} resolved)"
            )

        self.events.emit(ev.POLL, {
            "poll_count": self._poll_count,
            "job_count": len(active),
            "alert_result": alert_result.to_dict(),
            "response_time": round(response_time, 2),
            "timestamp": self._last_poll_time.isoformat(),
        })
        if alert_result.new > 0:
            self.events.emit(ev.NEW_ALERTS, {
                "alerts": [a.to_dict() for a in alert_result.new_alerts],
                "count": alert_result.new,
            })
        if alert_result.resolved > 0:
            self.events.emit(ev.RESOLVED_ALERTS, {
                "alerts": [a.to_dict() for a in alert_result.resolved_alerts],
                "count": alert_result.resolved,
            })
        if changes is not None and changes.total_changes > 0:
            self.events.emit(ev.CHANGES, changes.to_dict())

        return {
            "success": True,
            "job_count": len(active),
            "alert_result": alert_result.to_dict(),
            "changes": changes.summary() if changes is not None else None,
            "response_time": round(response_time, 2),
        }

    def _fail(self, error: Exception) -> Dict[str, Any]:
        self._error_count += 1
        self._stats.record_failure(error)
        self._last_cycle_failed = True
        self.events.emit(ev.ERROR, {"error": str(error), "type": type(error).__name__})
        return {"success": False, "error": str(error)}

    # =========================================================================
    # Operator actions
    # =========================================================================

    def acknowledge_alert(self, alert_id: str, acknowledged_by: str = "system") -> bool:
        ok = self._engine.acknowledge_alert(alert_id, acknowledged_by)
        if ok:
            self.events.emit(ev.ALERT_ACKNOWLEDGED, {"alert_id": alert_id, "acknowledged_by": acknowledged_by})
        return ok

    def dismiss_alert(self, alert_id: str, dismissed_by: str = "system") -> bool:
        ok = self._engine.dismiss_alert(alert_id, dismissed_by)
        if ok:
            self.events.emit(ev.ALERT_DISMISSED, {"alert_id": alert_id, "dismissed_by": dismissed_by})
        return ok

    # =========================================================================
    # Stats & Health
    # =========================================================================

    def _since_last_success(self) -> Optional[float]:
        if self._last_success is None:
            return None
        return self._clock() - self._last_success

    @property
    def stale(self) -> bool:
        """True when served state may be out of date"""
        since = self._since_last_success()
        return self._last_cycle_failed or (since is not None and since >= 2 * self.interval_sec)

    def get_stats(self) -> Dict[str, Any]:
        return {
            **self._stats.to_dict(),
            "poll_count": self._poll_count,
            "error_count": self._error_count,
            "last_poll_time": self._last_poll_time.isoformat() if self._last_poll_time else None,
            "is_running": self._running,
            "config": {
                "interval_ms": int(self.interval_sec * 1000),
                "batch_size": self.batch_size,
            },
        }

    def get_health(self) -> Dict[str, Any]:
        success_rate = self._stats.success_rate
        since = self._since_last_success()
        fresh = since is None or since < 2 * self.interval_sec
        healthy = self._running and success_rate >= self.health_threshold and fresh

        return {
            "status": "healthy" if healthy else "unhealthy",
            "is_running": self._running,
            "success_rate": round(success_rate, 2),
            "last_poll_time": self._last_poll_time.isoformat() if self._last_poll_time else None,
            "time_since_last_poll": int(since * 1000) if since is not None else None,
            "error_count": self._error_count,
            "last_error": self._stats.last_error,
            "stale": self.stale,
        }

    def reset_stats(self) -> None:
        self._stats = PollerStats()
        self._poll_count = 0
        self._error_count = 0
        logger.info("Poller statistics reset")
