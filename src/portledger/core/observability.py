from __future__ import annotations

import json
import logging
import os
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional


_RESERVED_LOG_KEYS = {
    "name",
    "msg",
    "args",
    "levelname",
    "levelno",
    "pathname",
    "filename",
    "module",
    "exc_info",
    "exc_text",
    "stack_info",
    "lineno",
    "funcName",
    "created",
    "msecs",
    "relativeCreated",
    "thread",
    "threadName",
    "processName",
    "process",
    "message",
    "stacklevel",
    "taskName",
}


class JsonLogFormatter(logging.Formatter):
    """Minimal JSON formatter for structured logs."""

    def format(self, record: logging.LogRecord) -> str:
        base: Dict[str, Any] = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname.lower(),
            "logger": record.name,
            "message": record.getMessage(),
        }
        event = getattr(record, "event", None)
        if event:
            base["event"] = event
        payload = getattr(record, "payload", None)
        if isinstance(payload, dict):
            base.update(payload)
        for key, value in record.__dict__.items():
            if key in _RESERVED_LOG_KEYS or key in base or key == "payload":
                continue
            base[key] = value
        if record.exc_info:
            base["exc"] = self.formatException(record.exc_info)
        return json.dumps(base, default=str)


_logging_configured = False


def configure_logging(level: Optional[str] = None) -> None:
    """Configure root logging with JSON output once."""
    global _logging_configured
    if _logging_configured:
        return
    log_level = (level or os.getenv("PORTLEDGER_LOG_LEVEL", "INFO")).upper()
    handler = logging.StreamHandler()
    handler.setFormatter(JsonLogFormatter())
    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(log_level)

    for name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        logger = logging.getLogger(name)
        logger.handlers = []
        logger.propagate = True

    _logging_configured = True


def log_event(logger: logging.Logger, event: str, **payload: Any) -> None:
    """Helper to emit structured events consistently."""
    logger.info(event, extra={"event": event, "payload": payload})


@dataclass
class ApiMetrics:
    requests_total: int = 0
    error_responses: int = 0
    latency_ms_sum: float = 0.0
    last_latency_ms: Optional[float] = None


@dataclass
class JobMetrics:
    created: int = 0
    already_running: int = 0
    canceled: int = 0
    cancel_noops: int = 0
    done: int = 0
    errored: int = 0
    sweeps: int = 0
    swept_queued: int = 0


@dataclass
class StreamMetrics:
    opened: int = 0
    closed: int = 0
    active: int = 0
    transport_errors: int = 0


class Metrics:
    """Thread-safe metrics collector for the API, scan jobs and progress streams."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.api = ApiMetrics()
        self.jobs = JobMetrics()
        self.streams = StreamMetrics()

    def record_api_request(self, status_code: int, duration_ms: float) -> None:
        with self._lock:
            self.api.requests_total += 1
            if status_code >= 500:
                self.api.error_responses += 1
            self.api.latency_ms_sum += duration_ms
            self.api.last_latency_ms = duration_ms

    def record_job_created(self, already_running: bool) -> None:
        with self._lock:
            if already_running:
                self.jobs.already_running += 1
            else:
                self.jobs.created += 1

    def record_cancel(self, applied: bool) -> None:
        with self._lock:
            if applied:
                self.jobs.canceled += 1
            else:
                self.jobs.cancel_noops += 1

    def record_job_finished(self, status: str) -> None:
        with self._lock:
            if status == "done":
                self.jobs.done += 1
            elif status == "error":
                self.jobs.errored += 1

    def record_sweep(self, queued: int) -> None:
        with self._lock:
            self.jobs.sweeps += 1
            self.jobs.swept_queued += queued

    def record_stream_opened(self) -> None:
        with self._lock:
            self.streams.opened += 1
            self.streams.active += 1

    def record_stream_closed(self, transport_error: bool = False) -> None:
        with self._lock:
            self.streams.closed += 1
            self.streams.active = max(0, self.streams.active - 1)
            if transport_error:
                self.streams.transport_errors += 1

    def snapshot(self, job_counts: Optional[Dict[str, int]] = None) -> Dict[str, Any]:
        with self._lock:
            avg_latency = (
                self.api.latency_ms_sum / self.api.requests_total if self.api.requests_total else 0.0
            )
            return {
                "api": {
                    "requests_total": self.api.requests_total,
                    "error_responses": self.api.error_responses,
                    "avg_latency_ms": round(avg_latency, 2),
                    "last_latency_ms": self.api.last_latency_ms,
                },
                "jobs": {
                    "created": self.jobs.created,
                    "already_running": self.jobs.already_running,
                    "canceled": self.jobs.canceled,
                    "cancel_noops": self.jobs.cancel_noops,
                    "done": self.jobs.done,
                    "errored": self.jobs.errored,
                    "sweeps": self.jobs.sweeps,
                    "swept_queued": self.jobs.swept_queued,
                    "by_status": dict(job_counts or {}),
                },
                "streams": {
                    "opened": self.streams.opened,
                    "closed": self.streams.closed,
                    "active": self.streams.active,
                    "transport_errors": self.streams.transport_errors,
                },
            }

    def reset(self) -> None:
        """Zero metrics for tests or process reuse in dev."""
        with self._lock:
            self.api = ApiMetrics()
            self.jobs = JobMetrics()
            self.streams = StreamMetrics()


metrics = Metrics()


def _metric_lines(name: str, value: float, help_text: str, kind: str = "gauge") -> str:
    return f"# HELP {name} {help_text}\n# TYPE {name} {kind}\n{name} {value}\n"


def render_prometheus_metrics(snapshot: Dict[str, Any]) -> str:
    """Render a Prometheus text exposition from a metrics snapshot."""

    def _num(val: Any) -> float:
        try:
            return float(val or 0)
        except (TypeError, ValueError):
            return 0.0

    api = snapshot.get("api", {})
    jobs = snapshot.get("jobs", {})
    streams = snapshot.get("streams", {})

    parts = [
        _metric_lines("portledger_api_requests_total", _num(api.get("requests_total")), "Total API requests", "counter"),
        _metric_lines(
            "portledger_api_error_responses_total", _num(api.get("error_responses")), "Total 5xx responses", "counter"
        ),
        _metric_lines("portledger_api_latency_ms_avg", _num(api.get("avg_latency_ms")), "Average API latency in ms"),
        _metric_lines("portledger_api_latency_ms_last", _num(api.get("last_latency_ms")), "Last API latency in ms"),
        _metric_lines("portledger_jobs_created_total", _num(jobs.get("created")), "Scan jobs created", "counter"),
        _metric_lines(
            "portledger_jobs_already_running_total",
            _num(jobs.get("already_running")),
            "Create requests answered with an in-flight job",
            "counter",
        ),
        _metric_lines("portledger_jobs_canceled_total", _num(jobs.get("canceled")), "Scan jobs canceled", "counter"),
        _metric_lines(
            "portledger_jobs_cancel_noops_total", _num(jobs.get("cancel_noops")), "Cancel requests on finished jobs", "counter"
        ),
        _metric_lines("portledger_jobs_done_total", _num(jobs.get("done")), "Scan jobs completed", "counter"),
        _metric_lines("portledger_jobs_errored_total", _num(jobs.get("errored")), "Scan jobs failed by the agent", "counter"),
        _metric_lines("portledger_sweeps_total", _num(jobs.get("sweeps")), "Periodic sweeps run", "counter"),
        _metric_lines(
            "portledger_sweep_queued_total", _num(jobs.get("swept_queued")), "Jobs queued by periodic sweeps", "counter"
        ),
        _metric_lines("portledger_streams_opened_total", _num(streams.get("opened")), "Progress streams opened", "counter"),
        _metric_lines("portledger_streams_active", _num(streams.get("active")), "Progress streams open now"),
        _metric_lines(
            "portledger_stream_transport_errors_total",
            _num(streams.get("transport_errors")),
            "Progress streams closed on storage errors",
            "counter",
        ),
    ]
    for status, count in sorted((jobs.get("by_status") or {}).items()):
        parts.append(f'portledger_jobs{{status="{status}"}} {_num(count)}\n')
    return "".join(parts)
