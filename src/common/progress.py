"""
Progress Event Sinks
====================

Job progress is pushed to whoever is watching (the admin dashboard in
production) through a small ``publish(audience_role, event_name, payload)``
interface. Publishing is fire-and-forget: a sink that cannot deliver an event
logs the problem and returns, it never raises into the queue.
"""

from __future__ import annotations

from abc import ABC, abstractmethod

import requests
import structlog

from .config import Settings

log = structlog.get_logger(__name__)


class ProgressSink(ABC):
    """Destination for job progress events."""

    def publish(self, audience_role: str, event_name: str, payload: dict) -> None:
        try:
            self._send(audience_role, event_name, payload)
        except Exception:
            log.exception(
                "Failed to publish progress event",
                sink=type(self).__name__,
                event=event_name,
                role=audience_role,
            )

    @abstractmethod
    def _send(self, audience_role: str, event_name: str, payload: dict) -> None:
        raise NotImplementedError

    def close(self) -> None:
        """Release any resources held by the sink."""


class LoggingProgressSink(ProgressSink):
    """Writes progress events to the structured log."""

    def _send(self, audience_role: str, event_name: str, payload: dict) -> None:
        log.info(
            "Progress event",
            event_name=event_name,
            role=audience_role,
            job_id=payload.get("id"),
            status=payload.get("status"),
            total=payload.get("total_items"),
            succeeded=payload.get("succeeded_items"),
            failed=payload.get("failed_items"),
            skipped=payload.get("skipped_items"),
        )


class WebhookProgressSink(ProgressSink):
    """POSTs progress events as JSON to a broadcast endpoint."""

    def __init__(self, url: str, timeout: int = 5, session: requests.Session | None = None):
        self.url = url
        self.timeout = timeout
        self._session = session or requests.Session()

    def _send(self, audience_role: str, event_name: str, payload: dict) -> None:
        response = self._session.post(
            self.url,
            json={"role": audience_role, "event": event_name, "payload": payload},
            timeout=self.timeout,
        )
        response.raise_for_status()

    def close(self) -> None:
        self._session.close()


def create_progress_sink(settings: Settings) -> ProgressSink:
    if settings.PROGRESS_SINK == "webhook":
        return WebhookProgressSink(
            settings.PROGRESS_WEBHOOK_URL, timeout=settings.PROGRESS_WEBHOOK_TIMEOUT
        )
    return LoggingProgressSink()
