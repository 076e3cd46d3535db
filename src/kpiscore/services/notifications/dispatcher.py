"""Notification dispatch for score submission and verification.

The dispatcher is an injected collaborator. Services hand it a typed event
after the triggering write has succeeded; a failed delivery is logged and
never undoes or fails that write.

Implementations:
- InMemoryNotificationDispatcher: records events (tests, default)
- LoggingNotificationDispatcher: writes one INFO line per recipient
- TransportNotificationDispatcher: renders each event and hands it to an
  explicitly injected PushTransport (e.g. HttpPushTransport)
- BackgroundNotificationDispatcher: hands events to another dispatcher on a
  worker thread, so the caller never waits for delivery

Environment Variables:
    KPISCORE_PUSH_GATEWAY_URL: When set, the app delivers notifications by
        POSTing them to this URL in the background. Unset means log only.
"""

from __future__ import annotations

import json
import logging
import os
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Protocol, runtime_checkable

import httpx

from kpiscore.models.notification import (
    NotificationEvent,
    ScoreSubmittedEvent,
    ScoreVerifiedEvent,
)

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 10
DEFAULT_MAX_RETRIES = 1
DEFAULT_USER_AGENT = "kpiscore-notify/1.0"
PUSH_GATEWAY_URL_ENV = "KPISCORE_PUSH_GATEWAY_URL"


class NotificationDeliveryError(Exception):
    """Raised by a transport when a message could not be delivered."""

    def __init__(self, recipient_id: str, reason: str) -> None:
        self.recipient_id = recipient_id
        self.reason = reason
        super().__init__(f"Delivery to {recipient_id} failed: {reason}")


@runtime_checkable
class NotificationDispatcher(Protocol):
    """Receives notification events after successful submit/verify."""

    def dispatch(self, event: NotificationEvent) -> None:
        """Deliver (or enqueue) an event to its recipients."""
        ...


@runtime_checkable
class PushTransport(Protocol):
    """Delivers one rendered message to one recipient."""

    def send(self, recipient_id: str, message: dict[str, Any]) -> None:
        """Send a message.

        Raises:
            NotificationDeliveryError: If the message could not be delivered.
        """
        ...


@dataclass(frozen=True, slots=True)
class RenderedNotification:
    """Human-facing form of an event."""

    title: str
    message: str
    link: str
    priority: str = "medium"


def render_notification(event: NotificationEvent) -> RenderedNotification:
    """Build the title, message and link shown to recipients."""
    if isinstance(event, ScoreSubmittedEvent):
        return RenderedNotification(
            title="New KPI Score Submitted",
            message=f"{event.submitted_by_name} submitted a score for {event.indicator_name}",
            link=f"/subjects/{event.subject_id}/scores?period={event.period}",
        )
    if isinstance(event, ScoreVerifiedEvent):
        return RenderedNotification(
            title="KPI Score Verified",
            message=(
                f"Your {event.indicator_name} score for {event.period} "
                f"was verified by {event.verified_by_name}"
            ),
            link=f"/subjects/{event.subject_id}/scores?period={event.period}",
            priority="low",
        )
    raise TypeError(f"Unsupported notification event: {type(event).__name__}")


def build_message(event: NotificationEvent, recipient_id: str) -> dict[str, Any]:
    """Serialize an event for one recipient."""
    rendered = render_notification(event)
    return {
        "recipient_id": recipient_id,
        "kind": event.kind,
        "title": rendered.title,
        "message": rendered.message,
        "link": rendered.link,
        "priority": rendered.priority,
        "event": event.model_dump(mode="json"),
    }


class InMemoryNotificationDispatcher:
    """Records dispatched events for inspection. Thread-safe."""

    def __init__(self) -> None:
        self._events: list[NotificationEvent] = []
        self._lock = threading.Lock()

    def dispatch(self, event: NotificationEvent) -> None:
        with self._lock:
            self._events.append(event)

    @property
    def events(self) -> list[NotificationEvent]:
        """Return all dispatched events."""
        with self._lock:
            return list(self._events)

    def for_recipient(self, recipient_id: str) -> list[NotificationEvent]:
        """Return events addressed to one recipient."""
        return [e for e in self.events if recipient_id in e.recipient_ids]

    def clear(self) -> None:
        with self._lock:
            self._events.clear()


class LoggingNotificationDispatcher:
    """Writes each notification to the log instead of delivering it."""

    def dispatch(self, event: NotificationEvent) -> None:
        rendered = render_notification(event)
        for recipient_id in event.recipient_ids:
            logger.info(
                "Notification %s to %s: %s",
                event.kind,
                recipient_id,
                rendered.message,
                extra={"org_id": event.org_id, "score_id": event.score_id},
            )


class TransportNotificationDispatcher:
    """Delivers each recipient's message through an injected transport.

    A failure for one recipient is logged and does not stop delivery to the
    others.
    """

    def __init__(self, transport: PushTransport) -> None:
        self._transport = transport

    def dispatch(self, event: NotificationEvent) -> None:
        for recipient_id in event.recipient_ids:
            try:
                self._transport.send(recipient_id, build_message(event, recipient_id))
            except NotificationDeliveryError as e:
                logger.warning(
                    "Notification %s for score %s not delivered: %s",
                    event.kind,
                    event.score_id,
                    e,
                )


class HttpPushTransport:
    """POSTs rendered notifications as JSON to a push gateway."""

    def __init__(
        self,
        endpoint_url: str,
        *,
        http_client: httpx.Client | None = None,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        max_retries: int = DEFAULT_MAX_RETRIES,
    ) -> None:
        """Initialize the transport.

        Args:
            endpoint_url: Gateway URL receiving one POST per recipient.
            http_client: Optional httpx.Client for dependency injection (testing).
            timeout_seconds: Per-request timeout when no client is injected.
            max_retries: Additional attempts after the first failure.
        """
        self._endpoint_url = endpoint_url
        self._http_client = http_client
        self._timeout_seconds = timeout_seconds
        self._max_retries = max(0, max_retries)

    def send(self, recipient_id: str, message: dict[str, Any]) -> None:
        client = self._http_client
        should_close = False
        if client is None:
            client = httpx.Client(timeout=self._timeout_seconds)
            should_close = True
        try:
            self._post_with_retries(client, recipient_id, message)
        finally:
            if should_close:
                client.close()

    def _post_with_retries(
        self,
        client: httpx.Client,
        recipient_id: str,
        message: dict[str, Any],
    ) -> None:
        headers = {"Content-Type": "application/json", "User-Agent": DEFAULT_USER_AGENT}
        body = json.dumps(message, sort_keys=True)
        attempts = 1 + self._max_retries
        last_error: Exception | None = None

        for _ in range(attempts):
            try:
                response = client.post(self._endpoint_url, content=body, headers=headers)
                response.raise_for_status()
                return
            except httpx.HTTPStatusError as exc:
                last_error = exc
                # 4xx means the gateway rejected the message; retrying will not help
                if exc.response.status_code < 500:
                    break
            except httpx.RequestError as exc:
                last_error = exc

        raise NotificationDeliveryError(
            recipient_id, f"{type(last_error).__name__}: {last_error}"
        )


class BackgroundNotificationDispatcher:
    """Runs another dispatcher on a worker thread.

    ``dispatch`` only enqueues the event and returns. Events are delivered in
    the order they were enqueued; a failure is logged and the next event is
    still delivered.
    """

    def __init__(self, inner: NotificationDispatcher, *, max_workers: int = 1) -> None:
        self._inner = inner
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="kpiscore-notify"
        )

    def dispatch(self, event: NotificationEvent) -> None:
        future = self._executor.submit(self._inner.dispatch, event)
        future.add_done_callback(lambda f: self._log_failure(f, event))

    def shutdown(self, wait: bool = True) -> None:
        """Stop accepting events; with wait=True, deliver those already queued."""
        self._executor.shutdown(wait=wait)

    @staticmethod
    def _log_failure(future: Future[None], event: NotificationEvent) -> None:
        exc = future.exception()
        if exc is not None:
            logger.error(
                "Background notification %s for score %s failed: %s",
                event.kind,
                event.score_id,
                exc,
            )


def build_notification_dispatcher() -> NotificationDispatcher:
    """Build the app's dispatcher from the environment.

    With KPISCORE_PUSH_GATEWAY_URL set, events are POSTed to the gateway off
    the request path; otherwise they are written to the log.
    """
    gateway_url = os.environ.get(PUSH_GATEWAY_URL_ENV, "").strip()
    if not gateway_url:
        return LoggingNotificationDispatcher()
    logger.info("Push notifications enabled")
    return BackgroundNotificationDispatcher(
        TransportNotificationDispatcher(HttpPushTransport(gateway_url))
    )
