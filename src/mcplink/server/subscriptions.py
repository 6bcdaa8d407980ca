"""Subscriptions and notification fan-out.

The dispatcher tracks which session is subscribed to which resource URI and
turns registry changes into notifications. It never writes to a session
directly: each session gets an :class:`Outbox`, drained by a pump task that
runs for as long as the session does.

Notifications here are hints ("something changed, re-read it"), so an outbox
keeps at most one pending copy of each ``(method, uri)``. Delivery is
at-least-once for a live session; nothing is replayed across reconnects.
"""

import logging

import anyio
from pydantic import AnyUrl

import mcplink.types as types
from mcplink.server.resources.base import normalize_uri
from mcplink.server.session import ServerSession
from mcplink.shared.capabilities import ListKind
from mcplink.shared.exceptions import ConnectionClosedError

logger = logging.getLogger(__name__)

_LIST_CHANGED: dict[ListKind, type[types.Notification]] = {
    "resources": types.ResourceListChangedNotification,
    "tools": types.ToolListChangedNotification,
    "prompts": types.PromptListChangedNotification,
}


def _coalesce_key(notification: types.ServerNotification) -> tuple[str, str | None]:
    root = notification.root
    uri = getattr(root.params, "uri", None) if root.params is not None else None
    return root.method, str(uri) if uri is not None else None


class Outbox:
    """Pending notifications for one session, coalesced by ``(method, uri)``."""

    def __init__(self, session: ServerSession):
        self.session = session
        self._pending: dict[tuple[str, str | None], types.ServerNotification] = {}
        self._wakeup = anyio.Event()
        self._closed = False

    @property
    def pending(self) -> list[types.ServerNotification]:
        return list(self._pending.values())

    def put(self, notification: types.ServerNotification) -> bool:
        """Queue a notification. Returns False if an identical one was already pending."""
        if self._closed:
            return False
        key = _coalesce_key(notification)
        if key in self._pending:
            logger.debug("Coalesced %s for session %s", key, self.session.session_id)
            return False
        self._pending[key] = notification
        self._wakeup.set()
        return True

    def close(self) -> None:
        self._closed = True
        self._pending.clear()
        self._wakeup.set()

    async def pump(self) -> None:
        """Drain the outbox onto the session until it is closed."""
        while not self._closed:
            await self._wakeup.wait()
            self._wakeup = anyio.Event()
            batch = list(self._pending.values())
            self._pending.clear()
            for notification in batch:
                try:
                    await self.session.send_notification(notification)
                except ConnectionClosedError:
                    logger.debug("Session %s closed, stopping notification pump", self.session.session_id)
                    self.close()
                    return


class SubscriptionDispatcher:
    """Tracks ``(session, uri)`` subscriptions and fans out change notifications."""

    def __init__(self) -> None:
        self._outboxes: dict[str, Outbox] = {}
        self._subscribers: dict[str, set[str]] = {}

    def register(self, session: ServerSession) -> Outbox:
        outbox = self._outboxes.get(session.session_id)
        if outbox is None:
            outbox = self._outboxes[session.session_id] = Outbox(session)
        return outbox

    def unregister(self, session: ServerSession) -> None:
        """Forget a session and every subscription it held."""
        outbox = self._outboxes.pop(session.session_id, None)
        if outbox is not None:
            outbox.close()
        for uri in [uri for uri, sessions in self._subscribers.items() if session.session_id in sessions]:
            self._discard(uri, session.session_id)
        logger.debug("Unregistered session %s", session.session_id)

    def subscribe(self, session: ServerSession, uri: AnyUrl | str) -> bool:
        """Subscribe ``session`` to ``uri``. Returns False if it already was."""
        sessions = self._subscribers.setdefault(normalize_uri(uri), set())
        if session.session_id in sessions:
            return False
        sessions.add(session.session_id)
        logger.debug("Session %s subscribed to %s", session.session_id, uri)
        return True

    def unsubscribe(self, session: ServerSession, uri: AnyUrl | str) -> bool:
        """Unsubscribe ``session`` from ``uri``. Returns False if it was not subscribed."""
        if session.session_id not in self._subscribers.get(normalize_uri(uri), set()):
            return False
        self._discard(normalize_uri(uri), session.session_id)
        logger.debug("Session %s unsubscribed from %s", session.session_id, uri)
        return True

    def _discard(self, uri: str, session_id: str) -> None:
        sessions = self._subscribers.get(uri)
        if sessions is None:
            return
        sessions.discard(session_id)
        if not sessions:
            del self._subscribers[uri]

    def is_subscribed(self, session: ServerSession, uri: AnyUrl | str) -> bool:
        return session.session_id in self._subscribers.get(normalize_uri(uri), set())

    def subscribers(self, uri: AnyUrl | str) -> set[str]:
        return set(self._subscribers.get(normalize_uri(uri), set()))

    def subscriptions(self, session: ServerSession) -> set[str]:
        return {uri for uri, sessions in self._subscribers.items() if session.session_id in sessions}

    def notify_resource_updated(self, uri: AnyUrl | str) -> int:
        """Queue ``notifications/resources/updated`` for every subscriber of ``uri``.

        Returns the number of sessions the notification was queued for.
        """
        notification = types.ServerNotification(
            types.ResourceUpdatedNotification(params=types.ResourceUpdatedNotificationParams(uri=AnyUrl(str(uri))))
        )
        queued = 0
        for session_id in self.subscribers(uri):
            outbox = self._outboxes.get(session_id)
            if outbox is None or not outbox.session.supports("notifications/resources/updated"):
                continue
            if outbox.put(notification):
                queued += 1
        return queued

    def notify_list_changed(self, kind: ListKind) -> int:
        """Queue a list-changed notification for every session that negotiated it."""
        notification = types.ServerNotification(_LIST_CHANGED[kind]())  # type: ignore[arg-type]
        method = notification.root.method
        queued = 0
        for outbox in list(self._outboxes.values()):
            if outbox.session.supports(method) and outbox.put(notification):
                queued += 1
        return queued
