"""
Cross-tab logout notifications.

Publishing posts on the ``mn-auth`` broadcast channel and also writes a
timestamp to the durable ``mn-logout`` key. Some engines do not deliver channel
messages to suspended tabs; the storage write's change event reaches them
instead. Receivers therefore see the same logical logout up to twice and must
be idempotent.
"""
import logging
import secrets
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable

from portal_session.browser import BroadcastChannel, StorageEvent, Tab

logger = logging.getLogger("portal_session.bus")

CHANNEL_NAME = "mn-auth"
LOGOUT_MESSAGE_TYPE = "mn-logout"
LOGOUT_MARKER_KEY = "mn-logout"
TAB_ID_KEY = "mn-tabid"


def now_ms() -> int:
    return int(time.time() * 1000)


class LogoutSource(str, Enum):
    USER = "user"
    IDP = "idp"


@dataclass(frozen=True)
class LogoutEvent:
    sender: str | None
    source: LogoutSource = LogoutSource.USER
    ts: int = field(default_factory=now_ms)
    via_storage: bool = False

    def to_message(self) -> dict:
        message = {"type": LOGOUT_MESSAGE_TYPE, "ts": self.ts}
        if self.sender:
            message["sender"] = self.sender
        if self.source is LogoutSource.IDP:
            message["source"] = LogoutSource.IDP.value
        return message

    @classmethod
    def from_message(cls, data: dict) -> "LogoutEvent | None":
        if not isinstance(data, dict) or data.get("type") != LOGOUT_MESSAGE_TYPE:
            return None
        source = LogoutSource.IDP if data.get("source") == LogoutSource.IDP.value else LogoutSource.USER
        ts = data.get("ts")
        return cls(sender=data.get("sender"), source=source, ts=ts if isinstance(ts, int) else now_ms())


def ensure_tab_id(tab: Tab) -> str:
    """Return this tab's id, creating and caching it in per-tab storage."""
    try:
        tab_id = tab.session_storage.get_item(TAB_ID_KEY)
        if not tab_id:
            tab_id = secrets.token_hex(8) + format(now_ms(), "x")
            tab.session_storage.set_item(TAB_ID_KEY, tab_id)
        return tab_id
    except Exception as e:
        logger.warning(f"Per-tab storage unavailable, using ephemeral tab id: {e}")
        return secrets.token_hex(8)


LogoutHandler = Callable[[LogoutEvent], None]


class CrossTabBus:
    """
    Best-effort logout broadcast for one tab.

    Args:
        tab: Host tab
        in_progress: Predicate telling whether this tab is already logging out;
            IdP-sourced messages are dropped while it returns True
    """

    def __init__(self, tab: Tab, in_progress: Callable[[], bool] | None = None):
        self.tab = tab
        self.tab_id = ensure_tab_id(tab)
        self._in_progress = in_progress or (lambda: False)
        self._handlers: list[LogoutHandler] = []
        self._channel: BroadcastChannel | None = None
        self._remove_storage_listener: Callable[[], None] | None = None

    def _open_channel(self) -> BroadcastChannel | None:
        if self._channel is None:
            try:
                self._channel = self.tab.open_broadcast_channel(CHANNEL_NAME)
            except Exception as e:
                logger.warning(f"Broadcast channel unavailable: {e}")
                return None
            if self._channel is not None:
                self._channel.on_message = self._on_channel_message
        return self._channel

    def publish(self, event: LogoutEvent) -> None:
        channel = self._open_channel()
        if channel is not None:
            try:
                channel.post_message(event.to_message())
            except Exception as e:
                logger.warning(f"Logout broadcast failed: {e}")

        try:
            self.tab.local_storage.set_item(LOGOUT_MARKER_KEY, str(event.ts))
        except Exception as e:
            logger.warning(f"Logout marker write failed: {e}")

    def subscribe(self, handler: LogoutHandler) -> Callable[[], None]:
        self._open_channel()
        if self._remove_storage_listener is None:
            self._remove_storage_listener = self.tab.add_storage_listener(self._on_storage_event)
        self._handlers.append(handler)

        def _unsubscribe() -> None:
            if handler in self._handlers:
                self._handlers.remove(handler)

        return _unsubscribe

    def close(self) -> None:
        self._handlers.clear()
        if self._remove_storage_listener is not None:
            self._remove_storage_listener()
            self._remove_storage_listener = None
        if self._channel is not None:
            try:
                self._channel.close()
            except Exception as e:
                logger.debug(f"Channel close failed: {e}")
            self._channel = None

    def _dispatch(self, event: LogoutEvent) -> None:
        for handler in list(self._handlers):
            try:
                handler(event)
            except Exception as e:
                logger.error(f"Logout handler failed: {e}")

    def _on_channel_message(self, data: dict) -> None:
        event = LogoutEvent.from_message(data)
        if event is None:
            return
        if event.sender and event.sender == self.tab_id:
            return
        if event.source is LogoutSource.IDP and self._in_progress():
            return
        self._dispatch(event)

    def _on_storage_event(self, event: StorageEvent) -> None:
        if event.key != LOGOUT_MARKER_KEY or event.new_value is None:
            return
        # The marker carries no source, so it may be the IdP receiver's echo
        if self._in_progress():
            return
        try:
            ts = int(event.new_value)
        except ValueError:
            ts = now_ms()
        self._dispatch(LogoutEvent(sender=None, ts=ts, via_storage=True))
