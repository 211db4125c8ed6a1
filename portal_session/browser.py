"""
Host runtime seen by the session layer.

``Tab`` is everything the session code is allowed to touch in a browser tab:
its location, durable (profile-wide) storage, per-tab storage, frame status,
navigation, a named broadcast channel and hidden frames. ``BrowserProfile``
and ``BrowserTab`` are an in-memory host: several tabs of one profile share
durable storage (with change events delivered to the *other* tabs) and a
broadcast hub. A suspended tab stops receiving channel messages but still gets
storage events, which is the behaviour the cross-tab fallback relies on.
"""
import logging
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable
from urllib.parse import parse_qs, urljoin, urlsplit

logger = logging.getLogger("portal_session.browser")


@dataclass(frozen=True)
class StorageEvent:
    key: str
    old_value: str | None
    new_value: str | None


StorageListener = Callable[[StorageEvent], None]


class Storage(ABC):
    """Minimal Web Storage surface (string keys and values)."""

    @abstractmethod
    def get_item(self, key: str) -> str | None: ...

    @abstractmethod
    def set_item(self, key: str, value: str) -> None: ...

    @abstractmethod
    def remove_item(self, key: str) -> None: ...

    @abstractmethod
    def keys(self) -> list[str]: ...


class MemoryStorage:
    """
    A storage area shared by every view bound to it.

    Writes made through one view notify listeners registered by other owners,
    mirroring the ``storage`` event that never fires in the writing tab.
    """

    def __init__(self):
        self._items: dict[str, str] = {}
        self._listeners: list[tuple[object, StorageListener]] = []

    def view(self, owner: object) -> "BoundStorage":
        return BoundStorage(self, owner)

    def add_listener(self, owner: object, callback: StorageListener) -> Callable[[], None]:
        entry = (owner, callback)
        self._listeners.append(entry)

        def _remove() -> None:
            if entry in self._listeners:
                self._listeners.remove(entry)

        return _remove

    def _write(self, key: str, value: str | None, origin: object) -> None:
        old = self._items.get(key)
        if value is None:
            if key not in self._items:
                return
            del self._items[key]
        else:
            self._items[key] = str(value)
        event = StorageEvent(key=key, old_value=old, new_value=value)
        for owner, callback in list(self._listeners):
            if owner is origin:
                continue
            try:
                callback(event)
            except Exception as e:
                logger.error(f"Storage listener failed for key {key}: {e}")


class BoundStorage(Storage):
    """A tab's handle on a ``MemoryStorage`` area."""

    def __init__(self, area: MemoryStorage, owner: object):
        self._area = area
        self._owner = owner

    def get_item(self, key: str) -> str | None:
        return self._area._items.get(key)

    def set_item(self, key: str, value: str) -> None:
        self._area._write(key, value, self._owner)

    def remove_item(self, key: str) -> None:
        self._area._write(key, None, self._owner)

    def keys(self) -> list[str]:
        return list(self._area._items)


class BroadcastChannel:
    def __init__(self, hub: "BroadcastHub", name: str, tab: "Tab"):
        self.name = name
        self.tab = tab
        self.on_message: Callable[[dict], None] | None = None
        self.closed = False
        self._hub = hub

    def post_message(self, data: dict) -> None:
        if self.closed:
            raise RuntimeError(f"BroadcastChannel {self.name} is closed")
        self._hub._deliver(self, dict(data))

    def close(self) -> None:
        self.closed = True
        self._hub._channels.discard(self)


class BroadcastHub:
    """Same-origin message hub; a channel never receives its own posts."""

    def __init__(self):
        self._channels: set[BroadcastChannel] = set()

    def open(self, name: str, tab: "Tab") -> BroadcastChannel:
        channel = BroadcastChannel(self, name, tab)
        self._channels.add(channel)
        return channel

    def _deliver(self, sender: BroadcastChannel, data: dict) -> None:
        for channel in list(self._channels):
            if channel is sender or channel.name != sender.name or channel.closed:
                continue
            if getattr(channel.tab, "suspended", False):
                logger.debug(f"Dropping {sender.name} message for suspended tab")
                continue
            if channel.on_message is None:
                continue
            try:
                channel.on_message(dict(data))
            except Exception as e:
                logger.error(f"BroadcastChannel {channel.name} handler failed: {e}")


@dataclass
class HiddenFrame:
    url: str
    id: str = field(default_factory=lambda: uuid.uuid4().hex)


class Tab(ABC):
    """Host interface for one browsing context."""

    @property
    @abstractmethod
    def url(self) -> str: ...

    @property
    @abstractmethod
    def local_storage(self) -> Storage: ...

    @property
    @abstractmethod
    def session_storage(self) -> Storage: ...

    @property
    @abstractmethod
    def is_framed(self) -> bool: ...

    @abstractmethod
    def navigate(self, url: str) -> None:
        """Assign ``location.href``."""

    @abstractmethod
    def replace(self, url: str) -> None:
        """``location.replace``: navigate without a history entry."""

    @abstractmethod
    def replace_history(self, url: str) -> None:
        """Rewrite the address bar without loading anything."""

    @abstractmethod
    def open_broadcast_channel(self, name: str) -> BroadcastChannel | None:
        """Return ``None`` when the host has no tab-messaging channel."""

    @abstractmethod
    def add_storage_listener(self, callback: StorageListener) -> Callable[[], None]: ...

    @abstractmethod
    def open_hidden_frame(self, url: str) -> HiddenFrame: ...

    @abstractmethod
    def remove_frame(self, frame: HiddenFrame) -> None: ...

    # Derived helpers

    @property
    def origin(self) -> str:
        parts = urlsplit(self.url)
        return f"{parts.scheme}://{parts.netloc}"

    @property
    def path(self) -> str:
        return urlsplit(self.url).path or "/"

    def query_param(self, name: str) -> str | None:
        values = parse_qs(urlsplit(self.url).query, keep_blank_values=True).get(name)
        return values[0] if values else None

    def fragment_param(self, name: str) -> str | None:
        fragment = urlsplit(self.url).fragment.lstrip("#")
        values = parse_qs(fragment, keep_blank_values=True).get(name)
        return values[0] if values else None


class BrowserProfile:
    """One browser profile: shared durable storage and a broadcast hub."""

    def __init__(self, supports_broadcast: bool = True):
        self.local_area = MemoryStorage()
        self.hub = BroadcastHub()
        self.supports_broadcast = supports_broadcast
        self.tabs: list["BrowserTab"] = []

    def open_tab(self, url: str, framed: bool = False) -> "BrowserTab":
        tab = BrowserTab(self, url, framed=framed)
        self.tabs.append(tab)
        return tab


class BrowserTab(Tab):
    def __init__(self, profile: BrowserProfile, url: str, framed: bool = False):
        self.profile = profile
        self.suspended = False
        self.frames: list[HiddenFrame] = []
        self.navigations: list[tuple[str, str]] = []
        self._url = url
        self._framed = framed
        self._local = profile.local_area.view(self)
        self._session_area = MemoryStorage()
        self._session = self._session_area.view(self)

    @property
    def url(self) -> str:
        return self._url

    @property
    def local_storage(self) -> Storage:
        return self._local

    @property
    def session_storage(self) -> Storage:
        return self._session

    @property
    def is_framed(self) -> bool:
        return self._framed

    @property
    def last_navigation(self) -> tuple[str, str] | None:
        return self.navigations[-1] if self.navigations else None

    def navigate(self, url: str) -> None:
        self._url = urljoin(self._url, url)
        self.navigations.append(("assign", self._url))

    def replace(self, url: str) -> None:
        self._url = urljoin(self._url, url)
        self.navigations.append(("replace", self._url))

    def replace_history(self, url: str) -> None:
        self._url = urljoin(self._url, url)

    def open_broadcast_channel(self, name: str) -> BroadcastChannel | None:
        if not self.profile.supports_broadcast:
            return None
        return self.profile.hub.open(name, self)

    def add_storage_listener(self, callback: StorageListener) -> Callable[[], None]:
        return self.profile.local_area.add_listener(self, callback)

    def open_hidden_frame(self, url: str) -> HiddenFrame:
        frame = HiddenFrame(url=url)
        self.frames.append(frame)
        return frame

    def remove_frame(self, frame: HiddenFrame) -> None:
        self.frames.remove(frame)

    def __repr__(self) -> str:
        return f"BrowserTab(url={self._url!r}, framed={self._framed})"


def snapshot(storage: Storage) -> dict[str, Any]:
    """Copy of a storage area's contents, mostly for diagnostics."""
    return {k: storage.get_item(k) for k in storage.keys()}
