"""
Connection Adapter Base

Interface to the WhatsApp protocol engine. An adapter opens a transport for
a credential directory; the transport emits connection updates
(QR payload, connecting/open/close) and exposes send, logout and terminate.
A transport that has emitted ``close`` is unusable and must be replaced.

Implementations: Evolution API (production), Stub (development and tests).
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum, IntEnum
from pathlib import Path
from typing import Any, Awaitable, Callable


class AdapterError(Exception):
    """Error from the protocol engine."""

    def __init__(
        self,
        message: str,
        code: str | None = None,
        details: dict[str, Any] | None = None,
        retryable: bool = False,
    ):
        super().__init__(message)
        self.code = code
        self.details = details or {}
        self.retryable = retryable


class ConnectionState(str, Enum):
    """Connection state reported in an update."""

    CONNECTING = "connecting"
    OPEN = "open"
    CLOSE = "close"


class DisconnectReason(IntEnum):
    """Close codes used by the WhatsApp Web protocol."""

    LOGGED_OUT = 401
    CONNECTION_LOST = 408
    MULTIDEVICE_MISMATCH = 411
    CONNECTION_CLOSED = 428
    CONNECTION_REPLACED = 440
    BAD_SESSION = 500
    UNAVAILABLE_SERVICE = 503
    RESTART_REQUIRED = 515


@dataclass(frozen=True)
class CloseReason:
    code: int | None = None
    message: str = ""

    @property
    def is_logout(self) -> bool:
        return self.code == DisconnectReason.LOGGED_OUT


@dataclass(frozen=True)
class RemoteUser:
    """Account the transport is logged in as (e.g. ``5511999999999:12@s.whatsapp.net``)."""

    id: str
    name: str | None = None


@dataclass(frozen=True)
class ConnectionUpdate:
    """One event of a transport's connection stream."""

    connection: ConnectionState | None = None
    qr: str | None = None
    close_reason: CloseReason | None = None
    user: RemoteUser | None = None


Listener = Callable[[ConnectionUpdate], None]


class Transport(ABC):
    """Live connection to the protocol engine for one credential directory."""

    @abstractmethod
    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a listener; returns a function that removes it."""
        ...

    @property
    @abstractmethod
    def user(self) -> RemoteUser | None:
        ...

    @property
    @abstractmethod
    def closed(self) -> bool:
        ...

    @abstractmethod
    async def send(self, destination: str, text: str) -> str | None:
        """
        Send a text message.

        Args:
            destination: Recipient JID (``<digits>@s.whatsapp.net``)
            text: Message body

        Returns:
            Message ID assigned by the engine, if any

        Raises:
            AdapterError: if the engine rejected the message
        """
        ...

    @abstractmethod
    async def logout(self) -> None:
        """Revoke the session on the remote side."""
        ...

    @abstractmethod
    async def terminate(self) -> None:
        """Close the connection without revoking the session."""
        ...


class BaseTransport(Transport):
    """
    Listener bookkeeping shared by transports.

    Updates emitted before anyone subscribed are kept and replayed to the
    first subscriber, so no update is lost between ``open`` and ``subscribe``.
    """

    def __init__(self):
        self._listeners: list[Listener] = []
        self._backlog: list[ConnectionUpdate] = []
        self._closed = False
        self._user: RemoteUser | None = None

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)
        backlog, self._backlog = self._backlog, []
        for update in backlog:
            listener(update)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def emit(self, update: ConnectionUpdate) -> None:
        if update.connection is ConnectionState.CLOSE:
            self._closed = True
        if update.user is not None:
            self._user = update.user
        if not self._listeners:
            self._backlog.append(update)
            return
        for listener in list(self._listeners):
            listener(update)

    @property
    def user(self) -> RemoteUser | None:
        return self._user

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def listener_count(self) -> int:
        return len(self._listeners)


@dataclass
class OpenedTransport:
    """Result of ``ConnectionAdapter.open``."""

    transport: Transport
    save_credentials: Callable[[], Awaitable[None]]


class ConnectionAdapter(ABC):
    """Factory of transports, one per connection attempt."""

    name = "base"

    @abstractmethod
    async def open(self, credential_dir: Path) -> OpenedTransport:
        """
        Open a transport using the credentials stored in ``credential_dir``.

        Raises:
            AdapterError: if the engine could not be reached
        """
        ...

    async def close(self) -> None:
        """Release adapter-wide resources (HTTP clients, etc)."""
        return None
