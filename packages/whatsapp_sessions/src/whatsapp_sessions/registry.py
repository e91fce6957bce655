"""
Instance Registry

In-memory map from SessionKey to the live handle of the current connection
attempt. Only the lifecycle state machine mutates handle fields; everything
else should treat a handle as a snapshot.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Iterator

from whatsapp_sessions.adapters.base import ConnectionUpdate, RemoteUser, Transport
from whatsapp_sessions.keys import SessionKey
from whatsapp_sessions.persistence.models import InstanceStatus

if TYPE_CHECKING:
    from whatsapp_sessions.handshake import PairingHandshake


@dataclass(frozen=True)
class ResolvedIdentity:
    """Account a connected session is logged in as."""

    id: str
    name: str
    phone: str

    @classmethod
    def from_user(cls, user: RemoteUser, default_name: str = "Usuario") -> "ResolvedIdentity":
        # "5511999999999:12@s.whatsapp.net" -> "5511999999999"
        phone = user.id.split(":")[0].split("@")[0]
        return cls(id=user.id, name=user.name or default_name, phone=phone)

    def to_dict(self) -> dict[str, str]:
        return {"id": self.id, "name": self.name, "phone": self.phone}


@dataclass(eq=False)
class LiveHandle:
    """State of one connection attempt for a session key."""

    key: SessionKey
    handshake: "PairingHandshake"
    status: InstanceStatus = InstanceStatus.INITIALIZING
    transport: Transport | None = None
    save_credentials: Callable[[], Awaitable[None]] | None = None
    qr: str | None = None
    identity: ResolvedIdentity | None = None
    last_close_code: int | None = None
    persist_pending: bool = False
    unsubscribe: Callable[[], None] | None = None
    pump: asyncio.Task | None = None
    events: asyncio.Queue = field(default_factory=asyncio.Queue)
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    connected_at: datetime | None = None

    @property
    def connected(self) -> bool:
        return self.status is InstanceStatus.CONNECTED

    def enqueue(self, update: ConnectionUpdate) -> None:
        self.events.put_nowait(update)

    def snapshot(self) -> dict[str, Any]:
        return {
            "key": str(self.key),
            "tenant_token": self.key.tenant_token,
            "instance_id": self.key.instance_id,
            "status": self.status.value,
            "identity": self.identity.to_dict() if self.identity else None,
            "has_qr": self.qr is not None,
            "last_close_code": self.last_close_code,
            "persist_pending": self.persist_pending,
            "created_at": self.created_at.isoformat(),
            "connected_at": self.connected_at.isoformat() if self.connected_at else None,
        }


class InstanceRegistry:
    """Holds at most one live handle per session key."""

    def __init__(self):
        self._handles: dict[SessionKey, LiveHandle] = {}

    def put(self, handle: LiveHandle) -> LiveHandle | None:
        """
        Register ``handle`` as the current one for its key.

        Returns:
            The handle it displaced, which the caller must tear down
        """
        previous = self._handles.get(handle.key)
        self._handles[handle.key] = handle
        return previous if previous is not handle else None

    def get(self, key: SessionKey) -> LiveHandle | None:
        return self._handles.get(key)

    def remove(self, key: SessionKey, handle: LiveHandle | None = None) -> LiveHandle | None:
        """
        Remove the handle for ``key``.

        With ``handle`` given, removal only happens if it is still the
        current one, so a late cleanup cannot evict a newer attempt.
        """
        current = self._handles.get(key)
        if current is None or (handle is not None and current is not handle):
            return None
        del self._handles[key]
        return current

    def is_current(self, handle: LiveHandle) -> bool:
        return self._handles.get(handle.key) is handle

    def for_each(self, fn: Callable[[LiveHandle], None]) -> None:
        for handle in list(self._handles.values()):
            fn(handle)

    def for_tenant(self, tenant_token: str) -> list[LiveHandle]:
        """Live handles of a tenant, newest first."""
        handles = [h for h in self._handles.values() if h.key.tenant_token == tenant_token]
        return sorted(handles, key=lambda h: h.created_at, reverse=True)

    def handles(self) -> list[LiveHandle]:
        return list(self._handles.values())

    def clear(self) -> None:
        self._handles.clear()

    def __contains__(self, key: SessionKey) -> bool:
        return key in self._handles

    def __iter__(self) -> Iterator[LiveHandle]:
        return iter(list(self._handles.values()))

    def __len__(self) -> int:
        return len(self._handles)
