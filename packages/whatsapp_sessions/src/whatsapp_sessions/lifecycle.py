"""
Instance Lifecycle

Drives each live handle through its states from the adapter's connection
updates:

    initializing -> connecting -> qr_generated -> connected
                        ^                            |
                        +---- non-logout close ------+   (via supervisor)
    any -> disconnected on a logout close or when reconnects run out (terminal)
    any -> removed on explicit disconnect

A handle that reaches ``disconnected`` is dropped from the registry once its
status is written; its row answers status queries from then on.

The transport listener only enqueues; a per-handle pump task applies
updates in arrival order. Updates from a handle that is no longer the
registered one for its key are dropped. Store writes are write-behind: a
failed write is logged and flagged, and the next transition writes the then
current status again.
"""

import asyncio
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable

from whatsapp_sessions.adapters.base import (
    AdapterError,
    CloseReason,
    ConnectionAdapter,
    ConnectionState,
    ConnectionUpdate,
)
from whatsapp_sessions.contracts.event_types import InstanceEventType
from whatsapp_sessions.exceptions import (
    NotConnectedError,
    PersistenceError,
    TerminalLogoutError,
    TransientProtocolError,
)
from whatsapp_sessions.handshake import PairingHandshake, PairingOutcome
from whatsapp_sessions.keys import SessionKey
from whatsapp_sessions.persistence.models import InstanceStatus
from whatsapp_sessions.persistence.repo import SessionStore
from whatsapp_sessions.qr import render_qr_data_url
from whatsapp_sessions.registry import InstanceRegistry, LiveHandle, ResolvedIdentity
from whatsapp_sessions.streams.producer import InstanceEventProducer
from whatsapp_sessions.supervisor import ReconnectionSupervisor, ReconnectPolicy

logger = logging.getLogger(__name__)


class InstanceLifecycle:
    """State machine for live handles, wired to the adapter, store and supervisor."""

    def __init__(
        self,
        registry: InstanceRegistry,
        store: SessionStore,
        adapter: ConnectionAdapter,
        sessions_dir: str | Path,
        policy: ReconnectPolicy | None = None,
        qr_renderer: Callable[[str], str] = render_qr_data_url,
        events: InstanceEventProducer | None = None,
        default_tenant_name: str = "Usuario",
    ):
        self.registry = registry
        self.store = store
        self.adapter = adapter
        self.sessions_dir = Path(sessions_dir)
        self.qr_renderer = qr_renderer
        self.events = events
        self.default_tenant_name = default_tenant_name
        self.supervisor = ReconnectionSupervisor(registry, policy or ReconnectPolicy(), self._reopen)

    def credential_dir(self, key: SessionKey) -> Path:
        return key.credential_dir(self.sessions_dir)

    # =========================================================================
    # Attempts
    # =========================================================================

    async def start_attempt(self, key: SessionKey, handshake: PairingHandshake) -> LiveHandle:
        """
        Start a connection attempt for ``key``.

        The new handle is registered before anything else, and the handle it
        displaces is torn down, so a key never has two live transports. A
        displaced attempt from another chain has its handshake failed so its
        caller is not left waiting. Any failure to open is treated like a
        non-logout close.
        """
        handle = LiveHandle(key=key, handshake=handshake)
        previous = self.registry.put(handle)
        if previous is not None:
            logger.info(f"Replacing live handle for {key}", extra={"session_key": str(key)})
            await self.release(previous)
            if previous.handshake is handshake:
                # Same reconnect chain: keep the account it was paired with
                handle.identity = previous.identity
            else:
                previous.handshake.fail(
                    NotConnectedError(
                        "Connection attempt was replaced by a newer one",
                        tenant_token=key.tenant_token,
                        instance_id=key.instance_id,
                    )
                )

        self._set_status(handle, InstanceStatus.CONNECTING)

        credential_dir = self.credential_dir(key)
        try:
            await asyncio.to_thread(credential_dir.mkdir, parents=True, exist_ok=True)
            opened = await self.adapter.open(credential_dir)
        except (AdapterError, OSError) as e:
            logger.warning(
                f"Could not open transport for {key}: {e}",
                extra={"session_key": str(key), "adapter": self.adapter.name},
            )
            if self.registry.is_current(handle):
                await self._on_transient(handle, CloseReason(message=str(e)))
            return handle
        except Exception as e:
            logger.exception(
                f"Unexpected error opening transport for {key}",
                extra={"session_key": str(key), "adapter": self.adapter.name},
            )
            if self.registry.is_current(handle):
                await self._on_transient(handle, CloseReason(message=f"{type(e).__name__}: {e}"))
            return handle

        if not self.registry.is_current(handle):
            # Replaced or removed while opening
            logger.debug(f"Discarding late transport for {key}", extra={"session_key": str(key)})
            await self._close_transport(opened.transport, logout=False, key=key)
            return handle

        handle.transport = opened.transport
        handle.save_credentials = opened.save_credentials
        handle.pump = asyncio.get_running_loop().create_task(self._pump(handle))
        handle.unsubscribe = opened.transport.subscribe(handle.enqueue)
        return handle

    async def _reopen(self, handle: LiveHandle) -> None:
        await self.start_attempt(handle.key, handle.handshake)

    async def release(self, handle: LiveHandle, logout: bool = False) -> None:
        """
        Detach ``handle`` from its transport and close it.

        With ``logout`` the session is revoked remotely, falling back to a
        plain terminate if logout fails.
        """
        if handle.unsubscribe is not None:
            handle.unsubscribe()
            handle.unsubscribe = None
        if handle.pump is not None and handle.pump is not asyncio.current_task():
            handle.pump.cancel()
        if handle.transport is not None:
            await self._close_transport(handle.transport, logout=logout, key=handle.key)

    async def discard(self, handle: LiveHandle, logout: bool = False) -> bool:
        """
        Release ``handle`` and drop it from the registry.

        Returns:
            True if it was the current handle for its key
        """
        was_current = self.registry.remove(handle.key, handle) is not None
        if was_current:
            self.supervisor.cancel(handle.key)
        await self.release(handle, logout=logout)
        return was_current

    async def _close_transport(self, transport, logout: bool, key: SessionKey) -> None:
        if logout:
            try:
                await transport.logout()
                return
            except AdapterError as e:
                logger.warning(
                    f"Logout failed for {key}, terminating instead: {e}",
                    extra={"session_key": str(key)},
                )
        try:
            await transport.terminate()
        except AdapterError as e:
            logger.warning(f"Terminate failed for {key}: {e}", extra={"session_key": str(key)})

    # =========================================================================
    # Updates
    # =========================================================================

    async def _pump(self, handle: LiveHandle) -> None:
        while True:
            update: ConnectionUpdate = await handle.events.get()
            if not self.registry.is_current(handle):
                logger.debug(
                    f"Ignoring update from replaced handle {handle.key}",
                    extra={"session_key": str(handle.key)},
                )
                return
            try:
                await self.apply(handle, update)
            except Exception:
                logger.exception(
                    f"Failed to apply connection update for {handle.key}",
                    extra={"session_key": str(handle.key)},
                )
            if update.connection is ConnectionState.CLOSE:
                return

    async def apply(self, handle: LiveHandle, update: ConnectionUpdate) -> None:
        """Apply one connection update to ``handle``."""
        if update.qr:
            await self._on_qr(handle, update.qr)
        if update.connection is ConnectionState.OPEN:
            await self._on_open(handle, update)
        elif update.connection is ConnectionState.CLOSE:
            await self._on_close(handle, update.close_reason or CloseReason())

    async def _on_qr(self, handle: LiveHandle, payload: str) -> None:
        image = await asyncio.to_thread(self.qr_renderer, payload)
        if not self.registry.is_current(handle) or handle.connected:
            return

        handle.qr = image
        self._set_status(handle, InstanceStatus.QR_GENERATED)
        self._persist(handle)
        handle.handshake.resolve(PairingOutcome(key=handle.key, qr=image))
        self._publish(InstanceEventType.QR_GENERATED, handle)

    async def _on_open(self, handle: LiveHandle, update: ConnectionUpdate) -> None:
        user = update.user or (handle.transport.user if handle.transport else None)
        if user is None:
            logger.warning(
                f"Session {handle.key} opened without an account id",
                extra={"session_key": str(handle.key)},
            )
            identity = ResolvedIdentity(id=str(handle.key), name=self.default_tenant_name, phone="")
        else:
            identity = ResolvedIdentity.from_user(user, self.default_tenant_name)

        handle.identity = identity
        handle.qr = None
        handle.connected_at = datetime.now(timezone.utc)
        self._set_status(handle, InstanceStatus.CONNECTED)
        self.supervisor.reset(handle.key)
        self._persist(handle, upsert=True)
        handle.handshake.resolve(PairingOutcome(key=handle.key, identity=identity))
        self._publish(InstanceEventType.CONNECTED, handle, {"user": identity.to_dict()})

        if handle.save_credentials is not None:
            try:
                await handle.save_credentials()
            except (AdapterError, OSError) as e:
                logger.warning(
                    f"Could not save credentials for {handle.key}: {e}",
                    extra={"session_key": str(handle.key)},
                )

    async def _on_close(self, handle: LiveHandle, reason: CloseReason) -> None:
        handle.last_close_code = reason.code
        if handle.unsubscribe is not None:
            handle.unsubscribe()
            handle.unsubscribe = None

        if reason.is_logout:
            handle.qr = None
            self.supervisor.cancel(handle.key)
            self._set_status(handle, InstanceStatus.DISCONNECTED)
            self._persist(handle)
            handle.handshake.fail(
                TerminalLogoutError(
                    "Session was logged out",
                    tenant_token=handle.key.tenant_token,
                    instance_id=handle.key.instance_id,
                    details={"code": reason.code},
                )
            )
            self._publish(InstanceEventType.LOGGED_OUT, handle, {"code": reason.code})
            self._retire(handle)
            return

        await self._on_transient(handle, reason)

    async def _on_transient(self, handle: LiveHandle, reason: CloseReason) -> None:
        handle.qr = None
        self._set_status(handle, InstanceStatus.CONNECTING)
        delay = self.supervisor.schedule(handle)
        if delay is not None:
            self._publish(
                InstanceEventType.RECONNECT_SCHEDULED,
                handle,
                {"code": reason.code, "delay": delay, "attempt": self.supervisor.attempts(handle.key)},
            )
            return

        attempts = self.supervisor.policy.max_attempts
        self.supervisor.reset(handle.key)
        self._set_status(handle, InstanceStatus.DISCONNECTED)
        self._persist(handle)
        handle.handshake.fail(
            TransientProtocolError(
                f"Connection lost and not recovered after {attempts} attempts",
                code=reason.code,
                tenant_token=handle.key.tenant_token,
                instance_id=handle.key.instance_id,
                details={"code": reason.code, "message": reason.message},
            )
        )
        self._publish(InstanceEventType.DISCONNECTED, handle, {"code": reason.code, "reason": "retries_exhausted"})
        self._retire(handle)

    def _retire(self, handle: LiveHandle) -> None:
        """Forget a handle whose transport is gone for good; status now comes from its row."""
        if self.registry.remove(handle.key, handle) is not None:
            logger.debug(f"Dropped dead handle {handle.key}", extra={"session_key": str(handle.key)})

    # =========================================================================
    # Side effects
    # =========================================================================

    def _set_status(self, handle: LiveHandle, status: InstanceStatus) -> None:
        previous = handle.status
        handle.status = status
        if previous is not status:
            logger.info(
                f"{handle.key}: {previous.value} -> {status.value}",
                extra={
                    "tenant_token": handle.key.tenant_token,
                    "instance_id": handle.key.instance_id,
                    "status": status.value,
                },
            )

    def _persist(self, handle: LiveHandle, upsert: bool = False) -> None:
        """Checkpoint the handle's current status; failures leave it pending."""
        key = handle.key
        status = handle.status
        if status is InstanceStatus.CONNECTING:
            # Live-only; the row keeps its last stable status so a restart
            # in the middle of a reconnect still restores the session.
            return
        try:
            if upsert or handle.persist_pending:
                self.store.record_instance(
                    key.tenant_token, key.instance_id, status, tenant_name=self.default_tenant_name
                )
            elif not self.store.update_instance_status(key.tenant_token, key.instance_id, status):
                self.store.record_instance(
                    key.tenant_token, key.instance_id, status, tenant_name=self.default_tenant_name
                )
        except PersistenceError as e:
            handle.persist_pending = True
            logger.warning(
                f"Deferred status write for {key}: {e}",
                extra={"session_key": str(key), "status": status.value},
            )
            return
        handle.persist_pending = False

    def _publish(self, event_type: InstanceEventType, handle: LiveHandle, payload: dict[str, Any] | None = None) -> None:
        if self.events is None:
            return
        data = {"status": handle.status.value}
        data.update(payload or {})
        self.events.publish(event_type, handle.key, data)

    async def shutdown(self) -> None:
        """Close every live transport without logging out and forget all handles."""
        await self.supervisor.shutdown()
        for handle in self.registry.handles():
            await self.release(handle, logout=False)
        self.registry.clear()
