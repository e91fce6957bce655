"""
Instance Manager

Entry point used by the HTTP layer and the CLI. Validates requests, starts
and stops connection attempts through the lifecycle, and answers status
queries by merging live handles (source of truth while the process runs)
with persisted rows.
"""

import asyncio
import logging
import re
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable

from gatewaycore.db import get_sessionmaker
from gatewaycore.redis import get_redis_client
from gatewaycore.settings import Settings, get_settings
from whatsapp_sessions.adapters.base import AdapterError, ConnectionAdapter
from whatsapp_sessions.adapters.evolution import EvolutionConnectionAdapter
from whatsapp_sessions.adapters.stub import StubConnectionAdapter
from whatsapp_sessions.contracts.event_types import InstanceEventType
from whatsapp_sessions.exceptions import (
    NotConnectedError,
    NotFoundError,
    PersistenceError,
    SendFailedError,
    ValidationError,
)
from whatsapp_sessions.handshake import PairingHandshake, PairingOutcome
from whatsapp_sessions.keys import SessionKey, new_instance_id, validate_token
from whatsapp_sessions.lifecycle import InstanceLifecycle
from whatsapp_sessions.persistence.models import InstanceStatus
from whatsapp_sessions.persistence.repo import InstanceRecord, MessageRecord, SessionStore, TenantRecord
from whatsapp_sessions.qr import render_qr_data_url
from whatsapp_sessions.reconciler import ReconcileReport, StartupReconciler
from whatsapp_sessions.registry import InstanceRegistry, LiveHandle, ResolvedIdentity
from whatsapp_sessions.streams.producer import InstanceEventProducer
from whatsapp_sessions.supervisor import ReconnectPolicy

logger = logging.getLogger(__name__)

MAX_MESSAGES_PAGE = 500


@dataclass(frozen=True)
class SessionResult:
    """Answer to create-or-resume: a QR to scan, a connected account, or a pending reconnect."""

    instance_id: str
    status: InstanceStatus
    qr: str | None = None
    identity: ResolvedIdentity | None = None
    reused: bool = False

    @property
    def connected(self) -> bool:
        return self.status is InstanceStatus.CONNECTED

    @classmethod
    def from_outcome(cls, outcome: PairingOutcome) -> "SessionResult":
        if outcome.connected:
            return cls(instance_id=outcome.key.instance_id, status=InstanceStatus.CONNECTED, identity=outcome.identity)
        return cls(instance_id=outcome.key.instance_id, status=InstanceStatus.QR_GENERATED, qr=outcome.qr)

    def to_dict(self) -> dict[str, Any]:
        return {
            "instance_id": self.instance_id,
            "connected": self.connected,
            "status": self.status.value,
            "qr": self.qr,
            "user": self.identity.to_dict() if self.identity else None,
        }


@dataclass(frozen=True)
class StatusReport:
    instance_id: str | None
    status: str
    identity: ResolvedIdentity | None = None
    live: bool = False

    @property
    def connected(self) -> bool:
        return self.status == InstanceStatus.CONNECTED.value and self.identity is not None

    def to_dict(self) -> dict[str, Any]:
        return {
            "instance_id": self.instance_id,
            "connected": self.connected,
            "status": self.status,
            "user": self.identity.to_dict() if self.identity else None,
            "live": self.live,
        }


@dataclass(frozen=True)
class SendResult:
    instance_id: str
    to: str
    message_id: str | None
    recorded: bool

    def to_dict(self) -> dict[str, Any]:
        return {
            "instance_id": self.instance_id,
            "to": self.to,
            "message_id": self.message_id,
            "recorded": self.recorded,
        }


def normalize_destination(destination: str | None) -> str:
    """Keep only the digits of a phone number."""
    digits = re.sub(r"\D", "", destination or "")
    if not digits:
        raise ValidationError("number is required")
    return digits


class InstanceManager:
    """
    Multi-tenant WhatsApp instance manager.

    Args:
        store: Session Store
        adapter: Connection adapter for the protocol engine
        sessions_dir: Root of the per-instance credential directories
        registry: Live handle registry (a new one by default)
        policy: Reconnection policy
        pairing_timeout: Seconds a caller waits for a QR code or a connection
        qr_renderer: Turns a QR payload into a displayable image
        events: Optional lifecycle event producer
        default_tenant_name: Name for tenants created implicitly
    """

    def __init__(
        self,
        store: SessionStore,
        adapter: ConnectionAdapter,
        sessions_dir: str | Path,
        registry: InstanceRegistry | None = None,
        policy: ReconnectPolicy | None = None,
        pairing_timeout: float = 30.0,
        qr_renderer: Callable[[str], str] = render_qr_data_url,
        events: InstanceEventProducer | None = None,
        default_tenant_name: str = "Usuario",
    ):
        self.store = store
        self.adapter = adapter
        self.registry = registry if registry is not None else InstanceRegistry()
        self.pairing_timeout = pairing_timeout
        self.default_tenant_name = default_tenant_name
        self.events = events
        self.lifecycle = InstanceLifecycle(
            registry=self.registry,
            store=store,
            adapter=adapter,
            sessions_dir=sessions_dir,
            policy=policy,
            qr_renderer=qr_renderer,
            events=events,
            default_tenant_name=default_tenant_name,
        )
        self.reconciler = StartupReconciler(self.lifecycle, pairing_timeout=pairing_timeout)

    @property
    def supervisor(self):
        return self.lifecycle.supervisor

    # =========================================================================
    # Sessions
    # =========================================================================

    async def create_or_resume_session(self, tenant_token: str | None) -> SessionResult:
        """
        Return the tenant's connected session, its pending QR, or start a new instance.

        A new instance is recorded as ``initializing`` and then waits up to
        ``pairing_timeout`` for a QR code (fresh credentials) or an
        immediate connection.
        """
        token = validate_token(tenant_token)
        handles = self.registry.for_tenant(token)

        for handle in handles:
            if handle.connected and handle.identity is not None:
                return SessionResult(handle.key.instance_id, InstanceStatus.CONNECTED, identity=handle.identity, reused=True)
        for handle in handles:
            if handle.status is InstanceStatus.QR_GENERATED and handle.qr:
                return SessionResult(handle.key.instance_id, InstanceStatus.QR_GENERATED, qr=handle.qr, reused=True)
        for handle in handles:
            if handle.status is InstanceStatus.CONNECTING and handle.identity is not None:
                # Paired session in the middle of a reconnect
                return SessionResult(handle.key.instance_id, InstanceStatus.CONNECTING, reused=True)

        key = SessionKey(token, new_instance_id())
        logger.info(f"Creating instance {key}", extra={"tenant_token": token, "instance_id": key.instance_id})
        try:
            self.store.record_instance(
                token, key.instance_id, InstanceStatus.INITIALIZING, tenant_name=self.default_tenant_name
            )
        except PersistenceError as e:
            logger.warning(f"Instance row for {key} not written yet: {e}", extra={"session_key": str(key)})

        return await self._start_and_wait(key)

    async def resume_instance(self, tenant_token: str | None, instance_id: str | None) -> SessionResult:
        """Reconnect a known instance (QR if its credentials are gone)."""
        key = SessionKey.of(tenant_token, instance_id)
        handle = self.registry.get(key)
        if handle is None and self.store.get_instance(key.tenant_token, key.instance_id) is None:
            raise NotFoundError("Instance not found", tenant_token=key.tenant_token, instance_id=key.instance_id)

        if handle is not None:
            if handle.connected and handle.identity is not None:
                return SessionResult(key.instance_id, InstanceStatus.CONNECTED, identity=handle.identity, reused=True)
            if handle.status is InstanceStatus.QR_GENERATED and handle.qr:
                return SessionResult(key.instance_id, InstanceStatus.QR_GENERATED, qr=handle.qr, reused=True)
            if not handle.handshake.resolved:
                # Join the attempt already in flight instead of replacing it
                outcome = await handle.handshake.wait(self.pairing_timeout)
                return SessionResult.from_outcome(outcome)

        self.supervisor.cancel(key)
        return await self._start_and_wait(key)

    async def _start_and_wait(self, key: SessionKey) -> SessionResult:
        handshake = PairingHandshake(key)
        await self.lifecycle.start_attempt(key, handshake)
        outcome = await handshake.wait(self.pairing_timeout)
        return SessionResult.from_outcome(outcome)

    # =========================================================================
    # Queries
    # =========================================================================

    def get_status(self, tenant_token: str | None, instance_id: str | None = None) -> StatusReport:
        """
        Status of one instance, or of the tenant's best instance when ``instance_id`` is omitted.

        ``connected`` is only reported for a live handle with a resolved identity.
        """
        if instance_id:
            key = SessionKey.of(tenant_token, instance_id)
            handle = self.registry.get(key)
            if handle is not None:
                return self._report_live(handle)
            row = self.store.get_instance(key.tenant_token, key.instance_id)
            if row is None:
                raise NotFoundError("Instance not found", tenant_token=key.tenant_token, instance_id=key.instance_id)
            return self._report_row(row)

        token = validate_token(tenant_token)
        handles = self.registry.for_tenant(token)
        for handle in handles:
            if handle.connected:
                return self._report_live(handle)
        if handles:
            return self._report_live(handles[0])

        rows = self.store.get_instances_for_tenant(token)
        if rows:
            active = [row for row in rows if row.status != InstanceStatus.DISCONNECTED.value]
            return self._report_row(active[0] if active else rows[0])
        return StatusReport(instance_id=None, status="not_found")

    def _report_live(self, handle: LiveHandle) -> StatusReport:
        return StatusReport(
            instance_id=handle.key.instance_id,
            status=handle.status.value,
            identity=handle.identity if handle.connected else None,
            live=True,
        )

    def _report_row(self, row: InstanceRecord) -> StatusReport:
        # Without a live handle nothing is connected, whatever the row says
        status = row.status
        if status in (InstanceStatus.CONNECTED.value, InstanceStatus.CONNECTING.value):
            status = InstanceStatus.DISCONNECTED.value
        return StatusReport(instance_id=row.instance_id, status=status)

    def list_instances(self, tenant_token: str | None) -> list[dict[str, Any]]:
        """Persisted instances of a tenant merged with live state, newest first."""
        token = validate_token(tenant_token)
        rows = self.store.get_instances_for_tenant(token)
        live = {h.key.instance_id: h for h in self.registry.for_tenant(token)}

        instances = []
        for row in rows:
            handle = live.pop(row.instance_id, None)
            report = self._report_live(handle) if handle else self._report_row(row)
            entry = report.to_dict()
            entry["persisted_status"] = row.status
            entry["created_at"] = row.created_at.isoformat()
            instances.append(entry)

        # Live handles whose row was never written
        for handle in live.values():
            entry = self._report_live(handle).to_dict()
            entry["persisted_status"] = None
            entry["created_at"] = handle.created_at.isoformat()
            instances.append(entry)
        return instances

    def get_messages(
        self,
        tenant_token: str | None,
        instance_id: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[MessageRecord]:
        token = validate_token(tenant_token)
        if instance_id:
            instance_id = SessionKey.of(token, instance_id).instance_id
        if not 1 <= limit <= MAX_MESSAGES_PAGE:
            raise ValidationError(f"limit must be between 1 and {MAX_MESSAGES_PAGE}", tenant_token=token)
        if offset < 0:
            raise ValidationError("offset must be >= 0", tenant_token=token)
        return self.store.get_messages(token, instance_id=instance_id, limit=limit, offset=offset)

    def describe_live(self) -> list[dict[str, Any]]:
        snapshots: list[dict[str, Any]] = []
        self.registry.for_each(lambda handle: snapshots.append(handle.snapshot()))
        return snapshots

    # =========================================================================
    # Commands
    # =========================================================================

    async def send(
        self,
        tenant_token: str | None,
        instance_id: str | None,
        destination: str | None,
        text: str | None,
        message_type: str = "text",
    ) -> SendResult:
        """
        Send a text message through a connected instance.

        A message row is recorded after the transport accepted the message;
        a failed record does not turn the send into a failure.
        """
        key = SessionKey.of(tenant_token, instance_id)
        digits = normalize_destination(destination)
        if not text:
            raise ValidationError("message is required", tenant_token=key.tenant_token, instance_id=key.instance_id)

        handle = self.registry.get(key)
        if handle is None or not handle.connected or handle.transport is None:
            raise NotConnectedError(
                "Instance is not connected", tenant_token=key.tenant_token, instance_id=key.instance_id
            )

        jid = f"{digits}@s.whatsapp.net"
        try:
            message_id = await handle.transport.send(jid, text)
        except AdapterError as e:
            raise SendFailedError(
                f"Failed to send message: {e}",
                tenant_token=key.tenant_token,
                instance_id=key.instance_id,
                details={"code": e.code, "retryable": e.retryable},
            ) from e

        recorded = self._record_message(key, handle, digits, text, message_type)
        logger.info(
            f"Message sent to {digits} from {key}",
            extra={"session_key": str(key), "message_id": message_id, "recorded": recorded},
        )
        return SendResult(instance_id=key.instance_id, to=digits, message_id=message_id, recorded=recorded)

    def _record_message(self, key: SessionKey, handle: LiveHandle, to: str, text: str, message_type: str) -> bool:
        sender = handle.identity.phone if handle.identity and handle.identity.phone else "system"
        try:
            row = self.store.get_instance(key.tenant_token, key.instance_id)
            if row is None:
                row = self.store.record_instance(
                    key.tenant_token, key.instance_id, handle.status, tenant_name=self.default_tenant_name
                )
            self.store.insert_message(row.id, sender, to, text, message_type)
        except PersistenceError as e:
            logger.error(f"Message to {to} sent but not recorded: {e}", extra={"session_key": str(key)})
            return False
        return True

    async def disconnect(self, tenant_token: str | None, instance_id: str | None) -> None:
        """
        Log out and remove an instance.

        The live handle is dropped, the row is marked ``disconnected`` and the
        credential directory is deleted.
        """
        key = SessionKey.of(tenant_token, instance_id)
        handle = self.registry.get(key)
        row = None
        try:
            row = self.store.get_instance(key.tenant_token, key.instance_id)
        except PersistenceError:
            if handle is None:
                raise

        if handle is None and row is None:
            raise NotFoundError("Instance not found", tenant_token=key.tenant_token, instance_id=key.instance_id)

        if handle is not None:
            await self.lifecycle.discard(handle, logout=True)
            handle.handshake.fail(
                NotConnectedError(
                    "Instance was disconnected", tenant_token=key.tenant_token, instance_id=key.instance_id
                )
            )
        self.supervisor.cancel(key)

        if row is not None:
            try:
                self.store.update_instance_status(key.tenant_token, key.instance_id, InstanceStatus.DISCONNECTED)
            except PersistenceError as e:
                logger.warning(f"Could not persist disconnect of {key}: {e}", extra={"session_key": str(key)})

        credential_dir = self.lifecycle.credential_dir(key)
        await asyncio.to_thread(shutil.rmtree, credential_dir, ignore_errors=True)

        if self.events is not None:
            self.events.publish(InstanceEventType.REMOVED, key, {"status": InstanceStatus.DISCONNECTED.value})
        logger.info(f"Instance {key} disconnected and removed", extra={"session_key": str(key)})

    def register_tenant(self, tenant_token: str | None, name: str | None = None) -> TenantRecord:
        """Create a tenant (or rename it when ``name`` is given)."""
        token = validate_token(tenant_token)
        name = name.strip() if name else None
        existing = self.store.get_tenant_by_token(token)
        if existing is not None and not name:
            return existing
        return self.store.upsert_tenant(token, name or self.default_tenant_name)

    # =========================================================================
    # Process lifecycle
    # =========================================================================

    def create_schema(self) -> None:
        self.store.create_schema()

    async def restore(self) -> ReconcileReport:
        """Reopen every instance persisted as connected."""
        return await self.reconciler.run()

    async def shutdown(self) -> None:
        """Close all transports without logging out; sessions stay restorable."""
        await self.lifecycle.shutdown()
        await self.adapter.close()


def build_adapter(settings: Settings) -> ConnectionAdapter:
    """Connection adapter selected by WHATSAPP_ADAPTER."""
    if settings.WHATSAPP_ADAPTER == "evolution":
        return EvolutionConnectionAdapter(
            api_url=settings.EVOLUTION_API_URL,
            api_key=settings.EVOLUTION_API_KEY,
            poll_interval=settings.EVOLUTION_POLL_INTERVAL_SECONDS,
        )

    return StubConnectionAdapter(auto_pair_seconds=settings.STUB_AUTO_PAIR_SECONDS)


def build_instance_manager(settings: Settings | None = None, session_factory=None) -> InstanceManager:
    """
    Wire an InstanceManager from settings.

    Args:
        settings: Gateway settings (defaults to get_settings())
        session_factory: SQLAlchemy session factory (defaults to the cached sessionmaker)
    """
    settings = settings or get_settings()

    events = None
    if settings.INSTANCE_EVENTS_ENABLED:
        events = InstanceEventProducer(get_redis_client(), stream_name=settings.INSTANCE_EVENTS_STREAM)

    return InstanceManager(
        store=SessionStore(session_factory or get_sessionmaker()),
        adapter=build_adapter(settings),
        sessions_dir=settings.SESSIONS_DIR,
        policy=ReconnectPolicy.from_settings(settings),
        pairing_timeout=settings.PAIRING_TIMEOUT_SECONDS,
        events=events,
        default_tenant_name=settings.DEFAULT_TENANT_NAME,
    )
