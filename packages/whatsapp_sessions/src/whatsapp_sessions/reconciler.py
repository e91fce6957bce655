"""
Startup Reconciler

Runs once at boot: every instance persisted as ``connected`` is reopened
from its credential directory. Instances that do not come back within the
pairing timeout (failure, logout, or a QR code meaning the credentials are
no longer valid) are torn down and corrected to ``disconnected``.
"""

import asyncio
import logging
from dataclasses import dataclass, field

from whatsapp_sessions.exceptions import GatewayError, PersistenceError
from whatsapp_sessions.handshake import PairingHandshake
from whatsapp_sessions.keys import SessionKey
from whatsapp_sessions.lifecycle import InstanceLifecycle
from whatsapp_sessions.persistence.models import InstanceStatus
from whatsapp_sessions.persistence.repo import InstanceRecord

logger = logging.getLogger(__name__)


@dataclass
class ReconcileReport:
    restored: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.restored) + len(self.failed)

    def to_dict(self) -> dict:
        return {"total": self.total, "restored": self.restored, "failed": self.failed}


class StartupReconciler:
    def __init__(self, lifecycle: InstanceLifecycle, pairing_timeout: float = 30.0):
        self.lifecycle = lifecycle
        self.store = lifecycle.store
        self.registry = lifecycle.registry
        self.pairing_timeout = pairing_timeout

    async def run(self) -> ReconcileReport:
        report = ReconcileReport()
        try:
            rows = self.store.get_instances_by_status(InstanceStatus.CONNECTED)
        except PersistenceError as e:
            logger.error(f"Startup restore skipped, could not load instances: {e}")
            return report

        if not rows:
            logger.info("No connected instances to restore")
            return report

        logger.info(f"Restoring {len(rows)} connected instances")
        results = await asyncio.gather(*(self._restore(row) for row in rows))
        for row, restored in zip(rows, results):
            label = f"{row.tenant_token}_{row.instance_id}"
            (report.restored if restored else report.failed).append(label)

        logger.info(
            f"Restore finished: {len(report.restored)} restored, {len(report.failed)} failed",
            extra={"restored": len(report.restored), "failed": len(report.failed)},
        )
        return report

    async def _restore(self, row: InstanceRecord) -> bool:
        try:
            key = SessionKey.of(row.tenant_token, row.instance_id)
        except GatewayError as e:
            logger.warning(f"Skipping unrestorable instance row {row.id}: {e}")
            self._mark_disconnected(row.tenant_token, row.instance_id)
            return False

        handshake = PairingHandshake(key)
        try:
            await self.lifecycle.start_attempt(key, handshake)
            outcome = await handshake.wait(self.pairing_timeout)
        except GatewayError as e:
            logger.warning(
                f"Could not restore {key}: {e}",
                extra={"session_key": str(key), "kind": e.kind},
            )
            await self._give_up(key, handshake)
            return False
        except Exception:
            logger.exception(f"Unexpected error restoring {key}", extra={"session_key": str(key)})
            await self._give_up(key, handshake)
            return False

        if not outcome.connected:
            logger.warning(
                f"Credentials for {key} need a new QR scan",
                extra={"session_key": str(key)},
            )
            await self._give_up(key, handshake)
            return False

        logger.info(f"Restored {key}", extra={"session_key": str(key)})
        return True

    async def _give_up(self, key: SessionKey, handshake: PairingHandshake) -> None:
        current = self.registry.get(key)
        if current is not None and current.handshake is handshake:
            await self.lifecycle.discard(current, logout=False)
        self._mark_disconnected(key.tenant_token, key.instance_id)

    def _mark_disconnected(self, token: str, instance_id: str) -> None:
        try:
            self.store.update_instance_status(token, instance_id, InstanceStatus.DISCONNECTED)
        except PersistenceError as e:
            logger.error(f"Could not mark {token}_{instance_id} disconnected: {e}")
