"""
Session Store

Repository for tenants, instances and messages. Each public method runs in
its own short transaction and returns plain records, so callers never hold
ORM objects across await points. SQLAlchemy failures surface as
PersistenceError.
"""

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Iterator

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from gatewaycore.db import init_db
from whatsapp_sessions.exceptions import PersistenceError
from whatsapp_sessions.persistence.models import Instance, InstanceStatus, Message, Tenant

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TenantRecord:
    id: int
    token: str
    name: str | None
    created_at: datetime


@dataclass(frozen=True)
class InstanceRecord:
    id: int
    tenant_id: int
    tenant_token: str
    instance_id: str
    status: str
    created_at: datetime
    updated_at: datetime


@dataclass(frozen=True)
class MessageRecord:
    id: int
    instance_pk: int
    instance_id: str
    tenant_token: str
    from_user: str
    to_user: str
    message: str
    message_type: str
    timestamp: datetime

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "instance_id": self.instance_id,
            "token": self.tenant_token,
            "from_user": self.from_user,
            "to_user": self.to_user,
            "message": self.message,
            "message_type": self.message_type,
            "timestamp": self.timestamp.isoformat(),
        }


def _tenant_record(tenant: Tenant) -> TenantRecord:
    return TenantRecord(
        id=tenant.id,
        token=tenant.token,
        name=tenant.name,
        created_at=tenant.created_at,
    )


def _instance_record(instance: Instance, tenant_token: str) -> InstanceRecord:
    return InstanceRecord(
        id=instance.id,
        tenant_id=instance.tenant_id,
        tenant_token=tenant_token,
        instance_id=instance.instance_id,
        status=instance.status,
        created_at=instance.created_at,
        updated_at=instance.updated_at,
    )


def _status_value(status: InstanceStatus | str) -> str:
    return InstanceStatus(status).value


class SessionStore:
    """Durable record of tenants, instances and messages."""

    def __init__(self, session_factory: Callable[[], Session]):
        self._session_factory = session_factory

    @contextmanager
    def _transaction(
        self,
        operation: str,
        tenant_token: str | None = None,
        instance_id: str | None = None,
    ) -> Iterator[Session]:
        db = self._session_factory()
        try:
            yield db
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(
                f"Session store operation failed: {operation}",
                extra={"operation": operation, "tenant_token": tenant_token, "instance_id": instance_id},
            )
            raise PersistenceError(
                f"{operation} failed: {e}",
                tenant_token=tenant_token,
                instance_id=instance_id,
                details={"operation": operation},
            ) from e
        finally:
            db.close()

    def create_schema(self) -> None:
        """Create the gateway tables if they do not exist."""
        with self._transaction("create_schema") as db:
            init_db(db.get_bind())

    # =========================================================================
    # Tenants
    # =========================================================================

    def _find_tenant(self, db: Session, token: str) -> Tenant | None:
        return db.query(Tenant).filter(Tenant.token == token).first()

    def _upsert_tenant(self, db: Session, token: str, name: str | None) -> Tenant:
        tenant = self._find_tenant(db, token)
        if tenant is None:
            tenant = Tenant(token=token, name=name)
            db.add(tenant)
            db.flush()
        elif name and tenant.name != name:
            tenant.name = name
        return tenant

    def upsert_tenant(self, token: str, name: str | None = None) -> TenantRecord:
        """
        Create a tenant, or rename it when ``name`` is given.

        An existing tenant keeps its name when ``name`` is None.
        """
        with self._transaction("upsert_tenant", tenant_token=token) as db:
            return _tenant_record(self._upsert_tenant(db, token, name))

    def get_tenant_by_token(self, token: str) -> TenantRecord | None:
        """Get tenant by token."""
        with self._transaction("get_tenant_by_token", tenant_token=token) as db:
            tenant = self._find_tenant(db, token)
            return _tenant_record(tenant) if tenant else None

    def list_tenants(self) -> list[TenantRecord]:
        """All tenants, oldest first."""
        with self._transaction("list_tenants") as db:
            return [_tenant_record(t) for t in db.query(Tenant).order_by(Tenant.id).all()]

    # =========================================================================
    # Instances
    # =========================================================================

    def _find_instance(self, db: Session, token: str, instance_id: str) -> Instance | None:
        return (
            db.query(Instance)
            .join(Tenant, Instance.tenant_id == Tenant.id)
            .filter(Tenant.token == token, Instance.instance_id == instance_id)
            .first()
        )

    def _upsert_instance(
        self,
        db: Session,
        tenant_id: int,
        instance_id: str,
        status: InstanceStatus | str,
    ) -> Instance:
        instance = (
            db.query(Instance)
            .filter(Instance.tenant_id == tenant_id, Instance.instance_id == instance_id)
            .first()
        )
        if instance is None:
            instance = Instance(tenant_id=tenant_id, instance_id=instance_id, status=_status_value(status))
            db.add(instance)
        else:
            instance.status = _status_value(status)
        db.flush()
        return instance

    def upsert_instance(
        self,
        tenant_id: int,
        instance_id: str,
        status: InstanceStatus | str,
    ) -> InstanceRecord:
        """Create or overwrite the instance row for (tenant_id, instance_id)."""
        with self._transaction("upsert_instance", instance_id=instance_id) as db:
            tenant = db.get(Tenant, tenant_id)
            if tenant is None:
                raise PersistenceError(
                    f"Tenant {tenant_id} does not exist",
                    instance_id=instance_id,
                    details={"operation": "upsert_instance"},
                )
            instance = self._upsert_instance(db, tenant_id, instance_id, status)
            return _instance_record(instance, tenant.token)

    def record_instance(
        self,
        token: str,
        instance_id: str,
        status: InstanceStatus | str,
        tenant_name: str | None = None,
    ) -> InstanceRecord:
        """
        Upsert the tenant and the instance with ``status`` in one transaction.

        This is how a first-time pairing becomes durable: the tenant row is
        created if needed and the instance row is created or overwritten.
        """
        with self._transaction("record_instance", tenant_token=token, instance_id=instance_id) as db:
            tenant = self._upsert_tenant(db, token, None)
            if tenant.name is None and tenant_name:
                tenant.name = tenant_name
            instance = self._upsert_instance(db, tenant.id, instance_id, status)
            return _instance_record(instance, token)

    def update_instance_status(
        self,
        token: str,
        instance_id: str,
        status: InstanceStatus | str,
    ) -> bool:
        """
        Update the persisted status of an instance.

        Returns:
            False when no row exists for (token, instance_id)
        """
        with self._transaction("update_instance_status", tenant_token=token, instance_id=instance_id) as db:
            instance = self._find_instance(db, token, instance_id)
            if instance is None:
                return False
            instance.status = _status_value(status)
            return True

    def get_instance(self, token: str, instance_id: str) -> InstanceRecord | None:
        """Get one instance by its natural key."""
        with self._transaction("get_instance", tenant_token=token, instance_id=instance_id) as db:
            instance = self._find_instance(db, token, instance_id)
            return _instance_record(instance, token) if instance else None

    def get_instances_by_status(self, status: InstanceStatus | str) -> list[InstanceRecord]:
        """All instances whose persisted status is ``status``."""
        with self._transaction("get_instances_by_status") as db:
            rows = (
                db.query(Instance, Tenant.token)
                .join(Tenant, Instance.tenant_id == Tenant.id)
                .filter(Instance.status == _status_value(status))
                .order_by(Instance.id)
                .all()
            )
            return [_instance_record(instance, token) for instance, token in rows]

    def get_instances_for_tenant(self, token: str) -> list[InstanceRecord]:
        """Instances of a tenant, newest first."""
        with self._transaction("get_instances_for_tenant", tenant_token=token) as db:
            rows = (
                db.query(Instance)
                .join(Tenant, Instance.tenant_id == Tenant.id)
                .filter(Tenant.token == token)
                .order_by(Instance.created_at.desc(), Instance.id.desc())
                .all()
            )
            return [_instance_record(instance, token) for instance in rows]

    # =========================================================================
    # Messages
    # =========================================================================

    def insert_message(
        self,
        instance_pk: int,
        from_user: str,
        to_user: str,
        message: str,
        message_type: str = "text",
    ) -> MessageRecord:
        """Record an outbound message against the instance's durable id."""
        with self._transaction("insert_message") as db:
            instance = db.get(Instance, instance_pk)
            if instance is None:
                raise PersistenceError(
                    f"Instance row {instance_pk} does not exist",
                    details={"operation": "insert_message"},
                )
            row = Message(
                instance_id=instance_pk,
                from_user=from_user,
                to_user=to_user,
                message=message,
                message_type=message_type,
            )
            db.add(row)
            db.flush()
            return MessageRecord(
                id=row.id,
                instance_pk=instance_pk,
                instance_id=instance.instance_id,
                tenant_token=instance.tenant.token,
                from_user=row.from_user,
                to_user=row.to_user,
                message=row.message,
                message_type=row.message_type,
                timestamp=row.timestamp,
            )

    def get_messages(
        self,
        token: str,
        instance_id: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[MessageRecord]:
        """Messages of a tenant (optionally one instance), newest first."""
        with self._transaction("get_messages", tenant_token=token, instance_id=instance_id) as db:
            query = (
                db.query(Message, Instance.instance_id)
                .join(Instance, Message.instance_id == Instance.id)
                .join(Tenant, Instance.tenant_id == Tenant.id)
                .filter(Tenant.token == token)
            )
            if instance_id:
                query = query.filter(Instance.instance_id == instance_id)
            rows = (
                query.order_by(Message.timestamp.desc(), Message.id.desc())
                .limit(limit)
                .offset(offset)
                .all()
            )
            return [
                MessageRecord(
                    id=msg.id,
                    instance_pk=msg.instance_id,
                    instance_id=iid,
                    tenant_token=token,
                    from_user=msg.from_user,
                    to_user=msg.to_user,
                    message=msg.message,
                    message_type=msg.message_type,
                    timestamp=msg.timestamp,
                )
                for msg, iid in rows
            ]

    def count_messages(self, instance_pk: int) -> int:
        """Number of messages recorded for an instance."""
        with self._transaction("count_messages") as db:
            return db.query(func.count(Message.id)).filter(Message.instance_id == instance_pk).scalar() or 0
