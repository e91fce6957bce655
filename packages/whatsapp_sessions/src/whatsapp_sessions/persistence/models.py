"""
Session Gateway Database Models

Tables:
- tenants: accounts identified by an opaque token
- instances: WhatsApp sessions owned by a tenant, with their last known status
- messages: outbound messages recorded after a successful send
"""

from datetime import datetime, timezone
from enum import Enum

from sqlalchemy import Column, DateTime, ForeignKey, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import relationship

from gatewaycore.db import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class InstanceStatus(str, Enum):
    """Status of an instance, live or persisted."""

    INITIALIZING = "initializing"
    CONNECTING = "connecting"
    QR_GENERATED = "qr_generated"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"

    def __str__(self) -> str:
        return self.value


class Tenant(Base):
    """An account that owns zero or more instances."""

    __tablename__ = "tenants"

    id = Column(Integer, primary_key=True, autoincrement=True)
    token = Column(String(128), nullable=False, unique=True, index=True)
    name = Column(String(255), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    instances = relationship("Instance", back_populates="tenant")


class Instance(Base):
    """
    One WhatsApp session of a tenant.

    ``status`` is the last checkpointed status; the live status held by the
    gateway process may be ahead of it.
    """

    __tablename__ = "instances"

    id = Column(Integer, primary_key=True, autoincrement=True)
    tenant_id = Column(Integer, ForeignKey("tenants.id"), nullable=False, index=True)
    instance_id = Column(String(128), nullable=False)
    status = Column(String(20), nullable=False, default=InstanceStatus.DISCONNECTED.value)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    tenant = relationship("Tenant", back_populates="instances")

    __table_args__ = (
        UniqueConstraint("tenant_id", "instance_id", name="uq_instances_tenant_instance"),
        Index("ix_instances_status", "status"),
    )


class Message(Base):
    """Outbound message sent through an instance."""

    __tablename__ = "messages"

    id = Column(Integer, primary_key=True, autoincrement=True)
    instance_id = Column(Integer, ForeignKey("instances.id"), nullable=False, index=True)
    from_user = Column(String(64), nullable=False)
    to_user = Column(String(64), nullable=False)
    message = Column(Text, nullable=False)
    message_type = Column(String(20), nullable=False, default="text")
    timestamp = Column(DateTime(timezone=True), nullable=False, default=utcnow)
