"""
Session Gateway Persistence

SQLAlchemy models and the Session Store repository.
"""

from whatsapp_sessions.persistence.models import (
    Instance,
    InstanceStatus,
    Message,
    Tenant,
)
from whatsapp_sessions.persistence.repo import (
    InstanceRecord,
    MessageRecord,
    SessionStore,
    TenantRecord,
)

__all__ = [
    "Instance",
    "InstanceStatus",
    "Message",
    "Tenant",
    "InstanceRecord",
    "MessageRecord",
    "SessionStore",
    "TenantRecord",
]
