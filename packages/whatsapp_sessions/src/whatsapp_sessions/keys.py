"""
Session keys

A live session is addressed by the pair (tenant token, instance id). The
pair is kept as a value object so that nothing can look a handle up by
instance id alone.
"""

import re
import secrets
import string
import time
from dataclasses import dataclass
from pathlib import Path

from whatsapp_sessions.exceptions import ValidationError

# Both parts become path segments of the credential directory.
_SEGMENT = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]{0,127}$")

_SUFFIX_ALPHABET = string.ascii_lowercase + string.digits

_SEGMENT_RULE = "1-128 chars of letters, digits, dot, dash or underscore"


def validate_token(token: str | None) -> str:
    """Return the stripped tenant token or raise ValidationError."""
    if token is None or not str(token).strip():
        raise ValidationError("token is required")
    token = str(token).strip()
    if not _SEGMENT.match(token) or ".." in token:
        raise ValidationError(f"token must be {_SEGMENT_RULE}", tenant_token=token)
    return token


def validate_instance_id(instance_id: str | None, tenant_token: str | None = None) -> str:
    """Return the stripped instance id or raise ValidationError."""
    if instance_id is None or not str(instance_id).strip():
        raise ValidationError("instance_id is required", tenant_token=tenant_token)
    instance_id = str(instance_id).strip()
    if not _SEGMENT.match(instance_id) or ".." in instance_id:
        raise ValidationError(
            f"instance_id must be {_SEGMENT_RULE}",
            tenant_token=tenant_token,
            instance_id=instance_id,
        )
    return instance_id


def new_instance_id() -> str:
    """Generate a fresh instance id: ``instance_<millis>_<9 random chars>``."""
    suffix = "".join(secrets.choice(_SUFFIX_ALPHABET) for _ in range(9))
    return f"instance_{int(time.time() * 1000)}_{suffix}"


@dataclass(frozen=True)
class SessionKey:
    """Compound key of a live session."""

    tenant_token: str
    instance_id: str

    @classmethod
    def of(cls, tenant_token: str | None, instance_id: str | None) -> "SessionKey":
        """Build a key from raw request values, validating both parts."""
        token = validate_token(tenant_token)
        return cls(token, validate_instance_id(instance_id, tenant_token=token))

    def credential_dir(self, sessions_root: str | Path) -> Path:
        """Directory holding this session's protocol credentials."""
        return Path(sessions_root) / self.tenant_token / self.instance_id

    def __str__(self) -> str:
        return f"{self.tenant_token}_{self.instance_id}"
