"""
Session Gateway Errors

Every caller-visible failure is a GatewayError carrying a stable ``kind``,
a human-readable message and, where known, the tenant/instance context.
"""

from typing import Any


class GatewayError(Exception):
    """Base error for the session gateway."""

    kind = "gateway_error"

    def __init__(
        self,
        message: str,
        tenant_token: str | None = None,
        instance_id: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.tenant_token = tenant_token
        self.instance_id = instance_id
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "kind": self.kind,
            "error": self.message,
            "tenant_token": self.tenant_token,
            "instance_id": self.instance_id,
        }
        if self.details:
            data["details"] = self.details
        return data


class ValidationError(GatewayError):
    """Missing or malformed tenant token, instance id or request field."""

    kind = "validation_error"


class NotFoundError(GatewayError):
    """Unknown tenant, instance or session key."""

    kind = "not_found"


class NotConnectedError(GatewayError):
    """Operation needs a live connected handle and there is none."""

    kind = "not_connected"


class PairingTimeoutError(GatewayError):
    """Pairing did not produce a QR code or a connection in time."""

    kind = "pairing_timeout"


class TransientProtocolError(GatewayError):
    """Connection closed for a recoverable reason."""

    kind = "transient_protocol_error"

    def __init__(self, message: str, code: int | None = None, **kwargs: Any):
        super().__init__(message, **kwargs)
        self.code = code


class TerminalLogoutError(GatewayError):
    """The remote side revoked the session (explicit logout)."""

    kind = "terminal_logout"


class SendFailedError(GatewayError):
    """The transport rejected an outbound message."""

    kind = "send_failed"


class PersistenceError(GatewayError):
    """A Session Store operation failed."""

    kind = "persistence_error"
