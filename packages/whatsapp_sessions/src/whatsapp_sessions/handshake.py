"""
Pairing Handshake

One-shot result cell that turns the connection update stream into a single
answer for the API caller: the first QR code, the first ``open`` (already
paired credentials), a terminal failure or a timeout. Once resolved, later
updates keep driving the state machine but never change the answer.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any

from whatsapp_sessions.exceptions import GatewayError, PairingTimeoutError
from whatsapp_sessions.keys import SessionKey
from whatsapp_sessions.registry import ResolvedIdentity

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PairingOutcome:
    """Successful handshake result: a QR code to scan, or the connected account."""

    key: SessionKey
    qr: str | None = None
    identity: ResolvedIdentity | None = None

    @property
    def connected(self) -> bool:
        return self.identity is not None

    def to_dict(self) -> dict[str, Any]:
        return {
            "instance_id": self.key.instance_id,
            "connected": self.connected,
            "qr": self.qr,
            "user": self.identity.to_dict() if self.identity else None,
        }


class PairingHandshake:
    """Resolves at most once, guarded by an explicit flag."""

    def __init__(self, key: SessionKey):
        self.key = key
        self._resolved = False
        self._outcome: PairingOutcome | None = None
        self._error: GatewayError | None = None
        self._event = asyncio.Event()

    @property
    def resolved(self) -> bool:
        return self._resolved

    @property
    def outcome(self) -> PairingOutcome | None:
        return self._outcome

    @property
    def error(self) -> GatewayError | None:
        return self._error

    def resolve(self, outcome: PairingOutcome) -> bool:
        """Settle with ``outcome``; returns False if already settled."""
        if self._resolved:
            return False
        self._resolved = True
        self._outcome = outcome
        self._event.set()
        return True

    def fail(self, error: GatewayError) -> bool:
        """Settle with ``error``; returns False if already settled."""
        if self._resolved:
            return False
        self._resolved = True
        self._error = error
        self._event.set()
        return True

    async def wait(self, timeout: float) -> PairingOutcome:
        """
        Wait for the result.

        The attempt itself is left running on timeout; it may still connect
        and be observed through status polling.

        Raises:
            PairingTimeoutError: nothing arrived within ``timeout`` seconds
            GatewayError: the attempt failed (e.g. TerminalLogoutError)
        """
        if not self._resolved:
            try:
                await asyncio.wait_for(self._event.wait(), timeout)
            except asyncio.TimeoutError:
                self.fail(
                    PairingTimeoutError(
                        f"Pairing did not complete within {timeout:g}s",
                        tenant_token=self.key.tenant_token,
                        instance_id=self.key.instance_id,
                        details={"timeout_seconds": timeout},
                    )
                )
                logger.warning(
                    "Pairing handshake timed out",
                    extra={"session_key": str(self.key), "timeout": timeout},
                )

        if self._error is not None:
            raise self._error
        return self._outcome
