"""
Negotiated session state for one attested enclave.

Sessions are immutable once constructed. The only mutable part is the IV
budget, which is shared by every request using the session and is guarded
by a lock. Replacing a session means installing a new object.
"""

import dataclasses
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Mapping, Optional

from cryptography.hazmat.primitives.asymmetric import x25519

from .attestation.types import IVExhaustionError, MAX_ENCRYPTIONS_PER_SESSION
from .crypto import raw_public_key


class SessionState(str, Enum):
    """Per-enclave state as seen by the client"""
    UNATTESTED = "unattested"
    HANDSHAKING = "handshaking"
    ESTABLISHED = "established"
    REQUESTING = "requesting"
    EXPIRED = "expired"
    FAILED = "failed"


class IvBudget:
    """Thread-safe count of encryptions performed under one key"""

    def __init__(self, limit: int = MAX_ENCRYPTIONS_PER_SESSION):
        self.limit = limit
        self._used = 0
        self._lock = threading.Lock()

    @property
    def used(self) -> int:
        return self._used

    def consume(self) -> None:
        """Reserve one IV, or raise IVExhaustionError once the budget is spent"""
        with self._lock:
            if self._used >= self.limit:
                raise IVExhaustionError(
                    f"Session IV budget of {self.limit} encryptions is exhausted"
                )
            self._used += 1


@dataclass(frozen=True)
class AttestationSession:
    """Live negotiated state for one enclave"""
    enclave_name: str
    client_private_key: x25519.X25519PrivateKey = field(repr=False)
    server_ephemeral_public: bytes = field(repr=False)
    server_static_public: bytes = field(repr=False)
    client_key: bytes = field(repr=False)  # client -> server
    server_key: bytes = field(repr=False)  # server -> client
    request_id: bytes = field(repr=False)
    cookies: Mapping[str, str] = field(default_factory=dict, repr=False)
    created_at: float = field(default_factory=time.time)
    validity: float = 0.0
    iv_budget: IvBudget = field(default_factory=IvBudget, repr=False, compare=False)

    @property
    def client_public_key(self) -> bytes:
        return raw_public_key(self.client_private_key)

    @property
    def expires_at(self) -> float:
        return self.created_at + self.validity

    def is_expired(self, now: Optional[float] = None) -> bool:
        """Returns True once the validity window has elapsed"""
        if now is None:
            now = time.time()
        return now >= self.expires_at

    def mirrored(self) -> "AttestationSession":
        """
        The enclave-side view of this session: directions swapped.

        Encrypting with the mirrored session produces what the enclave would
        send, and it decrypts what this session encrypts.
        """
        return dataclasses.replace(
            self,
            client_key=self.server_key,
            server_key=self.client_key,
            iv_budget=IvBudget(self.iv_budget.limit),
        )
