"""
Client settings.

Settings can be built directly or read from the environment:

    ENCLAVELINK_SERVICE_URL          Service root for the HTTP transport (required)
    ENCLAVELINK_REGISTRY_PATH        Enclave registry JSON file (required)
    ENCLAVELINK_TRUST_ANCHORS_PATH   PEM file of attestation root certificates (required)
    ENCLAVELINK_CRL_URL              Revocation list for the report signing chain
    ENCLAVELINK_SESSION_VALIDITY     Session lifetime in seconds (default: 600)
    ENCLAVELINK_MAX_REPORT_AGE       Oldest acceptable attestation report in seconds (default: 86400)
    ENCLAVELINK_CLOCK_SKEW           Allowed future skew of report timestamps in seconds (default: 300)
    ENCLAVELINK_TIMEOUT              Network timeout in seconds (default: 30)
    ENCLAVELINK_ALLOW_DEBUG_ENCLAVES Permit debug-enclave descriptors (default: false)
"""

import os
from dataclasses import dataclass
from typing import Mapping, Optional

from .attestation.types import (
    DEFAULT_CLOCK_SKEW_SECONDS,
    DEFAULT_MAX_REPORT_AGE_SECONDS,
    DEFAULT_SESSION_VALIDITY_SECONDS,
)
from .transport import DEFAULT_TIMEOUT

ENV_PREFIX = "ENCLAVELINK_"

_TRUE_VALUES = ("1", "true", "yes", "on")
_FALSE_VALUES = ("", "0", "false", "no", "off")


@dataclass(frozen=True)
class ClientSettings:
    service_url: str
    registry_path: str
    trust_anchors_path: str
    crl_url: Optional[str] = None
    session_validity: float = DEFAULT_SESSION_VALIDITY_SECONDS
    max_report_age: float = DEFAULT_MAX_REPORT_AGE_SECONDS
    clock_skew: float = DEFAULT_CLOCK_SKEW_SECONDS
    timeout: float = DEFAULT_TIMEOUT
    allow_debug_enclaves: bool = False

    def __post_init__(self):
        for name in ("session_validity", "max_report_age", "timeout"):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be positive")
        if self.clock_skew < 0:
            raise ValueError("clock_skew must not be negative")

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "ClientSettings":
        """
        Read settings from ``ENCLAVELINK_*`` environment variables.

        Args:
            environ: Mapping to read instead of ``os.environ``

        Raises:
            ValueError: If a required variable is missing or a value is malformed
        """
        if environ is None:
            environ = os.environ

        def required(name: str) -> str:
            value = environ.get(ENV_PREFIX + name, "").strip()
            if not value:
                raise ValueError(f"{ENV_PREFIX}{name} is not set")
            return value

        def seconds(name: str, default: float) -> float:
            value = environ.get(ENV_PREFIX + name)
            if value is None or not value.strip():
                return default
            try:
                return float(value)
            except ValueError:
                raise ValueError(f"{ENV_PREFIX}{name} must be a number, got {value!r}") from None

        allow_debug = environ.get(ENV_PREFIX + "ALLOW_DEBUG_ENCLAVES", "").strip().lower()
        if allow_debug not in _TRUE_VALUES + _FALSE_VALUES:
            raise ValueError(
                f"{ENV_PREFIX}ALLOW_DEBUG_ENCLAVES must be a boolean, got {allow_debug!r}"
            )

        return cls(
            service_url=required("SERVICE_URL"),
            registry_path=required("REGISTRY_PATH"),
            trust_anchors_path=required("TRUST_ANCHORS_PATH"),
            crl_url=environ.get(ENV_PREFIX + "CRL_URL") or None,
            session_validity=seconds("SESSION_VALIDITY", DEFAULT_SESSION_VALIDITY_SECONDS),
            max_report_age=seconds("MAX_REPORT_AGE", DEFAULT_MAX_REPORT_AGE_SECONDS),
            clock_skew=seconds("CLOCK_SKEW", DEFAULT_CLOCK_SKEW_SECONDS),
            timeout=seconds("TIMEOUT", DEFAULT_TIMEOUT),
            allow_debug_enclaves=allow_debug in _TRUE_VALUES,
        )
