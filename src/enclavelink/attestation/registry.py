"""
Static enclave configuration.

Maps an enclave name to the code identity we expect it to attest to. The
registry is built once at startup (from code or from a JSON document) and
is read-only afterwards.

JSON format::

    {
      "enclaves": [
        {
          "name": "cds",
          "mrenclave": "<64 hex chars>",
          "mrsigner": "<64 hex chars>",            # optional
          "accepted_quote_statuses": ["OK"],       # optional
          "allow_debug": false                     # optional
        }
      ]
    }
"""

import json
import logging
import os
from dataclasses import dataclass, field
from typing import Dict, FrozenSet, Iterable, Mapping, Optional, Union

from .abi_sgx import MRENCLAVE_SIZE, MRSIGNER_SIZE
from .types import DEFAULT_ACCEPTED_QUOTE_STATUSES, EnclaveNotFoundError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EnclaveDescriptor:
    """Expected identity of one named enclave"""
    name: str
    mrenclave: bytes
    mrsigner: Optional[bytes] = None
    allow_debug: bool = False
    accepted_quote_statuses: FrozenSet[str] = field(default=DEFAULT_ACCEPTED_QUOTE_STATUSES)

    def __post_init__(self):
        if not self.name:
            raise ValueError("Enclave name must not be empty")
        if len(self.mrenclave) != MRENCLAVE_SIZE:
            raise ValueError(
                f"Enclave {self.name}: mrenclave is {len(self.mrenclave)} bytes, expected {MRENCLAVE_SIZE}"
            )
        if self.mrsigner is not None and len(self.mrsigner) != MRSIGNER_SIZE:
            raise ValueError(
                f"Enclave {self.name}: mrsigner is {len(self.mrsigner)} bytes, expected {MRSIGNER_SIZE}"
            )
        if not self.accepted_quote_statuses:
            raise ValueError(f"Enclave {self.name}: no accepted quote statuses")
        # Normalise list/set input so the descriptor stays hashable
        object.__setattr__(self, "accepted_quote_statuses", frozenset(self.accepted_quote_statuses))

    @classmethod
    def from_dict(cls, data: Mapping) -> "EnclaveDescriptor":
        try:
            mrsigner = data.get("mrsigner")
            return cls(
                name=data["name"],
                mrenclave=bytes.fromhex(data["mrenclave"]),
                mrsigner=bytes.fromhex(mrsigner) if mrsigner else None,
                allow_debug=bool(data.get("allow_debug", False)),
                accepted_quote_statuses=frozenset(
                    data.get("accepted_quote_statuses", DEFAULT_ACCEPTED_QUOTE_STATUSES)
                ),
            )
        except (AttributeError, KeyError, TypeError) as e:
            raise ValueError(f"Invalid enclave descriptor {data!r}: {e}") from e

    def __str__(self) -> str:
        return f"EnclaveDescriptor(name={self.name}, mrenclave={self.mrenclave.hex()[:16]}...)"


class EnclaveRegistry:
    """Read-only lookup of enclave descriptors by name"""

    def __init__(
        self,
        descriptors: Iterable[EnclaveDescriptor],
        allow_debug_enclaves: bool = False,
    ):
        entries: Dict[str, EnclaveDescriptor] = {}
        for descriptor in descriptors:
            if descriptor.name in entries:
                raise ValueError(f"Duplicate enclave name: {descriptor.name}")
            if descriptor.allow_debug and not allow_debug_enclaves:
                raise ValueError(
                    f"Enclave {descriptor.name} accepts debug quotes, "
                    "which is only permitted when allow_debug_enclaves is set"
                )
            entries[descriptor.name] = descriptor

        self._entries = entries
        logger.debug(f"Loaded enclave registry with {len(entries)} entries")

    @classmethod
    def from_json(
        cls,
        source: Union[str, bytes, os.PathLike],
        allow_debug_enclaves: bool = False,
    ) -> "EnclaveRegistry":
        """
        Build a registry from a JSON document or a path to one.

        Args:
            source: JSON text/bytes, or a filesystem path
            allow_debug_enclaves: Permit descriptors that accept debug quotes

        Raises:
            ValueError: If the document is malformed
        """
        if isinstance(source, os.PathLike) or (
            isinstance(source, str) and not source.lstrip().startswith("{")
        ):
            with open(source, "rb") as f:
                source = f.read()

        try:
            document = json.loads(source)
            items = document["enclaves"]
        except (json.JSONDecodeError, KeyError, TypeError) as e:
            raise ValueError(f"Invalid enclave registry document: {e}") from e
        if not isinstance(items, list):
            raise ValueError("Invalid enclave registry document: 'enclaves' must be a list")

        return cls(
            (EnclaveDescriptor.from_dict(item) for item in items),
            allow_debug_enclaves=allow_debug_enclaves,
        )

    def lookup(self, name: str) -> EnclaveDescriptor:
        """
        Return the descriptor for ``name``.

        Raises:
            EnclaveNotFoundError: If no enclave is registered under that name
        """
        try:
            return self._entries[name]
        except KeyError:
            raise EnclaveNotFoundError(name) from None

    def names(self) -> FrozenSet[str]:
        return frozenset(self._entries)

    def __contains__(self, name: str) -> bool:
        return name in self._entries

    def __len__(self) -> int:
        return len(self._entries)
