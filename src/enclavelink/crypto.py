"""Crypto provider interface and its default implementation."""

import os

from typing import Protocol

from cryptography.hazmat.primitives.asymmetric import x25519
from cryptography.hazmat.primitives.serialization import Encoding, PublicFormat


class CryptoProvider(Protocol):
    """Source of ephemeral keys and randomness"""

    def generate_private_key(self) -> x25519.X25519PrivateKey:
        ...

    def random_bytes(self, length: int) -> bytes:
        ...


class DefaultCryptoProvider:
    """X25519 keys from ``cryptography`` and randomness from the OS"""

    def generate_private_key(self) -> x25519.X25519PrivateKey:
        return x25519.X25519PrivateKey.generate()

    def random_bytes(self, length: int) -> bytes:
        return os.urandom(length)


def raw_public_key(key) -> bytes:
    """Returns the 32-byte raw encoding of an X25519 public (or private) key"""
    if isinstance(key, x25519.X25519PrivateKey):
        key = key.public_key()
    return key.public_bytes(Encoding.Raw, PublicFormat.Raw)
