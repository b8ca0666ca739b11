"""
Signer capability

The identity layer never holds the wallet key. It asks a signer for an
address and for signatures over text payloads. Wallet integrations implement
SignerCapability; LocalWalletSigner is a development wallet kept in memory.
"""

from typing import Optional, Protocol, runtime_checkable
import hashlib

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey


@runtime_checkable
class SignerCapability(Protocol):
    """Wallet-backed signer. ``sign`` may raise to decline."""

    async def get_address(self) -> str: ...
    async def sign(self, payload: bytes) -> bytes: ...


def address_from_public_key(public_key: bytes) -> str:
    """0x-prefixed hex of the last 20 bytes of SHA3-256(public key)"""
    return "0x" + hashlib.sha3_256(public_key).digest()[-20:].hex()


class LocalWalletSigner:
    """
    In-memory Ed25519 wallet for development and testing

    Ed25519 signatures are deterministic, so signing the same payload twice
    yields the same bytes, which key storage relies on.
    """

    def __init__(self, private_key: Optional[Ed25519PrivateKey] = None):
        if private_key is None:
            private_key = Ed25519PrivateKey.generate()

        self.private_key = private_key
        self.address = address_from_public_key(self.public_key_bytes())

    @classmethod
    def from_hex(cls, private_hex: str) -> 'LocalWalletSigner':
        """Create wallet from hex encoded private key"""
        private_hex = private_hex[2:] if private_hex.startswith('0x') else private_hex
        return cls(Ed25519PrivateKey.from_private_bytes(bytes.fromhex(private_hex)))

    def public_key_bytes(self) -> bytes:
        return self.private_key.public_key().public_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PublicFormat.Raw
        )

    def private_key_hex(self) -> str:
        return self.private_key.private_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PrivateFormat.Raw,
            encryption_algorithm=serialization.NoEncryption()
        ).hex()

    async def get_address(self) -> str:
        return self.address

    async def sign(self, payload: bytes) -> bytes:
        return self.private_key.sign(payload)

    def verify(self, payload: bytes, signature: bytes) -> bool:
        """Verify a signature made by this wallet"""
        try:
            self.private_key.public_key().verify(signature, payload)
            return True
        except InvalidSignature:
            return False


__all__ = ['SignerCapability', 'LocalWalletSigner', 'address_from_public_key']
