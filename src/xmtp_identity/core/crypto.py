"""
Cryptographic helpers for wallet-gated key storage

The wallet never hands out its own key. Instead it signs a text payload and
the signature bytes, stretched with HKDF-SHA256 and a per-record salt, become
the AES-256-GCM key that seals the private key bundle. Signers must produce
deterministic signatures so a stored record can be reopened later by signing
its challenge again.
"""

from typing import Dict, Any
import base64
import json
import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF
from pydantic import BaseModel, ConfigDict, Field

from .errors import MalformedKeyRecordError
from .keys import KeyMaterial

RECORD_VERSION = 1
SALT_SIZE = 32
NONCE_SIZE = 12
CHALLENGE_SIZE = 32
KEY_SIZE = 32

_SIGNATURE_FOOTER = "\n\nFor more info: https://xmtp.org/signatures/"
_RECORD_AAD = b"xmtp-keystore-v1:"


def create_identity_payload(public_key: bytes) -> bytes:
    """Text the wallet signs to vouch for a brand-new identity key"""
    return f"XMTP : Create Identity\n{public_key.hex()}{_SIGNATURE_FOOTER}".encode('utf-8')


def enable_identity_payload(challenge: bytes) -> bytes:
    """Text the wallet signs to unlock key storage"""
    return f"XMTP : Enable Identity\n{challenge.hex()}{_SIGNATURE_FOOTER}".encode('utf-8')


def generate_challenge() -> bytes:
    return os.urandom(CHALLENGE_SIZE)


def derive_storage_key(signature: bytes, salt: bytes) -> bytes:
    """HKDF-SHA256(signature, salt) -> 32 byte AES key"""
    hkdf = HKDF(
        algorithm=hashes.SHA256(),
        length=KEY_SIZE,
        salt=salt,
        info=b"xmtp-identity-storage",
    )
    return hkdf.derive(signature)


class EncryptedKeyRecord(BaseModel):
    """Sealed key bundle as written to persistence or the network"""

    model_config = ConfigDict(frozen=True)

    ciphertext: bytes = Field(..., repr=False)
    salt: bytes
    nonce: bytes
    challenge: bytes
    owner_address: str
    version: int = RECORD_VERSION

    def to_dict(self) -> Dict[str, Any]:
        return {
            'v': self.version,
            'owner_address': self.owner_address,
            'salt': base64.b64encode(self.salt).decode('utf-8'),
            'nonce': base64.b64encode(self.nonce).decode('utf-8'),
            'challenge': base64.b64encode(self.challenge).decode('utf-8'),
            'ciphertext': base64.b64encode(self.ciphertext).decode('utf-8'),
        }

    def to_bytes(self) -> bytes:
        return json.dumps(self.to_dict(), sort_keys=True, separators=(',', ':')).encode('utf-8')

    @classmethod
    def from_bytes(cls, raw: bytes) -> 'EncryptedKeyRecord':
        """Parse stored bytes. Anything unreadable is corruption, not absence."""
        try:
            obj = json.loads(raw.decode('utf-8'))
            if obj.get('v') != RECORD_VERSION:
                raise ValueError(f"unsupported record version {obj.get('v')!r}")
            record = cls(
                version=obj['v'],
                owner_address=obj['owner_address'],
                salt=base64.b64decode(obj['salt'], validate=True),
                nonce=base64.b64decode(obj['nonce'], validate=True),
                challenge=base64.b64decode(obj['challenge'], validate=True),
                ciphertext=base64.b64decode(obj['ciphertext'], validate=True),
            )
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            raise MalformedKeyRecordError(f"Cannot decode key record: {e}") from e

        if len(record.nonce) != NONCE_SIZE or not record.salt:
            raise MalformedKeyRecordError(
                "Key record has invalid salt or nonce", owner_address=record.owner_address
            )
        return record


def _aad(owner_address: str) -> bytes:
    return _RECORD_AAD + owner_address.encode('utf-8')


def seal_key_material(material: KeyMaterial, signature: bytes,
                      challenge: bytes) -> EncryptedKeyRecord:
    """
    Encrypt key material under a signature-derived key

    Salt and nonce are drawn fresh on every call, so sealing the same
    material twice never yields the same record.
    """
    salt = os.urandom(SALT_SIZE)
    nonce = os.urandom(NONCE_SIZE)
    key = derive_storage_key(signature, salt)
    ciphertext = AESGCM(key).encrypt(nonce, material.raw_bytes, _aad(material.owner_address))
    return EncryptedKeyRecord(
        ciphertext=ciphertext,
        salt=salt,
        nonce=nonce,
        challenge=challenge,
        owner_address=material.owner_address,
    )


def open_key_record(record: EncryptedKeyRecord, signature: bytes) -> KeyMaterial:
    """Decrypt a record with the signature over its challenge"""
    key = derive_storage_key(signature, record.salt)
    try:
        plaintext = AESGCM(key).decrypt(record.nonce, record.ciphertext,
                                        _aad(record.owner_address))
    except InvalidTag as e:
        raise MalformedKeyRecordError(
            "Key record failed authentication", owner_address=record.owner_address
        ) from e
    return KeyMaterial.from_raw(plaintext, record.owner_address)
