"""
Key bundles for XMTP identities

A key bundle is the private half of an identity: an Ed25519 identity key
and, from V2 on, an X25519 pre-key used to negotiate message secrets.
KeyMaterial wraps the serialised bundle together with the wallet address
that owns it and is what the identity manager hands around.
"""

from typing import Optional, Dict, Any
from datetime import datetime
from enum import Enum
import base64
import json

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey
from cryptography.hazmat.primitives.asymmetric.x25519 import X25519PrivateKey
from pydantic import BaseModel, ConfigDict, Field

from .errors import MalformedKeyRecordError


class KeyVersion(str, Enum):
    """Key bundle format versions"""

    V1 = "v1"
    V2 = "v2"


def _b64e(data: bytes) -> str:
    return base64.b64encode(data).decode('utf-8')


def _b64d(data: str) -> bytes:
    return base64.b64decode(data, validate=True)


def _raw_private(key) -> bytes:
    return key.private_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PrivateFormat.Raw,
        encryption_algorithm=serialization.NoEncryption()
    )


def _raw_public(key) -> bytes:
    return key.public_key().public_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PublicFormat.Raw
    )


class KeyBundle:
    """Decoded private key bundle"""

    def __init__(self, identity_key: Optional[Ed25519PrivateKey] = None,
                 pre_key: Optional[X25519PrivateKey] = None,
                 identity_signature: Optional[bytes] = None,
                 created_at: Optional[str] = None):
        if identity_key is None:
            identity_key = Ed25519PrivateKey.generate()

        self.identity_key = identity_key
        self.pre_key = pre_key
        self.identity_signature = identity_signature
        self.created_at = created_at or datetime.now().isoformat()

    @classmethod
    def generate(cls, version: KeyVersion = KeyVersion.V2) -> 'KeyBundle':
        """Generate a fresh bundle of the requested version"""
        pre_key = X25519PrivateKey.generate() if version == KeyVersion.V2 else None
        return cls(Ed25519PrivateKey.generate(), pre_key)

    @property
    def version(self) -> KeyVersion:
        return KeyVersion.V2 if self.pre_key is not None else KeyVersion.V1

    def identity_public_bytes(self) -> bytes:
        """Get identity public key as raw bytes"""
        return _raw_public(self.identity_key)

    def pre_key_public_bytes(self) -> Optional[bytes]:
        if self.pre_key is None:
            return None
        return _raw_public(self.pre_key)

    def sign(self, data: bytes) -> bytes:
        return self.identity_key.sign(data)

    def with_identity_signature(self, signature: bytes) -> 'KeyBundle':
        return KeyBundle(self.identity_key, self.pre_key, signature, self.created_at)

    def to_dict(self) -> Dict[str, Any]:
        """Export bundle as dictionary"""
        return {
            'version': self.version.value,
            'identity_key': _b64e(_raw_private(self.identity_key)),
            'pre_key': _b64e(_raw_private(self.pre_key)) if self.pre_key else None,
            'identity_signature': (
                _b64e(self.identity_signature) if self.identity_signature else None
            ),
            'created_at': self.created_at
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'KeyBundle':
        """Import bundle from dictionary"""
        version = KeyVersion(data['version'])
        identity_key = Ed25519PrivateKey.from_private_bytes(_b64d(data['identity_key']))

        pre_key = None
        if version == KeyVersion.V2:
            if not data.get('pre_key'):
                raise ValueError("v2 bundle without pre-key")
            pre_key = X25519PrivateKey.from_private_bytes(_b64d(data['pre_key']))

        signature = data.get('identity_signature')
        return cls(
            identity_key,
            pre_key,
            _b64d(signature) if signature else None,
            data.get('created_at')
        )

    def to_bytes(self) -> bytes:
        """Canonical JSON encoding (sorted keys, no spaces)"""
        return json.dumps(self.to_dict(), sort_keys=True, separators=(',', ':')).encode('utf-8')

    @classmethod
    def from_bytes(cls, raw: bytes) -> 'KeyBundle':
        try:
            data = json.loads(raw.decode('utf-8'))
            if not isinstance(data, dict):
                raise ValueError("bundle is not an object")
            return cls.from_dict(data)
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            raise MalformedKeyRecordError(f"Cannot decode key bundle: {e}") from e


class ContactBundle(BaseModel):
    """Public half of an identity, published so peers can reach it"""

    owner_address: str = Field(..., description="Wallet address owning the identity")
    version: KeyVersion = Field(..., description="Bundle version")
    identity_key: str = Field(..., description="Base64 Ed25519 public key")
    pre_key: Optional[str] = Field(None, description="Base64 X25519 public pre-key")
    identity_signature: Optional[str] = Field(
        None, description="Base64 wallet signature over the create-identity payload"
    )
    app_version: Optional[str] = Field(None, description="Publishing application tag")
    created_at: str = Field(..., description="Bundle creation time")

    def to_bytes(self) -> bytes:
        return self.model_dump_json().encode('utf-8')

    @classmethod
    def from_bytes(cls, raw: bytes) -> 'ContactBundle':
        return cls.model_validate_json(raw)


class KeyMaterial(BaseModel):
    """
    Versioned private key bundle owned by a wallet address

    Immutable: every change produces a new instance.
    """

    model_config = ConfigDict(frozen=True)

    version: KeyVersion
    raw_bytes: bytes = Field(..., repr=False)
    owner_address: str

    @classmethod
    def generate(cls, owner_address: str,
                 version: KeyVersion = KeyVersion.V2) -> 'KeyMaterial':
        bundle = KeyBundle.generate(version)
        return cls(version=version, raw_bytes=bundle.to_bytes(), owner_address=owner_address)

    @classmethod
    def from_raw(cls, raw: bytes, owner_address: str) -> 'KeyMaterial':
        """Wrap serialised bundle bytes, validating them on the way in"""
        bundle = KeyBundle.from_bytes(raw)
        return cls(version=bundle.version, raw_bytes=bytes(raw), owner_address=owner_address)

    def bundle(self) -> KeyBundle:
        return KeyBundle.from_bytes(self.raw_bytes)

    def public_key_bytes(self) -> bytes:
        return self.bundle().identity_public_bytes()

    def export(self) -> bytes:
        """Unencrypted copy of the bundle bytes"""
        return bytes(bytearray(self.raw_bytes))

    def has_identity_signature(self) -> bool:
        return self.bundle().identity_signature is not None

    def with_identity_signature(self, signature: bytes) -> 'KeyMaterial':
        bundle = self.bundle().with_identity_signature(signature)
        return KeyMaterial(
            version=self.version,
            raw_bytes=bundle.to_bytes(),
            owner_address=self.owner_address
        )

    def contact_bundle(self, app_version: Optional[str] = None) -> ContactBundle:
        bundle = self.bundle()
        pre_key = bundle.pre_key_public_bytes()
        return ContactBundle(
            owner_address=self.owner_address,
            version=self.version,
            identity_key=_b64e(bundle.identity_public_bytes()),
            pre_key=_b64e(pre_key) if pre_key else None,
            identity_signature=(
                _b64e(bundle.identity_signature) if bundle.identity_signature else None
            ),
            app_version=app_version,
            created_at=bundle.created_at
        )
