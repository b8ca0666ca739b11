"""
XMTP Identity Core Module

This module contains the building blocks the identity manager is made of:
- Key bundles and key material
- Wallet-signature storage encryption
- Client configuration and environment routing
- Persistence providers and network nodes
- Content codec contract
"""

from .config import ClientConfig, Environment
from .errors import (
    IdentityError,
    SignatureDeclinedError,
    StorageIOError,
    MalformedKeyRecordError,
    NetworkUnavailableError,
    InvalidStateError,
)
from .keys import KeyBundle, KeyMaterial, KeyVersion, ContactBundle
from .crypto import EncryptedKeyRecord, seal_key_material, open_key_record
from .persistence import (
    PersistenceProvider,
    InMemoryPersistence,
    FilePersistence,
    KeyringPersistence,
    storage_key,
)
from .network import (
    EndpointDescriptor,
    NetworkEnvironmentRouter,
    NetworkClient,
    InMemoryNetwork,
    BucketNetwork,
)
from .storage import ObjectStore

__all__ = [
    'ClientConfig',
    'Environment',
    'IdentityError',
    'SignatureDeclinedError',
    'StorageIOError',
    'MalformedKeyRecordError',
    'NetworkUnavailableError',
    'InvalidStateError',
    'KeyBundle',
    'KeyMaterial',
    'KeyVersion',
    'ContactBundle',
    'EncryptedKeyRecord',
    'seal_key_material',
    'open_key_record',
    'PersistenceProvider',
    'InMemoryPersistence',
    'FilePersistence',
    'KeyringPersistence',
    'storage_key',
    'EndpointDescriptor',
    'NetworkEnvironmentRouter',
    'NetworkClient',
    'InMemoryNetwork',
    'BucketNetwork',
    'ObjectStore',
]
