"""
XMTP Identity - client identity and key bundle lifecycle

Establishes a cryptographic identity for a wallet, keeps its private key
bundle encrypted under a wallet signature, and advertises the public half on
the XMTP network.

Key Features:
- Ordered keystore providers (static, persisted, network, generated)
- Two-signature bootstrap: create identity (new keys only), enable identity (always)
- HKDF + AES-256-GCM storage encryption with a fresh salt on every write
- Pluggable persistence (memory, local/cloud files, OS keyring)
- Environment routing for dev, production and local networks

Usage:
    from xmtp_identity import Client, ClientConfig, LocalWalletSigner

    wallet = LocalWalletSigner()
    client = await Client.create(wallet, ClientConfig(environment="dev"))
    print(client.address, client.public_key.hex())
"""

__version__ = "0.1.0"
__author__ = "XMTP Identity Contributors"
__license__ = "AGPLv3"

# Core imports
from .core import (
    ClientConfig,
    Environment,
    KeyMaterial,
    KeyVersion,
    EncryptedKeyRecord,
    IdentityError,
    SignatureDeclinedError,
    StorageIOError,
    MalformedKeyRecordError,
    NetworkUnavailableError,
    NetworkEnvironmentRouter,
    InMemoryPersistence,
    FilePersistence,
    KeyringPersistence,
    InMemoryNetwork,
    BucketNetwork,
)
from .auth import SignerCapability, LocalWalletSigner
from .client.identity import BootstrapState, IdentityManager, IdentitySession
from .client.providers import KeystoreProviderChain
from .client.client import Client

__all__ = [
    'Client',
    'ClientConfig',
    'Environment',
    'KeyMaterial',
    'KeyVersion',
    'EncryptedKeyRecord',
    'IdentityError',
    'SignatureDeclinedError',
    'StorageIOError',
    'MalformedKeyRecordError',
    'NetworkUnavailableError',
    'NetworkEnvironmentRouter',
    'InMemoryPersistence',
    'FilePersistence',
    'KeyringPersistence',
    'InMemoryNetwork',
    'BucketNetwork',
    'SignerCapability',
    'LocalWalletSigner',
    'BootstrapState',
    'IdentityManager',
    'IdentitySession',
    'KeystoreProviderChain',
]
