"""
Persistence providers for encrypted key records

The identity manager only ever talks to the PersistenceProvider contract.
Records are stored under ``xmtp:<environment>:keys:<owner address>`` so that
the same wallet's dev and production identities never collide.
"""

from typing import Awaitable, Dict, Optional, Protocol, TypeVar, Union, runtime_checkable
import base64
import binascii
import logging
import re

import keyring
from keyring.errors import KeyringError, PasswordDeleteError

from .config import Environment
from .errors import IdentityError, MalformedKeyRecordError, StorageIOError
from .storage import ObjectStore

logger = logging.getLogger(__name__)

T = TypeVar("T")

_SEGMENT = re.compile(r'^[A-Za-z0-9_.-]+$')


def storage_key(environment: Union[Environment, str], owner_address: str) -> str:
    """Logical persistence key for an owner's key record"""
    env = environment.value if isinstance(environment, Environment) else environment
    return f"xmtp:{env}:keys:{owner_address}"


@runtime_checkable
class PersistenceProvider(Protocol):
    """Get/set/delete raw bytes by logical key"""

    async def get(self, key: str) -> Optional[bytes]: ...
    async def set(self, key: str, value: bytes) -> None: ...
    async def delete(self, key: str) -> None: ...


class InMemoryPersistence:
    """Dictionary-backed provider for tests and throwaway clients"""

    def __init__(self):
        self._data: Dict[str, bytes] = {}

    async def get(self, key: str) -> Optional[bytes]:
        return self._data.get(key)

    async def set(self, key: str, value: bytes) -> None:
        self._data[key] = bytes(value)

    async def delete(self, key: str) -> None:
        self._data.pop(key, None)

    def keys(self):
        return list(self._data)


class FilePersistence:
    """
    Provider writing one object per key through an ObjectStore

    ``xmtp:dev:keys:0xabc`` is stored as ``xmtp/dev/keys/0xabc.key``
    below the store's base path, locally or in a bucket.
    """

    def __init__(self, store: Union[ObjectStore, str]):
        self.store = store if isinstance(store, ObjectStore) else ObjectStore(store)

    @staticmethod
    def object_name(key: str) -> str:
        segments = key.split(':')
        for segment in segments:
            if not _SEGMENT.match(segment) or segment in ('.', '..'):
                raise ValueError(f"Unsupported persistence key: {key!r}")
        return '/'.join(segments) + '.key'

    async def get(self, key: str) -> Optional[bytes]:
        return await self.store.read_bytes(self.object_name(key))

    async def set(self, key: str, value: bytes) -> None:
        await self.store.write_bytes(self.object_name(key), value)
        logger.debug("Wrote %d bytes for %s", len(value), key)

    async def delete(self, key: str) -> None:
        await self.store.delete(self.object_name(key))


class KeyringPersistence:
    """Provider backed by the operating system's secret store"""

    def __init__(self, service_name: str = "xmtp-identity"):
        self.service_name = service_name

    async def get(self, key: str) -> Optional[bytes]:
        try:
            value = keyring.get_password(self.service_name, key)
        except KeyringError as e:
            raise StorageIOError(f"Error reading keyring entry {key}: {e}", step="get") from e
        if value is None:
            return None
        try:
            return base64.b64decode(value, validate=True)
        except binascii.Error as e:
            raise MalformedKeyRecordError(f"Keyring entry {key} is not base64: {e}",
                                          step="get") from e

    async def set(self, key: str, value: bytes) -> None:
        try:
            keyring.set_password(self.service_name, key, base64.b64encode(value).decode('ascii'))
        except KeyringError as e:
            raise StorageIOError(f"Error saving keyring entry {key}: {e}", step="set") from e

    async def delete(self, key: str) -> None:
        try:
            keyring.delete_password(self.service_name, key)
        except PasswordDeleteError:
            # Already gone
            return
        except KeyringError as e:
            raise StorageIOError(f"Error deleting keyring entry {key}: {e}", step="delete") from e


async def guarded(step: str, key: str, operation: Awaitable[T]) -> T:
    """Await a provider call, reporting backend failures as StorageIOError"""
    try:
        return await operation
    except IdentityError:
        raise
    except Exception as e:
        raise StorageIOError(f"Persistence {step} failed for {key}: {e}", step=step) from e
