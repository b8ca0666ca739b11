"""
Network environments and the network capability

NetworkEnvironmentRouter turns an environment name into endpoint parameters.
NetworkClient is the slice of the network the identity layer consumes:
publishing contact bundles and storing/fetching wallet-encrypted key bundles.
Two nodes are provided: an in-process one and a serverless one that keeps
everything in a storage bucket.
"""

from typing import Callable, Dict, List, Optional, Protocol, Union, runtime_checkable
import logging

from pydantic import BaseModel, ConfigDict, ValidationError

from .config import Environment
from .errors import NetworkUnavailableError
from .keys import ContactBundle
from .storage import ObjectStore

logger = logging.getLogger(__name__)

ENVIRONMENT_URLS: Dict[Environment, str] = {
    Environment.DEV: "https://dev.xmtp.network",
    Environment.PRODUCTION: "https://production.xmtp.network",
    Environment.LOCAL: "http://localhost:5555",
}


class EndpointDescriptor(BaseModel):
    """Where a client talks to the network"""

    model_config = ConfigDict(frozen=True)

    environment: Optional[Environment]
    api_url: str
    is_override: bool = False


class NetworkEnvironmentRouter:
    """Stateless mapping from environment name to endpoint"""

    def __init__(self, urls: Optional[Dict[Environment, str]] = None):
        self.urls = dict(urls or ENVIRONMENT_URLS)

    def resolve(self, environment: Optional[Union[Environment, str]],
                api_url_override: Optional[str] = None) -> EndpointDescriptor:
        """
        Resolve endpoint parameters

        An explicit ``api_url_override`` wins unconditionally. Without one the
        environment must be named; there is no implicit fallback, least of
        all to ``local``.
        """
        env = Environment(environment) if environment is not None else None
        if api_url_override:
            return EndpointDescriptor(environment=env, api_url=api_url_override, is_override=True)

        if env is None:
            raise ValueError("No environment given and no apiUrl override")

        if env not in self.urls:
            raise ValueError(f"No endpoint configured for environment {env.value}")
        return EndpointDescriptor(environment=env, api_url=self.urls[env])


@runtime_checkable
class NetworkClient(Protocol):
    """Network operations the identity layer relies on"""

    async def publish_contact(self, contact: ContactBundle) -> None: ...
    async def fetch_encrypted_bundle(self, owner_address: str) -> Optional[bytes]: ...
    async def store_encrypted_bundle(self, owner_address: str, data: bytes) -> None: ...


NetworkFactory = Callable[[EndpointDescriptor], NetworkClient]


class InMemoryNetwork:
    """Process-local network node"""

    def __init__(self, endpoint: Optional[EndpointDescriptor] = None):
        self.endpoint = endpoint
        self.contacts: Dict[str, ContactBundle] = {}
        self.bundles: Dict[str, bytes] = {}

    async def publish_contact(self, contact: ContactBundle) -> None:
        self.contacts[contact.owner_address] = contact

    async def fetch_encrypted_bundle(self, owner_address: str) -> Optional[bytes]:
        return self.bundles.get(owner_address)

    async def store_encrypted_bundle(self, owner_address: str, data: bytes) -> None:
        self.bundles[owner_address] = bytes(data)

    async def get_contact(self, owner_address: str) -> Optional[ContactBundle]:
        return self.contacts.get(owner_address)

    def factory(self) -> NetworkFactory:
        """A factory that always hands out this node"""
        def _factory(endpoint: EndpointDescriptor) -> 'InMemoryNetwork':
            self.endpoint = endpoint
            return self
        return _factory


class BucketNetwork:
    """
    Serverless network node kept in object storage

    Layout below the store's base path:
        <env>/contacts/<owner>.json
        <env>/bundles/<owner>.bin
    """

    def __init__(self, store: Union[ObjectStore, str], endpoint: EndpointDescriptor):
        self.store = store if isinstance(store, ObjectStore) else ObjectStore(store)
        self.endpoint = endpoint
        self.env = endpoint.environment.value if endpoint.environment else "custom"

    def _contact_name(self, owner_address: str) -> str:
        return f"{self.env}/contacts/{owner_address}.json"

    def _bundle_name(self, owner_address: str) -> str:
        return f"{self.env}/bundles/{owner_address}.bin"

    async def publish_contact(self, contact: ContactBundle) -> None:
        try:
            await self.store.write_bytes(self._contact_name(contact.owner_address),
                                         contact.to_bytes())
        except Exception as e:
            raise NetworkUnavailableError(
                f"Contact publish failed: {e}", owner_address=contact.owner_address,
                step="publish_contact"
            ) from e

    async def fetch_encrypted_bundle(self, owner_address: str) -> Optional[bytes]:
        try:
            return await self.store.read_bytes(self._bundle_name(owner_address))
        except Exception as e:
            raise NetworkUnavailableError(
                f"Bundle fetch failed: {e}", owner_address=owner_address,
                step="fetch_encrypted_bundle"
            ) from e

    async def store_encrypted_bundle(self, owner_address: str, data: bytes) -> None:
        try:
            await self.store.write_bytes(self._bundle_name(owner_address), data)
        except Exception as e:
            raise NetworkUnavailableError(
                f"Bundle upload failed: {e}", owner_address=owner_address,
                step="store_encrypted_bundle"
            ) from e

    async def get_contact(self, owner_address: str) -> Optional[ContactBundle]:
        raw = await self.store.read_bytes(self._contact_name(owner_address))
        if raw is None:
            return None
        try:
            return ContactBundle.from_bytes(raw)
        except ValidationError:
            logger.warning("Ignoring unreadable contact for %s", owner_address)
            return None

    async def list_contacts(self) -> List[str]:
        names = await self.store.list_names(f"{self.env}/contacts")
        return [n.rsplit('/', 1)[-1][:-len('.json')] for n in names if n.endswith('.json')]

    @classmethod
    def factory(cls, store: Union[ObjectStore, str]) -> NetworkFactory:
        store = store if isinstance(store, ObjectStore) else ObjectStore(store)

        def _factory(endpoint: EndpointDescriptor) -> 'BucketNetwork':
            return cls(store, endpoint)
        return _factory
