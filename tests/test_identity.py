"""Tests for the identity bootstrap state machine."""

from __future__ import annotations

import asyncio
import gc

import pytest

from xmtp_identity.client.identity import BootstrapState, IdentityManager, IdentitySession
from xmtp_identity.client.providers import KeySource
from xmtp_identity.core.config import ClientConfig, Environment
from xmtp_identity.core.crypto import EncryptedKeyRecord
from xmtp_identity.core.errors import (
    InvalidStateError,
    MalformedKeyRecordError,
    NetworkUnavailableError,
    SignatureDeclinedError,
    StorageIOError,
)
from xmtp_identity.core.keys import KeyMaterial
from xmtp_identity.core.network import NetworkEnvironmentRouter

from conftest import RecordingNetwork, RecordingPersistence, RecordingSigner

S = BootstrapState
OFFLINE = dict(skip_network_publish=True)


class TestFirstBootstrap:
    async def test_generates_signs_and_persists(self, manager, signer, persistence, network):
        session = await manager.bootstrap(signer, ClientConfig(environment="dev", **OFFLINE))

        assert session.state == S.READY
        assert session.source == KeySource.GENERATED
        assert signer.count("create") == 1
        assert signer.count("enable") == 1
        assert [key for key, _ in persistence.sets] == ["xmtp:dev:keys:0xABC"]
        assert network.publish_calls == 0
        assert not session.published

    async def test_state_order(self, manager, signer):
        session = await manager.bootstrap(signer, ClientConfig(**OFFLINE))
        assert session.history == [
            S.UNINITIALIZED, S.RESOLVING_KEYS, S.AWAITING_CREATE_SIGNATURE,
            S.AWAITING_STORAGE_SIGNATURE, S.PERSISTING, S.READY,
        ]

    async def test_create_signature_precedes_storage_signature(self, manager, signer):
        await manager.bootstrap(signer, ClientConfig(**OFFLINE))
        assert [signer.kind(p) for p in signer.requests] == ["create", "enable"]

    async def test_identity_is_signed_by_wallet(self, manager, signer):
        session = await manager.bootstrap(signer, ClientConfig(**OFFLINE))
        assert session.key_material.has_identity_signature()

    async def test_stored_record_is_encrypted(self, manager, signer, persistence):
        session = await manager.bootstrap(signer, ClientConfig(**OFFLINE))
        stored = persistence.sets[0][1]

        record = EncryptedKeyRecord.from_bytes(stored)
        assert record.owner_address == "0xABC"
        assert session.export_key_bundle() not in stored


class TestReload:
    async def test_second_bootstrap_reuses_stored_keys(self, manager, signer, persistence):
        config = ClientConfig(environment="dev", **OFFLINE)
        first = await manager.bootstrap(signer, config)
        signer.requests.clear()

        second = await manager.bootstrap(signer, config)

        assert second is not first
        assert second.source == KeySource.PERSISTED
        assert signer.count("create") == 0
        assert signer.count("enable") == 1
        assert second.public_key == first.public_key
        assert len(persistence.sets) == 2

        first_record = EncryptedKeyRecord.from_bytes(persistence.sets[0][1])
        second_record = EncryptedKeyRecord.from_bytes(persistence.sets[1][1])
        assert first_record.salt != second_record.salt
        assert first_record.nonce != second_record.nonce

    async def test_reload_skips_create_state(self, manager, signer):
        await manager.bootstrap(signer, ClientConfig(**OFFLINE))
        session = await manager.bootstrap(signer, ClientConfig(**OFFLINE))
        assert S.AWAITING_CREATE_SIGNATURE not in session.history
        assert S.AWAITING_STORAGE_SIGNATURE in session.history

    async def test_reload_from_a_fresh_manager(self, signer, persistence, network):
        config = ClientConfig(**OFFLINE)
        first = await IdentityManager(persistence, network.factory()).bootstrap(signer, config)
        second = await IdentityManager(persistence, network.factory()).bootstrap(signer, config)
        assert second.source == KeySource.PERSISTED
        assert second.public_key == first.public_key

    async def test_corrupt_record_fails_loudly(self, manager, signer, persistence):
        await persistence.set("xmtp:dev:keys:0xABC", b"not a record")

        with pytest.raises(MalformedKeyRecordError) as info:
            await manager.bootstrap(signer, ClientConfig(**OFFLINE))

        assert info.value.owner_address == "0xABC"
        assert signer.count("create") == 0
        assert manager.session("0xABC").state == S.FAILED

    async def test_record_from_another_wallet_does_not_open(self, manager, persistence):
        owner = RecordingSigner(address="0xABC")
        await manager.bootstrap(owner, ClientConfig(**OFFLINE))

        impostor = RecordingSigner(address="0xABC")
        with pytest.raises(MalformedKeyRecordError):
            await manager.bootstrap(impostor, ClientConfig(**OFFLINE))


class TestCacheDisabled:
    async def test_nothing_is_written(self, manager, signer, persistence):
        config = ClientConfig(persist_identity_cache=False, **OFFLINE)
        session = await manager.bootstrap(signer, config)

        assert session.is_ready
        assert persistence.sets == []
        assert persistence.gets == []
        assert signer.count("create") == 1
        assert signer.count("enable") == 1

    async def test_every_bootstrap_generates(self, manager, signer):
        config = ClientConfig(persist_identity_cache=False, **OFFLINE)
        first = await manager.bootstrap(signer, config)
        second = await manager.bootstrap(signer, config)
        assert second.source == KeySource.GENERATED
        assert second.public_key != first.public_key


class TestFailures:
    async def test_declined_create_signature(self, manager, persistence):
        signer = RecordingSigner(address="0xABC", decline=("create",))

        with pytest.raises(SignatureDeclinedError) as info:
            await manager.bootstrap(signer, ClientConfig(**OFFLINE))

        session = manager.session("0xABC")
        assert session.state == S.FAILED
        assert session.failure_reason == "SignatureDeclinedError"
        assert info.value.step == "create_identity"
        assert persistence.sets == []
        assert signer.count("enable") == 0

    async def test_declined_storage_signature(self, manager, persistence):
        signer = RecordingSigner(address="0xABC", decline=("enable",))

        with pytest.raises(SignatureDeclinedError) as info:
            await manager.bootstrap(signer, ClientConfig(**OFFLINE))

        assert info.value.step == "enable_identity"
        assert persistence.sets == []
        assert manager.session("0xABC").history[-2] == S.AWAITING_STORAGE_SIGNATURE

    async def test_failed_session_holds_no_keys(self, manager):
        signer = RecordingSigner(address="0xABC", decline=("enable",))
        with pytest.raises(SignatureDeclinedError):
            await manager.bootstrap(signer, ClientConfig(**OFFLINE))
        with pytest.raises(InvalidStateError):
            manager.session("0xABC").key_material

    async def test_signer_timeout_counts_as_declined(self, manager):
        signer = RecordingSigner(address="0xABC", delay=5)
        config = ClientConfig(signature_timeout=0.05, **OFFLINE)

        with pytest.raises(SignatureDeclinedError):
            await manager.bootstrap(signer, config)
        assert manager.session("0xABC").state == S.FAILED

    async def test_storage_failure(self, signer, network):
        manager = IdentityManager(RecordingPersistence(fail_set=True), network.factory())

        with pytest.raises(StorageIOError) as info:
            await manager.bootstrap(signer, ClientConfig(**OFFLINE))

        assert info.value.owner_address == "0xABC"
        assert manager.session("0xABC").history[-2] == S.PERSISTING

    async def test_failing_hook_fails_bootstrap(self, manager, signer):
        def hook():
            raise RuntimeError("ui closed")

        with pytest.raises(RuntimeError):
            await manager.bootstrap(signer, ClientConfig(pre_create_identity_hook=hook, **OFFLINE))
        assert manager.session("0xABC").failure_reason == "RuntimeError"
        assert signer.requests == []

    async def test_cancellation(self, manager, persistence):
        signer = RecordingSigner(address="0xABC")
        signer.block = asyncio.Event()

        task = asyncio.create_task(manager.bootstrap(signer, ClientConfig(**OFFLINE)))
        await signer.requested.wait()
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task

        session = manager.session("0xABC")
        assert session.state == S.FAILED
        assert session.failure_reason == "cancelled"
        assert persistence.sets == []

    async def test_retry_after_failure(self, manager):
        signer = RecordingSigner(address="0xABC", decline=("create",))
        with pytest.raises(SignatureDeclinedError):
            await manager.bootstrap(signer, ClientConfig(**OFFLINE))

        signer.decline = ()
        session = await manager.bootstrap(signer, ClientConfig(**OFFLINE))
        assert session.is_ready


class TestHooks:
    async def test_hooks_run_before_their_signatures(self, manager):
        events = []
        signer = RecordingSigner(address="0xABC", events=events)

        async def before_enable():
            events.append("hook:enable")

        config = ClientConfig(
            pre_create_identity_hook=lambda: events.append("hook:create"),
            pre_enable_identity_hook=before_enable,
            **OFFLINE,
        )
        await manager.bootstrap(signer, config)

        assert events == ["hook:create", "sign:create", "hook:enable", "sign:enable"]

    async def test_create_hook_skipped_on_reload(self, manager, signer):
        await manager.bootstrap(signer, ClientConfig(**OFFLINE))
        calls = []
        config = ClientConfig(pre_create_identity_hook=lambda: calls.append("create"), **OFFLINE)

        await manager.bootstrap(signer, config)
        assert calls == []


class TestPublishing:
    async def test_contact_is_published(self, manager, signer, network):
        session = await manager.bootstrap(signer, ClientConfig(app_version="demo/1.0"))

        assert session.published
        assert session.history[-2] == S.PUBLISHING_CONTACT
        contact = await network.get_contact("0xABC")
        assert contact.app_version == "demo/1.0"
        assert contact.identity_signature is not None

    async def test_generated_keys_are_backed_up(self, manager, signer, network):
        await manager.bootstrap(signer, ClientConfig())
        raw = await network.fetch_encrypted_bundle("0xABC")
        assert EncryptedKeyRecord.from_bytes(raw).owner_address == "0xABC"

    async def test_publish_failure_leaves_identity_usable(self, signer, persistence):
        network = RecordingNetwork(fail_publish=True)
        manager = IdentityManager(persistence, network.factory())

        session = await manager.bootstrap(signer, ClientConfig())

        assert session.is_ready
        assert not session.published
        assert isinstance(session.publish_error, NetworkUnavailableError)
        assert network.publish_calls == 1
        assert len(persistence.sets) == 1

    async def test_restore_from_network(self, signer, network):
        original = await IdentityManager(RecordingPersistence(), network.factory()).bootstrap(
            signer, ClientConfig()
        )
        signer.requests.clear()

        fresh = RecordingPersistence()
        restored = await IdentityManager(fresh, network.factory()).bootstrap(
            signer, ClientConfig(**OFFLINE)
        )

        assert restored.source == KeySource.NETWORK
        assert restored.public_key == original.public_key
        assert signer.count("create") == 0
        assert signer.count("enable") == 1
        assert len(fresh.sets) == 1
        assert S.AWAITING_CREATE_SIGNATURE not in restored.history

    async def test_restore_runs_enable_hook_first(self, network):
        events = []
        signer = RecordingSigner(address="0xABC", events=events)
        await IdentityManager(RecordingPersistence(), network.factory()).bootstrap(
            signer, ClientConfig()
        )
        events.clear()

        config = ClientConfig(pre_enable_identity_hook=lambda: events.append("hook:enable"),
                              **OFFLINE)
        await IdentityManager(RecordingPersistence(), network.factory()).bootstrap(signer, config)

        assert events == ["hook:enable", "sign:enable"]

    async def test_network_bundle_from_another_wallet_fails(self, signer, network):
        await IdentityManager(RecordingPersistence(), network.factory()).bootstrap(
            signer, ClientConfig()
        )
        impostor = RecordingSigner(address="0xABC")

        with pytest.raises(MalformedKeyRecordError):
            await IdentityManager(RecordingPersistence(), network.factory()).bootstrap(
                impostor, ClientConfig(**OFFLINE)
            )

    async def test_unreachable_network_falls_back_to_generation(self, signer):
        network = RecordingNetwork(fail_fetch=True)
        manager = IdentityManager(RecordingPersistence(), network.factory())
        session = await manager.bootstrap(signer, ClientConfig(**OFFLINE))
        assert session.source == KeySource.GENERATED

    async def test_transport_error_falls_back_to_generation(self, signer):
        network = RecordingNetwork(fetch_error=RuntimeError("connection reset by peer"))
        manager = IdentityManager(RecordingPersistence(), network.factory())

        session = await manager.bootstrap(signer, ClientConfig(**OFFLINE))

        assert session.is_ready
        assert session.source == KeySource.GENERATED
        assert network.fetch_calls == 1


class TestConcurrency:
    async def test_same_owner_bootstraps_once(self, manager):
        signer = RecordingSigner(address="0xABC", delay=0.01)
        config = ClientConfig(**OFFLINE)

        first, second = await asyncio.gather(
            manager.bootstrap(signer, config), manager.bootstrap(signer, config)
        )

        assert first is second
        assert signer.count("create") == 1
        assert signer.count("enable") == 1

    async def test_different_config_is_not_shared(self, manager):
        signer = RecordingSigner(address="0xABC", delay=0.01)

        first, second = await asyncio.gather(
            manager.bootstrap(signer, ClientConfig(**OFFLINE)),
            manager.bootstrap(signer, ClientConfig(app_version="b/2", **OFFLINE)),
        )

        assert first is not second
        assert second.source == KeySource.PERSISTED

    async def test_different_owners_run_independently(self, manager):
        alice = RecordingSigner(address="0xA11CE")
        bob = RecordingSigner(address="0xB0B")
        alice.block = asyncio.Event()

        blocked = asyncio.create_task(manager.bootstrap(alice, ClientConfig(**OFFLINE)))
        await alice.requested.wait()

        session = await manager.bootstrap(bob, ClientConfig(**OFFLINE))
        assert session.is_ready
        assert not blocked.done()

        alice.block.set()
        assert (await blocked).is_ready

    async def test_different_signer_object_is_not_shared(self, manager):
        first = RecordingSigner(address="0xABC", delay=0.01)
        second = RecordingSigner(address="0xABC", delay=0.01, private_key=first.private_key)
        config = ClientConfig(**OFFLINE)

        one, two = await asyncio.gather(
            manager.bootstrap(first, config), manager.bootstrap(second, config)
        )

        assert one is not two
        assert two.signer is second
        assert second.count("create") == 0
        assert second.count("enable") == 1
        assert two.public_key == one.public_key

    async def test_locks_are_released_after_bootstrap(self, manager, signer):
        await manager.bootstrap(signer, ClientConfig(**OFFLINE))
        gc.collect()
        assert len(manager._locks) == 0


class TestImportExport:
    async def test_export_then_import(self, manager, signer, persistence, network):
        session = await manager.bootstrap(signer, ClientConfig(**OFFLINE))
        exported = manager.export_key_bundle("0xABC")

        other = IdentityManager(RecordingPersistence(), network.factory())
        signer.requests.clear()
        imported = await other.import_from_key_bundle(exported, signer, ClientConfig(**OFFLINE))

        assert imported.public_key == session.public_key
        assert imported.history == [S.UNINITIALIZED, S.AWAITING_STORAGE_SIGNATURE,
                                    S.PERSISTING, S.READY]
        assert signer.count("create") == 0
        assert signer.count("enable") == 1

    async def test_import_without_cache(self, manager, signer):
        material = KeyMaterial.generate("0xABC")
        session = await manager.import_from_key_bundle(
            material.export(), signer, ClientConfig(persist_identity_cache=False, **OFFLINE)
        )
        assert session.history == [S.UNINITIALIZED, S.READY]
        assert signer.requests == []

    async def test_import_then_bootstrap_reloads(self, manager, signer):
        material = KeyMaterial.generate("0xABC")
        await manager.import_from_key_bundle(material.export(), signer, ClientConfig(**OFFLINE))

        session = await manager.bootstrap(signer, ClientConfig(**OFFLINE))
        assert session.source == KeySource.PERSISTED
        assert session.public_key == material.public_key_bytes()

    async def test_malformed_import(self, manager, signer, persistence):
        with pytest.raises(MalformedKeyRecordError) as info:
            await manager.import_from_key_bundle(b"\x00junk", signer)
        assert info.value.step == "import"
        assert persistence.sets == []

    def test_export_requires_ready_identity(self, manager):
        with pytest.raises(InvalidStateError):
            manager.export_key_bundle("0xABC")

    async def test_export_is_a_copy(self, manager, signer):
        session = await manager.bootstrap(signer, ClientConfig(**OFFLINE))
        assert manager.export_key_bundle("0xABC") == session.key_material.raw_bytes


class TestEnvironments:
    async def test_records_are_isolated(self, manager, signer, persistence):
        dev = await manager.bootstrap(signer, ClientConfig(environment="dev", **OFFLINE))
        prod = await manager.bootstrap(signer, ClientConfig(environment="production", **OFFLINE))

        assert prod.source == KeySource.GENERATED
        assert prod.public_key != dev.public_key
        assert [key for key, _ in persistence.sets] == [
            "xmtp:dev:keys:0xABC", "xmtp:production:keys:0xABC"
        ]

    async def test_ambiguous_session_lookup(self, manager, signer):
        await manager.bootstrap(signer, ClientConfig(environment="dev", **OFFLINE))
        await manager.bootstrap(signer, ClientConfig(environment="local", **OFFLINE))

        with pytest.raises(InvalidStateError):
            manager.session("0xABC")
        assert manager.session("0xABC", Environment.LOCAL).endpoint.api_url == "http://localhost:5555"

    async def test_api_url_override(self, manager, signer, network):
        config = ClientConfig(environment="production", api_url="https://my-node.example")
        session = await manager.bootstrap(signer, config)

        assert session.endpoint.api_url == "https://my-node.example"
        assert network.endpoint.api_url == "https://my-node.example"

    async def test_custom_router(self, signer, persistence, network):
        router = NetworkEnvironmentRouter({Environment.DEV: "https://dev.internal"})
        manager = IdentityManager(persistence, network.factory(), router=router)
        session = await manager.bootstrap(signer, ClientConfig(**OFFLINE))
        assert session.endpoint.api_url == "https://dev.internal"


class TestStaticAndWipe:
    async def test_private_key_override(self, manager, signer):
        material = KeyMaterial.generate("0xABC")
        config = ClientConfig(private_key_override=material.raw_bytes, **OFFLINE)

        session = await manager.bootstrap(signer, config)

        assert session.source == KeySource.STATIC
        assert session.public_key == material.public_key_bytes()
        assert signer.count("create") == 0

    async def test_wipe(self, manager, signer, persistence):
        await manager.bootstrap(signer, ClientConfig(**OFFLINE))

        await manager.wipe("0xABC", Environment.DEV)

        assert persistence.deletes == ["xmtp:dev:keys:0xABC"]
        assert await persistence.get("xmtp:dev:keys:0xABC") is None
        assert manager.session("0xABC") is None

    async def test_bootstrap_after_wipe_generates(self, manager, signer):
        first = await manager.bootstrap(signer, ClientConfig(**OFFLINE))
        await manager.wipe("0xABC", "dev")
        second = await manager.bootstrap(signer, ClientConfig(**OFFLINE))
        assert second.source == KeySource.GENERATED
        assert second.public_key != first.public_key

    async def test_wipe_forgets_bootstrap_count(self, manager, signer):
        await manager.bootstrap(signer, ClientConfig(**OFFLINE))
        assert manager._finished

        await manager.wipe("0xABC", "dev")

        assert manager._finished == {}


def test_session_repr_hides_keys():
    endpoint = NetworkEnvironmentRouter().resolve("dev")
    session = IdentitySession("0xABC", ClientConfig(), endpoint)
    session.attach_material(KeyMaterial.generate("0xABC"))
    assert repr(session) == "IdentitySession(owner='0xABC', env='dev', state='uninitialized')"
