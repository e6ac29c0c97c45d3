"""Tests for sealmail.service."""

from __future__ import annotations

import asyncio

import pytest
import respx

from sealmail.config import SealmailConfig
from sealmail.errors import ConfigurationError
from sealmail.interfaces import MailHost
from sealmail.models import Badge, ComposeDetails, DisplayState
from sealmail.service import SealmailService
from sealmail.unseal import DecryptState
from tests.conftest import (
    INBOX,
    FakeCompose,
    FakeMailStore,
    FakeSurfaceHost,
    email_con,
    make_credential,
)

BASE = "http://test-pkg:8087"


def _mock_key_service(router: respx.MockRouter) -> None:
    router.get(f"{BASE}/v2/parameters").respond(200, json={"publicKey": "mpk"})
    router.get(f"{BASE}/v2/sign/parameters").respond(200, json={"publicKey": "mvk"})
    router.post(f"{BASE}/v2/irma/sign/key").respond(
        200,
        json={"status": "DONE", "proofStatus": "VALID", "pubSignKey": {"con": email_con("alice@example.com")}},
    )
    router.get(url__regex=rf"{BASE}/v2/irma/key/\d+").respond(
        200, json={"status": "DONE", "proofStatus": "VALID", "key": {"usk": "bob@example.com"}}
    )


@pytest.fixture
def service(sealmail_config: SealmailConfig, host: MailHost) -> SealmailService:
    return SealmailService(sealmail_config, host)


@pytest.fixture
async def started(service: SealmailService):
    with respx.mock(assert_all_called=False) as router:
        _mock_key_service(router)
        await service.start()
    yield service
    await service.stop()


class TestLifecycle:
    def test_pipelines_require_start(self, service: SealmailService):
        with pytest.raises(AssertionError):
            service.seal_pipeline
        with pytest.raises(AssertionError):
            service.unseal_pipeline

    @pytest.mark.asyncio
    async def test_start_loads_master_keys(self, started: SealmailService):
        assert started.master_keys.public_key == "mpk"
        assert started.master_keys.verification_key == "mvk"
        assert started.seal_pipeline is not None

    @pytest.mark.asyncio
    async def test_start_without_key_material_fails(self, service: SealmailService):
        try:
            with respx.mock as router, pytest.raises(ConfigurationError):
                router.get(f"{BASE}/v2/parameters").respond(500)
                await service.start()
        finally:
            await service.stop()

    @pytest.mark.asyncio
    async def test_start_registers_open_compose_tabs(
        self, service: SealmailService, compose: FakeCompose, mail_store: FakeMailStore
    ):
        mail_store.add_message(9, headers={"x-postguard": ["0.1"]})
        compose.details[1] = ComposeDetails(from_address="a@example.com")
        compose.details[2] = ComposeDetails(from_address="a@example.com", type="reply", related_message_id=9)

        with respx.mock(assert_all_called=False) as router:
            _mock_key_service(router)
            await service.start()
        try:
            assert service.tabs.get(1).encryption_enabled is False
            assert service.tabs.get(2).encryption_enabled is True
        finally:
            await service.stop()

    @pytest.mark.asyncio
    async def test_run_until_shutdown(self, service: SealmailService):
        async def _bridge() -> None:
            await service._shutdown_event.wait()

        service._run_bridge_server = _bridge
        with respx.mock(assert_all_called=False) as router:
            _mock_key_service(router)
            task = asyncio.create_task(service.run())
            while service._seal is None:
                await asyncio.sleep(0.01)

        service._shutdown_event.set()
        await asyncio.wait_for(task, timeout=2)
        assert service.janitor.runs == 0

    @pytest.mark.asyncio
    async def test_run_raises_when_key_material_missing(self, service: SealmailService):
        with respx.mock as router:
            router.get(f"{BASE}/v2/parameters").respond(500)
            with pytest.raises(ConfigurationError):
                await asyncio.wait_for(service.run(), timeout=2)
        assert service._seal is None


class TestComposeEvents:
    @pytest.mark.asyncio
    async def test_encrypt_by_default(self, sealmail_config: SealmailConfig, host: MailHost, compose: FakeCompose):
        compose.details[1] = ComposeDetails(from_address="a@example.com")
        service = SealmailService(sealmail_config.model_copy(update={"encrypt_by_default": True}), host)
        assert await service.should_encrypt(1) is True

    @pytest.mark.asyncio
    async def test_toggle_sets_delivery_format(self, started: SealmailService, compose: FakeCompose):
        compose.details[1] = ComposeDetails(from_address="a@example.com")
        await started.on_tab_created(1)

        await started.on_encryption_toggled(1, True)
        assert compose.details[1].delivery_format == "both"
        assert started.tabs.get(1).encryption_enabled is True

        await started.on_encryption_toggled(1, False)
        assert compose.details[1].delivery_format == "auto"

    @pytest.mark.asyncio
    async def test_toggle_unknown_tab_ignored(self, started: SealmailService, compose: FakeCompose):
        compose.details[5] = ComposeDetails(from_address="a@example.com")
        await started.on_encryption_toggled(5, True)
        assert compose.details[5].delivery_format == "auto"

    @pytest.mark.asyncio
    async def test_tab_removed(self, started: SealmailService, compose: FakeCompose):
        compose.details[1] = ComposeDetails(from_address="a@example.com")
        await started.on_tab_created(1)
        started.on_tab_removed(1)
        assert 1 not in started.tabs


class TestEndToEnd:
    @pytest.mark.asyncio
    async def test_seal_then_unseal_is_byte_identical(
        self,
        started: SealmailService,
        compose: FakeCompose,
        mail_store: FakeMailStore,
        surfaces: FakeSurfaceHost,
    ):
        token = make_credential()
        surfaces.responder = lambda kind, sid: started.channel.complete(sid, {"jwt": token})
        details = ComposeDetails(
            from_address="Alice <alice@example.com>",
            to=["bob@example.com"],
            subject="Hello",
            body="<p>The eagle has landed.</p>",
        )
        compose.details[1] = details
        await started.on_tab_created(1)
        await started.on_encryption_toggled(1, True)

        with respx.mock(assert_all_called=False) as router:
            _mock_key_service(router)
            decision = await started.on_before_send(1, details)
            archived = await started.tabs.get(1).archive_task

            [(_, _, ciphertext)] = compose.added[1]
            mail_store.add_message(
                77,
                author="Alice <alice@example.com>",
                attachments={"postguard.encrypted": ciphertext},
                folder=INBOX,
            )
            assert await started.describe_message(77) == (DisplayState.SEALED, [])

            session = await started.on_decrypt_clicked(77)

        assert decision.cancel is False
        assert session.state == DecryptState.DELIVERED
        assert mail_store.bodies[session.delivered_id] == mail_store.bodies[archived]
        assert b"The eagle has landed." in mail_store.bodies[session.delivered_id]

        state, badges = await started.describe_message(session.delivered_id)
        assert state == DisplayState.DECRYPTED
        assert badges == [Badge(type="envelope", value="alice@example.com")]

    @pytest.mark.asyncio
    async def test_decrypt_failure_returns_none(self, started: SealmailService, mail_store: FakeMailStore):
        mail_store.add_message(5, attachments={"report.pdf": b"%PDF"})
        assert await started.on_decrypt_clicked(5) is None


class TestDescribeMessage:
    @pytest.mark.asyncio
    async def test_was_sealed_and_plain(self, started: SealmailService, mail_store: FakeMailStore):
        mail_store.add_message(1, headers={"x-postguard": ["0.1"]})
        mail_store.add_message(2)
        assert await started.describe_message(1) == (DisplayState.WAS_SEALED, [])
        assert await started.describe_message(2) == (DisplayState.PLAIN, [])
