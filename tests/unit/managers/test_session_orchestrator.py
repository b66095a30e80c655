"""Unit tests for SessionOrchestrator.

Covers create/destroy workflows against FakeDriver, including partial
failure rollback and idempotent teardown.
"""

from __future__ import annotations

from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from berth.config import Settings
from berth.errors import (
    ArchiveError,
    ContainerStartError,
    ContainerStopError,
    ImagePullError,
    InspectError,
    NetworkRemovalError,
    RuntimeUnavailable,
    SessionConflictError,
    SessionCreationError,
    SessionDestroyError,
    ValidationError,
)
from berth.managers.session import SessionOrchestrator
from berth.models.session import SessionStatus
from tests.fakes import FakeDriver


@pytest.fixture
def orchestrator(fake_driver: FakeDriver, settings: Settings) -> SessionOrchestrator:
    return SessionOrchestrator(fake_driver, settings)


class TestCreateSession:
    @pytest.mark.asyncio
    async def test_healthy_runtime_returns_active_session(self, orchestrator, fake_driver):
        """app-1/cand-1 on a healthy runtime yields an active one-hour session."""
        session = await orchestrator.create_session("app-1", "cand-1")

        assert session.status == SessionStatus.ACTIVE
        assert session.application_id == "app-1"
        assert session.candidate_id == "cand-1"
        assert session.container_id
        assert session.network_id
        assert session.expires_at - session.created_at == timedelta(milliseconds=3_600_000)

    @pytest.mark.asyncio
    async def test_steps_run_in_order(self, orchestrator, fake_driver):
        await orchestrator.create_session("app-1", "cand-1")

        assert fake_driver.call_names() == [
            "ping",
            "pull_image",
            "create_network",
            "create_container",
            "start_container",
            "inspect",
        ]

    @pytest.mark.asyncio
    async def test_pulls_configured_image(self, orchestrator, fake_driver, settings):
        await orchestrator.create_session("app-1", "cand-1")

        assert settings.sandbox.image in fake_driver.images

    @pytest.mark.asyncio
    async def test_urls_from_session_network_ip(self, orchestrator, fake_driver):
        session = await orchestrator.create_session("app-1", "cand-1")

        ip = fake_driver.containers[session.container_id].ip_address
        assert session.vnc_url == f"http://{ip}:6080/vnc.html"
        assert session.code_server_url == f"http://{ip}:8080"

    @pytest.mark.asyncio
    async def test_missing_network_info_yields_empty_urls(self, orchestrator, fake_driver):
        original_start = fake_driver.start_container

        async def start_without_ip(container_id: str) -> None:
            await original_start(container_id)
            fake_driver.containers[container_id].ip_address = ""

        fake_driver.start_container = start_without_ip

        session = await orchestrator.create_session("app-1", "cand-1")

        assert session.status == SessionStatus.ACTIVE
        assert session.vnc_url == ""
        assert session.code_server_url == ""

    @pytest.mark.asyncio
    async def test_inspect_failure_after_start_yields_empty_urls(self, orchestrator, fake_driver):
        fake_driver.fail_on["inspect"] = InspectError(message="Failed to inspect container: boom")

        session = await orchestrator.create_session("app-1", "cand-1")

        assert session.status == SessionStatus.ACTIVE
        assert session.vnc_url == ""

    @pytest.mark.asyncio
    async def test_custom_duration(self, orchestrator):
        session = await orchestrator.create_session("app-1", "cand-1", duration_minutes=90)

        assert session.expires_at - session.created_at == timedelta(minutes=90)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("duration", [0, -5])
    async def test_non_positive_duration_rejected(self, orchestrator, fake_driver, duration):
        with pytest.raises(ValidationError):
            await orchestrator.create_session("app-1", "cand-1", duration_minutes=duration)

        assert fake_driver.calls == []

    @pytest.mark.asyncio
    async def test_identical_inputs_get_distinct_ids_and_networks(self, orchestrator, fake_driver):
        first = await orchestrator.create_session("app-1", "cand-1")
        second = await orchestrator.create_session("app-1", "cand-1")

        assert first.session_id != second.session_id
        network_names = {n.name for n in fake_driver.networks.values()}
        assert network_names == {
            f"session-network-{first.session_id}",
            f"session-network-{second.session_id}",
        }

    @pytest.mark.asyncio
    async def test_network_and_container_labelled_with_owner(self, orchestrator, fake_driver):
        session = await orchestrator.create_session("app-1", "cand-1")

        network = fake_driver.networks[session.network_id]
        assert network.labels["hr-screening.sessionId"] == session.session_id
        assert network.labels["hr-screening.applicationId"] == "app-1"
        assert network.labels["hr-screening.candidateId"] == "cand-1"

        labels = fake_driver.containers[session.container_id].labels
        assert labels["hr-screening.sessionId"] == session.session_id
        assert labels["hr-screening.managed"] == "true"
        assert "hr-screening.createdAt" in labels
        assert "hr-screening.expiresAt" in labels

    @pytest.mark.asyncio
    async def test_container_spec_attached_to_session_network(self, orchestrator, fake_driver):
        session = await orchestrator.create_session("app-1", "cand-1")

        spec = fake_driver.created_specs[0]
        assert spec.network_mode == f"session-network-{session.session_id}"
        assert spec.env["APPLICATION_ID"] == "app-1"
        assert spec.env["CANDIDATE_ID"] == "cand-1"
        assert spec.capabilities.drop == ["ALL"]
        assert spec.filesystem.read_only_root is True

    @pytest.mark.asyncio
    async def test_runtime_unavailable_fails_fast(self, orchestrator, fake_driver):
        fake_driver.fail_on["ping"] = RuntimeUnavailable(message="Failed to reach container runtime: refused")

        with pytest.raises(SessionCreationError) as exc_info:
            await orchestrator.create_session("app-1", "cand-1")

        assert isinstance(exc_info.value.__cause__, RuntimeUnavailable)
        assert exc_info.value.message.startswith("Failed to create session:")
        assert fake_driver.call_names() == ["ping"]

    @pytest.mark.asyncio
    async def test_pull_failure_creates_nothing(self, orchestrator, fake_driver):
        fake_driver.fail_on["pull_image"] = ImagePullError(message="Failed to pull image: denied")

        with pytest.raises(SessionCreationError) as exc_info:
            await orchestrator.create_session("app-1", "cand-1")

        assert isinstance(exc_info.value.__cause__, ImagePullError)
        assert fake_driver.networks == {}
        assert fake_driver.containers == {}

    @pytest.mark.asyncio
    async def test_start_failure_rolls_back_container_and_network(self, orchestrator, fake_driver):
        fake_driver.fail_on["start_container"] = ContainerStartError(
            message="Failed to start container: oci runtime error"
        )

        with pytest.raises(SessionCreationError) as exc_info:
            await orchestrator.create_session("app-1", "cand-1")

        assert isinstance(exc_info.value.__cause__, ContainerStartError)
        assert fake_driver.containers == {}
        assert fake_driver.networks == {}
        assert fake_driver.call_names()[-2:] == ["remove_container", "remove_network"]

    @pytest.mark.asyncio
    async def test_create_container_failure_removes_network(self, orchestrator, fake_driver):
        fake_driver.fail_on["create_container"] = RuntimeError("engine exploded")

        with pytest.raises(SessionCreationError) as exc_info:
            await orchestrator.create_session("app-1", "cand-1")

        assert "engine exploded" in str(exc_info.value)
        assert fake_driver.networks == {}
        assert "remove_container" not in fake_driver.call_names()

    @pytest.mark.asyncio
    async def test_rollback_failure_still_raises_creation_error(self, orchestrator, fake_driver):
        fake_driver.fail_on["start_container"] = ContainerStartError(message="Failed to start container: x")
        fake_driver.fail_on["remove_network"] = NetworkRemovalError(message="Failed to remove network: busy")

        with pytest.raises(SessionCreationError) as exc_info:
            await orchestrator.create_session("app-1", "cand-1")

        assert isinstance(exc_info.value.__cause__, ContainerStartError)

    @pytest.mark.asyncio
    async def test_rollback_disabled_leaves_resources(self, fake_driver):
        settings = Settings(session={"rollback_on_failure": False})
        orchestrator = SessionOrchestrator(fake_driver, settings)
        fake_driver.fail_on["start_container"] = ContainerStartError(message="Failed to start container: x")

        with pytest.raises(SessionCreationError):
            await orchestrator.create_session("app-1", "cand-1")

        assert len(fake_driver.networks) == 1
        assert len(fake_driver.containers) == 1

    @pytest.mark.asyncio
    async def test_guard_conflict_prevents_runtime_work(self, fake_driver, settings):
        guard = AsyncMock()
        guard.ensure_available.side_effect = SessionConflictError()
        orchestrator = SessionOrchestrator(fake_driver, settings, guard=guard)

        with pytest.raises(SessionConflictError):
            await orchestrator.create_session("app-1", "cand-1")

        guard.ensure_available.assert_awaited_once_with("app-1")
        assert fake_driver.calls == []

    @pytest.mark.asyncio
    async def test_guard_allows_creation(self, fake_driver, settings):
        guard = AsyncMock()
        orchestrator = SessionOrchestrator(fake_driver, settings, guard=guard)

        session = await orchestrator.create_session("app-1", "cand-1")

        assert session.status == SessionStatus.ACTIVE


class TestDestroySession:
    @pytest.mark.asyncio
    async def test_full_teardown_in_order(self, orchestrator, fake_driver):
        session = await orchestrator.create_session("app-1", "cand-1")
        fake_driver.calls.clear()

        await orchestrator.destroy_session(session.session_id, session.container_id, session.network_id)

        assert fake_driver.call_names() == [
            "archive_workspace",
            "stop_container",
            "remove_container",
            "remove_network",
        ]
        assert fake_driver.containers == {}
        assert fake_driver.networks == {}

    @pytest.mark.asyncio
    async def test_archive_destination_is_session_scoped(self, orchestrator, fake_driver):
        session = await orchestrator.create_session("app-1", "cand-1")

        await orchestrator.destroy_session(session.session_id, session.container_id, session.network_id)

        assert fake_driver.archives[session.container_id] == (
            f"/tmp/berth-test-archives/{session.session_id}-workspace.tar"
        )

    @pytest.mark.asyncio
    async def test_archive_failure_does_not_block_teardown(self, orchestrator, fake_driver):
        session = await orchestrator.create_session("app-1", "cand-1")
        fake_driver.fail_on["archive_workspace"] = ArchiveError(message="Failed to archive workspace: disk full")

        await orchestrator.destroy_session(session.session_id, session.container_id, session.network_id)

        assert "stop_container" in fake_driver.call_names()
        assert "remove_container" in fake_driver.call_names()
        assert "remove_network" in fake_driver.call_names()
        assert fake_driver.networks == {}

    @pytest.mark.asyncio
    async def test_already_stopped_container(self, orchestrator, fake_driver):
        """A container already in stopped state tears down cleanly, network included."""
        session = await orchestrator.create_session("app-1", "cand-1")
        await fake_driver.stop_container(session.container_id)

        await orchestrator.destroy_session(session.session_id, session.container_id, session.network_id)

        assert session.network_id not in fake_driver.networks
        assert session.container_id not in fake_driver.containers

    @pytest.mark.asyncio
    async def test_destroy_twice_does_not_raise(self, orchestrator, fake_driver):
        session = await orchestrator.create_session("app-1", "cand-1")

        await orchestrator.destroy_session(session.session_id, session.container_id, session.network_id)
        await orchestrator.destroy_session(session.session_id, session.container_id, session.network_id)

    @pytest.mark.asyncio
    async def test_stop_failure_raises_destroy_error(self, orchestrator, fake_driver):
        session = await orchestrator.create_session("app-1", "cand-1")
        fake_driver.fail_on["stop_container"] = ContainerStopError(message="Failed to stop container: daemon busy")

        with pytest.raises(SessionDestroyError) as exc_info:
            await orchestrator.destroy_session(session.session_id, session.container_id, session.network_id)

        assert isinstance(exc_info.value.__cause__, ContainerStopError)
        assert exc_info.value.message.startswith("Failed to destroy session:")

    @pytest.mark.asyncio
    async def test_network_removal_failure_raises_destroy_error(self, orchestrator, fake_driver):
        session = await orchestrator.create_session("app-1", "cand-1")
        fake_driver.fail_on["remove_network"] = NetworkRemovalError(message="Failed to remove network: in use")

        with pytest.raises(SessionDestroyError):
            await orchestrator.destroy_session(session.session_id, session.container_id, session.network_id)

        assert session.container_id not in fake_driver.containers

    @pytest.mark.asyncio
    async def test_uses_configured_stop_timeout(self, fake_driver):
        settings = Settings(session={"stop_timeout_seconds": 5})
        orchestrator = SessionOrchestrator(fake_driver, settings)
        fake_driver.stop_container = AsyncMock()

        await orchestrator.destroy_session("sess-1", "ctr-1", "net-1")

        fake_driver.stop_container.assert_awaited_once_with("ctr-1", timeout_seconds=5)


class TestArchivePath:
    def test_stays_under_archive_root(self, orchestrator):
        assert orchestrator.archive_path("sess-1") == "/tmp/berth-test-archives/sess-1-workspace.tar"

    @pytest.mark.parametrize(
        "session_id",
        ["", "../../../etc/cron.d/x", "a/b", "..", "a\\b", "sess\x00"],
    )
    def test_rejects_ids_that_escape_root(self, orchestrator, session_id):
        with pytest.raises(ValidationError):
            orchestrator.archive_path(session_id)

    @pytest.mark.asyncio
    async def test_destroy_with_unsafe_id_skips_archive_but_tears_down(self, orchestrator, fake_driver):
        session = await orchestrator.create_session("app-1", "cand-1")
        fake_driver.calls.clear()

        await orchestrator.destroy_session("../../../etc/cron.d/x", session.container_id, session.network_id)

        assert fake_driver.call_names() == ["stop_container", "remove_container", "remove_network"]
        assert fake_driver.archives == {}
        assert fake_driver.containers == {}
        assert fake_driver.networks == {}
