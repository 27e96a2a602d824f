"""Registry publisher tests"""

from unittest.mock import MagicMock

import pytest

from conftest import FakeRegistry
from shipyard.cicd.builder import Artifact
from shipyard.cicd.publisher import (
    DockerRegistryBackend,
    RegistryCredentials,
    RegistryPublisher,
    is_rejection,
    registry_host,
    split_reference,
)
from shipyard.core.async_utils import Backoff
from shipyard.core.exceptions import AuthFailure, PublishFailure, PublishRejected


@pytest.fixture
def artifact():
    return Artifact(image_name="registry.example.com/app", tag="7", source_digest="abc")


def make_publisher(registry: FakeRegistry) -> RegistryPublisher:
    return RegistryPublisher(registry, max_retries=3, backoff=Backoff(delay=0.01))


class TestRegistryPublisher:
    @pytest.mark.asyncio
    async def test_pushes_version_and_latest(self, artifact, credentials):
        registry = FakeRegistry()
        result = await make_publisher(registry).publish(artifact, credentials)

        assert result.pushed_tags == ["7", "latest"]
        assert result.attempts == 2
        assert result.digest.startswith("sha256:")
        assert registry.pushes == ["registry.example.com/app:7", "registry.example.com/app:latest"]

    @pytest.mark.asyncio
    async def test_republish_is_noop(self, artifact, credentials):
        registry = FakeRegistry()
        publisher = make_publisher(registry)

        first = await publisher.publish(artifact, credentials)
        second = await publisher.publish(artifact, credentials)

        assert first.pushed_tags == ["7", "latest"]
        assert second.already_present
        assert second.skipped_tags == ["7", "latest"]
        assert second.digest == first.digest
        assert len(registry.pushes) == 2
        assert len(set(registry.remote.values())) == 1

    @pytest.mark.asyncio
    async def test_auth_failure_never_pushes(self, artifact):
        registry = FakeRegistry(password="right")
        bad = RegistryCredentials(registry="registry.example.com", username="ci", password="wrong")

        with pytest.raises(AuthFailure):
            await make_publisher(registry).publish(artifact, bad)
        assert registry.pushes == []

    @pytest.mark.asyncio
    async def test_transient_failures_are_retried(self, artifact, credentials):
        registry = FakeRegistry(push_errors=[
            PublishFailure("registry.example.com/app:7", "connection reset"),
            PublishFailure("registry.example.com/app:7", "connection reset"),
        ])
        result = await make_publisher(registry).publish(artifact, credentials)

        assert result.pushed_tags == ["7", "latest"]
        assert result.attempts == 4
        assert len(registry.pushes) == 4

    @pytest.mark.asyncio
    async def test_retry_bound(self, artifact, credentials):
        registry = FakeRegistry(push_errors=[PublishFailure("app", "timeout") for _ in range(5)])

        with pytest.raises(PublishFailure):
            await make_publisher(registry).publish(artifact, credentials)
        assert len(registry.pushes) == 4

    @pytest.mark.asyncio
    async def test_rejection_is_not_retried(self, artifact, credentials):
        registry = FakeRegistry(push_errors=[PublishRejected("app", "denied: requested access to the resource is denied")])

        with pytest.raises(PublishRejected):
            await make_publisher(registry).publish(artifact, credentials)
        assert len(registry.pushes) == 1


class TestCredentials:
    def test_password_hidden_from_repr(self, credentials):
        assert "secret" not in repr(credentials)
        assert credentials.auth_config() == {"username": "ci", "password": "secret"}


class TestReferenceHelpers:
    def test_split_reference(self):
        assert split_reference("host:5000/app:7") == ("host:5000/app", "7")
        assert split_reference("host:5000/app") == ("host:5000/app", "latest")
        assert split_reference("app") == ("app", "latest")

    def test_registry_host(self):
        assert registry_host("registry.example.com/team/app") == "registry.example.com"
        assert registry_host("localhost/app") == "localhost"
        assert registry_host("team/app") == "docker.io"

    def test_is_rejection(self):
        assert is_rejection("denied: requested access to the resource is denied")
        assert not is_rejection("connection reset by peer")


class TestDockerRegistryBackend:
    def test_push_returns_digest(self, credentials):
        client = MagicMock()
        client.images.push.return_value = iter([
            {"status": "Pushing"},
            {"aux": {"Tag": "7", "Digest": "sha256:feed", "Size": 1}},
        ])

        digest = DockerRegistryBackend(client=client).push("registry.example.com/app:7", credentials)

        assert digest == "sha256:feed"
        client.images.push.assert_called_once_with(
            "registry.example.com/app", tag="7", stream=True, decode=True,
            auth_config={"username": "ci", "password": "secret"},
        )

    def test_push_denied_is_rejection(self, credentials):
        client = MagicMock()
        client.images.push.return_value = iter([{"error": "denied: requested access to the resource is denied"}])

        with pytest.raises(PublishRejected):
            DockerRegistryBackend(client=client).push("registry.example.com/app:7", credentials)

    def test_push_stream_error_is_transient(self, credentials):
        client = MagicMock()
        client.images.push.return_value = iter([{"errorDetail": {"message": "net/http: TLS handshake timeout"}}])

        with pytest.raises(PublishFailure):
            DockerRegistryBackend(client=client).push("registry.example.com/app:7", credentials)

    def test_local_digest_from_repo_digests(self):
        client = MagicMock()
        client.images.get.return_value.attrs = {
            "RepoDigests": ["other/app@sha256:0000", "registry.example.com/app@sha256:beef"]
        }
        backend = DockerRegistryBackend(client=client)
        assert backend.local_digest("registry.example.com/app:7") == "sha256:beef"
