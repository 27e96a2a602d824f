"""Deployment driver tests"""

from unittest.mock import MagicMock

import pytest
from kubernetes.client.rest import ApiException

from conftest import FakeCluster, healthy, progressing
from shipyard.cicd.builder import Artifact
from shipyard.cicd.deployer import (
    REVISION_ANNOTATION,
    DeploymentDriver,
    DeploymentTarget,
    KubernetesClusterBackend,
    RolloutObservation,
    RolloutState,
    render_manifest,
    resolve_int_or_percent,
)
from shipyard.core.exceptions import RevisionNotFound, RolloutDegraded, RolloutTimedOut


def make_driver(cluster, timeout=0.5) -> DeploymentDriver:
    return DeploymentDriver(cluster, poll_interval=0.01, timeout=timeout)


class TestRolloutObservation:
    def test_complete_requires_every_count(self):
        assert healthy().is_complete(2)
        assert not progressing().is_complete(2)

    def test_stale_generation_is_not_complete(self):
        observation = healthy(generation=3)
        observation.observed_generation = 2
        assert not observation.is_complete(3)
        assert observation.is_complete(None)


class TestIntOrPercent:
    def test_absolute(self):
        assert resolve_int_or_percent(1, 10, round_up=False) == 1

    def test_percent_rounding(self):
        assert resolve_int_or_percent("25%", 10, round_up=False) == 2
        assert resolve_int_or_percent("25%", 10, round_up=True) == 3

    def test_target_allowance(self):
        target = DeploymentTarget(name="web", replicas=4, max_unavailable="50%")
        assert target.unavailable_allowance(4) == 2
        assert target.deployment == "web"
        assert target.container == "web"


class TestDeploymentDriver:
    @pytest.mark.asyncio
    async def test_deploy_reaches_healthy(self, target):
        cluster = FakeCluster([progressing(), healthy()], revisions={1: "app:1"})
        artifact = Artifact(image_name="registry.example.com/app", tag="2", source_digest="x")

        result = await make_driver(cluster).deploy(target, artifact)

        assert result.state == RolloutState.HEALTHY
        assert result.healthy
        assert result.revision == 2
        assert cluster.applied == ["registry.example.com/app:2"]
        assert len(result.observations) == 2
        assert result.raise_for_state() is result

    @pytest.mark.asyncio
    async def test_waits_for_observed_generation(self, target):
        stale = healthy()
        stale.observed_generation = 1
        cluster = FakeCluster([stale, healthy()])

        result = await make_driver(cluster).deploy(target, "app:2")

        assert result.state == RolloutState.HEALTHY
        assert cluster.reads == 2

    @pytest.mark.asyncio
    async def test_half_ready_times_out_without_rollback(self, target):
        cluster = FakeCluster([progressing(desired=2, ready=1)])

        result = await make_driver(cluster, timeout=0.1).deploy(target, "app:2")

        assert result.state == RolloutState.TIMED_OUT
        assert "1/2 ready" in result.message
        assert cluster.rollbacks == []
        with pytest.raises(RolloutTimedOut):
            result.raise_for_state()

    @pytest.mark.asyncio
    async def test_drop_below_threshold_is_degraded(self, target):
        surge = RolloutObservation(
            desired=2, ready=2, updated=1, available=2, replicas=3, generation=2, observed_generation=2
        )
        cluster = FakeCluster([surge, progressing(desired=2, ready=1)])

        result = await make_driver(cluster).deploy(target, "app:2")

        assert result.state == RolloutState.DEGRADED
        assert "below minimum of 2" in result.message
        assert cluster.rollbacks == []
        with pytest.raises(RolloutDegraded):
            result.raise_for_state()

    @pytest.mark.asyncio
    async def test_rollback_to_revision(self, target):
        cluster = FakeCluster([healthy()], revisions={1: "app:1", 2: "app:2", 3: "app:3"})

        result = await make_driver(cluster).rollback(target, to_revision=2)

        assert result.state == RolloutState.HEALTHY
        assert result.operation == "rollback"
        assert result.revision == 2
        assert result.image == "app:2"

    @pytest.mark.asyncio
    async def test_rollback_defaults_to_previous(self, target):
        cluster = FakeCluster([healthy()], revisions={1: "app:1", 2: "app:2", 3: "app:3"})
        result = await make_driver(cluster).rollback(target)
        assert result.revision == 2

    @pytest.mark.asyncio
    async def test_rollback_unknown_revision(self, target):
        cluster = FakeCluster([healthy()], revisions={1: "app:1"})
        with pytest.raises(RevisionNotFound):
            await make_driver(cluster).rollback(target, to_revision=9)


class TestRenderManifest:
    def test_stamps_image_replicas_and_strategy(self, tmp_path):
        manifest = tmp_path / "deploy.yaml"
        manifest.write_text(
            "apiVersion: v1\nkind: Service\nmetadata:\n  name: web\n---\n"
            "apiVersion: apps/v1\nkind: Deployment\nmetadata:\n  name: placeholder\n"
            "spec:\n  template:\n    spec:\n      containers:\n"
            "        - name: sidecar\n          image: proxy:1\n"
            "        - name: web\n          image: old\n"
        )
        target = DeploymentTarget(name="web", namespace="apps", replicas=3, manifest=str(manifest))

        body = render_manifest(target, "app:9")

        assert body["metadata"] == {"name": "web", "namespace": "apps"}
        assert body["spec"]["replicas"] == 3
        assert body["spec"]["strategy"]["rollingUpdate"] == {"maxSurge": 1, "maxUnavailable": 0}
        containers = body["spec"]["template"]["spec"]["containers"]
        assert containers[0]["image"] == "proxy:1"
        assert containers[1]["image"] == "app:9"

    def test_requires_deployment(self, tmp_path):
        manifest = tmp_path / "svc.yaml"
        manifest.write_text("kind: Service\nmetadata:\n  name: web\n")
        with pytest.raises(ValueError):
            render_manifest(DeploymentTarget(name="web", manifest=str(manifest)), "app:1")


class TestKubernetesClusterBackend:
    def setup_method(self):
        self.apps = MagicMock()
        self.backend = KubernetesClusterBackend(apps_api=self.apps)
        self.target = DeploymentTarget(name="web", namespace="apps", replicas=2)

    def test_apply_patches_image(self):
        self.apps.patch_namespaced_deployment.return_value.metadata.generation = 5

        generation = self.backend.apply(self.target, "app:3")

        assert generation == 5
        kwargs = self.apps.patch_namespaced_deployment.call_args.kwargs
        assert kwargs["name"] == "web"
        assert kwargs["namespace"] == "apps"
        container = kwargs["body"]["spec"]["template"]["spec"]["containers"][0]
        assert container == {"name": "web", "image": "app:3"}

    def test_apply_missing_without_manifest_raises(self):
        self.apps.patch_namespaced_deployment.side_effect = ApiException(status=404)
        with pytest.raises(ApiException):
            self.backend.apply(self.target, "app:3")
        self.apps.create_namespaced_deployment.assert_not_called()

    def test_read_status(self):
        deployment = self.apps.read_namespaced_deployment_status.return_value
        deployment.spec.replicas = 3
        deployment.metadata.generation = 4
        deployment.status.ready_replicas = 2
        deployment.status.updated_replicas = 3
        deployment.status.available_replicas = 2
        deployment.status.replicas = 3
        deployment.status.observed_generation = 4

        observation = self.backend.read_status(self.target)

        assert observation == RolloutObservation(
            desired=3, ready=2, updated=3, available=2, replicas=3, generation=4, observed_generation=4
        )

    def test_current_revision(self):
        self.apps.read_namespaced_deployment.return_value.metadata.annotations = {REVISION_ANNOTATION: "7"}
        assert self.backend.current_revision(self.target) == 7

    def test_rollback_reapplies_old_template(self):
        deployment = self.apps.read_namespaced_deployment.return_value
        deployment.metadata.annotations = {REVISION_ANNOTATION: "3"}
        deployment.metadata.uid = "uid-1"
        deployment.metadata.namespace = "apps"
        deployment.spec.selector.match_labels = {"app": "web"}
        # revision 3 added a sidecar that revision 2 never had
        deployment.spec.template.spec.containers = [MagicMock(name="web"), MagicMock(name="log-shipper")]

        old = MagicMock()
        old.metadata.owner_references = [MagicMock(uid="uid-1")]
        old.metadata.annotations = {REVISION_ANNOTATION: "2"}
        foreign = MagicMock()
        foreign.metadata.owner_references = [MagicMock(uid="uid-other")]
        foreign.metadata.annotations = {REVISION_ANNOTATION: "1"}
        self.apps.list_namespaced_replica_set.return_value.items = [old, foreign]
        self.apps.api_client.sanitize_for_serialization.return_value = {
            "metadata": {"labels": {"app": "web", "pod-template-hash": "abc"}},
            "spec": {"containers": [{"name": "web", "image": "app:2"}]},
        }
        self.apps.patch_namespaced_deployment.return_value.metadata.generation = 8

        revision, image, generation = self.backend.rollback(self.target, None)

        assert (revision, image, generation) == (2, "app:2", 8)
        body = self.apps.patch_namespaced_deployment.call_args.kwargs["body"]
        assert body == [{
            "op": "replace",
            "path": "/spec/template",
            "value": {
                "metadata": {"labels": {"app": "web"}},
                "spec": {"containers": [{"name": "web", "image": "app:2"}]},
            },
        }]
        assert [c["name"] for c in body[0]["value"]["spec"]["containers"]] == ["web"]
        self.apps.list_namespaced_replica_set.assert_called_once_with(namespace="apps", label_selector="app=web")

    def test_rollback_ignores_foreign_replica_sets(self):
        deployment = self.apps.read_namespaced_deployment.return_value
        deployment.metadata.annotations = {REVISION_ANNOTATION: "3"}
        deployment.metadata.uid = "uid-1"
        deployment.spec.selector.match_labels = {"app": "web"}
        foreign = MagicMock()
        foreign.metadata.owner_references = [MagicMock(uid="uid-other")]
        foreign.metadata.annotations = {REVISION_ANNOTATION: "1"}
        self.apps.list_namespaced_replica_set.return_value.items = [foreign]

        with pytest.raises(RevisionNotFound):
            self.backend.rollback(self.target, 1)
