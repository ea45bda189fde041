"""Kubernetes substrate: Job status mapping, API error mapping, Job sandboxing."""

from datetime import datetime, timezone
from types import SimpleNamespace

import pytest
from kubernetes import client
from kubernetes.client.rest import ApiException

from isoscan.errors import QuotaExceeded, SubstrateError
from isoscan.substrate.base import (
    ANNOTATION_BUNDLE,
    KIND_UNIT,
    ArtifactExists,
    UnitSpec,
    managed_labels,
)
from isoscan.substrate.kubernetes_backend import CONTAINER_NAME, KubernetesBackend

CREATED = datetime(2026, 1, 5, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def kube():
    backend = KubernetesBackend("isoscan-jobs", api_client=client.ApiClient(client.Configuration()))
    yield backend
    backend.close()


def _api_error(status, body=""):
    e = ApiException(status=status, reason="error")
    e.body = body
    return e


def _job(name="isoscan-job-x", succeeded=None, failed=None, active=None, conditions=None):
    return client.V1Job(
        metadata=client.V1ObjectMeta(
            name=name,
            uid="uid-1",
            annotations={ANNOTATION_BUNDLE: "isoscan-src-x"},
            labels=managed_labels(KIND_UNIT),
            creation_timestamp=CREATED,
        ),
        status=client.V1JobStatus(
            succeeded=succeeded,
            failed=failed,
            active=active,
            conditions=conditions,
        ),
    )


def _condition(kind, reason=None):
    return client.V1JobCondition(type=kind, status="True", reason=reason)


def _spec(**overrides):
    fields = dict(
        name="isoscan-job-x",
        image="trailofbits/eth-security-toolbox:latest",
        command=["slither", "/src"],
        bundle_name="isoscan-src-x",
        mount_path="/src",
        resources={"requests": {"cpu": "500m"}, "limits": {"cpu": "2"}},
        timeout_seconds=600,
        max_attempts=3,
        ttl_seconds=3600,
        env={"SOLC_VERSION": "0.8.19"},
        labels=managed_labels(KIND_UNIT),
    )
    fields.update(overrides)
    return UnitSpec(**fields)


# ── Status mapping ──────────────────────────────────────────────────


def test_complete_condition_is_succeeded(kube):
    status = kube._unit_status(_job(succeeded=1, failed=1, conditions=[_condition("Complete")]))

    assert status.phase == "succeeded"
    assert status.attempts == 2
    assert status.bundle_name == "isoscan-src-x"
    assert status.created_at == datetime(2026, 1, 5, 12, 0)


def test_deadline_exceeded_is_timed_out(kube):
    status = kube._unit_status(_job(failed=1, conditions=[_condition("Failed", "DeadlineExceeded")]))

    assert status.phase == "timed_out"
    assert status.reason == "DeadlineExceeded"


def test_backoff_limit_is_failed(kube):
    status = kube._unit_status(_job(failed=3, conditions=[_condition("Failed", "BackoffLimitExceeded")]))

    assert status.phase == "failed"
    assert status.attempts == 3


def test_phase_without_conditions(kube):
    assert kube._unit_status(_job(active=1)).phase == "running"
    assert kube._unit_status(_job()).phase == "pending"
    assert kube._unit_status(_job(succeeded=1)).phase == "succeeded"


def test_false_condition_is_ignored(kube):
    cond = client.V1JobCondition(type="Failed", status="False", reason="DeadlineExceeded")
    assert kube._unit_status(_job(active=1, conditions=[cond])).phase == "running"


# ── Error mapping ───────────────────────────────────────────────────


def test_quota_forbidden_is_quota_exceeded(kube):
    body = '{"message": "jobs.batch is forbidden: exceeded quota: scan-jobs, requested: count/jobs.batch=1"}'
    with pytest.raises(QuotaExceeded):
        kube._raise(_api_error(403, body), "create Job x")


def test_other_errors_are_substrate_errors(kube):
    with pytest.raises(SubstrateError):
        kube._raise(_api_error(403, '{"message": "forbidden: RBAC"}'), "create Job x")
    with pytest.raises(SubstrateError) as exc:
        kube._raise(_api_error(500), "list Jobs")
    assert exc.value.http_status == 503


def test_create_unit_name_clash_is_artifact_exists(kube, monkeypatch):
    def clash(namespace, body):
        raise _api_error(409)

    monkeypatch.setattr(kube.batch, "create_namespaced_job", clash)
    with pytest.raises(ArtifactExists):
        kube.create_unit(_spec())


def test_create_unit_quota_is_quota_exceeded(kube, monkeypatch):
    def full(namespace, body):
        raise _api_error(403, "exceeded quota: scan-jobs")

    monkeypatch.setattr(kube.batch, "create_namespaced_job", full)
    with pytest.raises(QuotaExceeded):
        kube.create_unit(_spec())


def test_create_unit_adopts_bundle(kube, monkeypatch):
    patched = []
    monkeypatch.setattr(kube.batch, "create_namespaced_job", lambda ns, body: _job())
    monkeypatch.setattr(
        kube.core, "patch_namespaced_config_map",
        lambda name, ns, patch: patched.append((name, patch)),
    )

    status = kube.create_unit(_spec())

    assert status.phase == "pending"
    name, patch = patched[0]
    assert name == "isoscan-src-x"
    owner = patch["metadata"]["ownerReferences"][0]
    assert (owner["kind"], owner["name"], owner["uid"]) == ("Job", "isoscan-job-x", "uid-1")


def test_get_missing_unit_is_none(kube, monkeypatch):
    def missing(name, namespace):
        raise _api_error(404)

    monkeypatch.setattr(kube.batch, "read_namespaced_job", missing)
    assert kube.get_unit("isoscan-job-x") is None


def test_get_terminal_unit_reads_exit_code(kube, monkeypatch):
    terminated = client.V1ContainerStatus(
        name=CONTAINER_NAME,
        image="x",
        image_id="x",
        ready=False,
        restart_count=0,
        state=client.V1ContainerState(terminated=client.V1ContainerStateTerminated(exit_code=255)),
    )
    pod = client.V1Pod(
        metadata=client.V1ObjectMeta(name="isoscan-job-x-abcde", creation_timestamp=CREATED),
        status=client.V1PodStatus(container_statuses=[terminated]),
    )
    monkeypatch.setattr(
        kube.batch, "read_namespaced_job",
        lambda name, ns: _job(failed=1, conditions=[_condition("Failed", "BackoffLimitExceeded")]),
    )
    monkeypatch.setattr(
        kube.core, "list_namespaced_pod",
        lambda ns, label_selector: SimpleNamespace(items=[pod]),
    )

    status = kube.get_unit("isoscan-job-x")

    assert status.phase == "failed"
    assert status.exit_code == 255


# ── Job body ────────────────────────────────────────────────────────


def test_job_body_is_sandboxed(kube):
    job = kube._job_body(_spec())

    assert job.spec.backoff_limit == 2
    assert job.spec.active_deadline_seconds == 600
    assert job.spec.ttl_seconds_after_finished == 3600

    pod = job.spec.template.spec
    assert pod.restart_policy == "Never"
    assert pod.automount_service_account_token is False
    assert pod.enable_service_links is False

    container = pod.containers[0]
    assert container.command == ["slither", "/src"]
    assert container.resources.limits == {"cpu": "2"}
    source = next(m for m in container.volume_mounts if m.name == "source")
    assert (source.mount_path, source.read_only) == ("/src", True)

    sc = container.security_context
    assert sc.run_as_non_root is True
    assert sc.read_only_root_filesystem is True
    assert sc.allow_privilege_escalation is False
    assert sc.capabilities.drop == ["ALL"]

    volume = next(v for v in pod.volumes if v.name == "source")
    assert volume.config_map.name == "isoscan-src-x"
    env = {e.name: e.value for e in container.env}
    assert env == {"SOLC_VERSION": "0.8.19", "HOME": "/tmp"}


def test_single_attempt_has_no_retries(kube):
    assert kube._job_body(_spec(max_attempts=1)).spec.backoff_limit == 0
