# isoscan/substrate/kubernetes_backend.py
"""
Kubernetes execution substrate.

    bundle  →  immutable ConfigMap (≤ 1 MiB, the platform's object ceiling)
    unit    →  batch/v1 Job mounting the ConfigMap read-only

Sandboxing applied to every Job:
    - restartPolicy Never, backoffLimit = max_attempts - 1
    - activeDeadlineSeconds = scanner timeout (hard wall clock)
    - ttlSecondsAfterFinished = TTL backstop
    - non-root UID, read-only root filesystem, all capabilities dropped,
      no privilege escalation, no service-account token, no service links
    - the only writable path is a size-limited emptyDir at /tmp

Once the Job exists its bundle ConfigMap is given an ownerReference to
it, so when the TTL controller reaps the Job the garbage collector reaps
the ConfigMap as well.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Dict, List, Optional

from kubernetes import client
from kubernetes import config as kube_config
from kubernetes.client.rest import ApiException

from isoscan.errors import QuotaExceeded, SubstrateError
from isoscan.substrate.base import (
    ANNOTATION_BUNDLE,
    ANNOTATION_DIGEST,
    KIND_BUNDLE,
    KIND_UNIT,
    LABEL_KIND,
    LABEL_MANAGED_BY,
    MANAGED_BY,
    PHASE_FAILED,
    PHASE_PENDING,
    PHASE_RUNNING,
    PHASE_SUCCEEDED,
    PHASE_TIMED_OUT,
    ArtifactExists,
    BundleInfo,
    ExecutionBackend,
    UnitSpec,
    UnitStatus,
)

logger = logging.getLogger(__name__)

CONTAINER_NAME = "scanner"
SANDBOX_UID = 10001
SCRATCH_SIZE = "256Mi"


def _naive_utc(ts: Optional[datetime]) -> Optional[datetime]:
    if ts is None:
        return None
    if ts.tzinfo is not None:
        ts = ts.astimezone(timezone.utc).replace(tzinfo=None)
    return ts


def _selector(kind: str) -> str:
    return f"{LABEL_MANAGED_BY}={MANAGED_BY},{LABEL_KIND}={kind}"


class KubernetesBackend(ExecutionBackend):

    name = "kubernetes"

    def __init__(self, namespace: str, api_client: Optional[client.ApiClient] = None):
        if api_client is None:
            try:
                kube_config.load_incluster_config()
            except kube_config.ConfigException:
                kube_config.load_kube_config()
            api_client = client.ApiClient()

        self.namespace = namespace
        self.api_client = api_client
        self.core = client.CoreV1Api(api_client)
        self.batch = client.BatchV1Api(api_client)

    # ── Errors ──────────────────────────────────────────────────────

    def _raise(self, e: ApiException, action: str) -> None:
        body = (e.body or "")[:300] if isinstance(e.body, str) else str(e.body)[:300]
        if e.status == 403 and "exceeded quota" in body.lower():
            raise QuotaExceeded(f"Namespace quota exceeded while trying to {action}")
        raise SubstrateError(f"Kubernetes API error while trying to {action}: {e.status} {e.reason}")

    # ── Bundles ─────────────────────────────────────────────────────

    def create_bundle(self, name, files, labels, annotations) -> BundleInfo:
        body = client.V1ConfigMap(
            metadata=client.V1ObjectMeta(name=name, labels=labels, annotations=annotations),
            data=dict(files),
            immutable=True,
        )
        try:
            cm = self.core.create_namespaced_config_map(self.namespace, body)
        except ApiException as e:
            if e.status == 409:
                raise ArtifactExists(KIND_BUNDLE, name)
            self._raise(e, f"create ConfigMap {name}")
        return self._bundle_info(cm)

    def get_bundle(self, name: str) -> Optional[BundleInfo]:
        try:
            cm = self.core.read_namespaced_config_map(name, self.namespace)
        except ApiException as e:
            if e.status == 404:
                return None
            self._raise(e, f"read ConfigMap {name}")
        return self._bundle_info(cm)

    def delete_bundle(self, name: str) -> bool:
        try:
            self.core.delete_namespaced_config_map(name, self.namespace)
        except ApiException as e:
            if e.status == 404:
                return False
            self._raise(e, f"delete ConfigMap {name}")
        return True

    def list_bundles(self) -> List[BundleInfo]:
        try:
            items = self.core.list_namespaced_config_map(
                self.namespace, label_selector=_selector(KIND_BUNDLE)
            ).items
        except ApiException as e:
            self._raise(e, "list ConfigMaps")
        return [self._bundle_info(cm) for cm in items]

    @staticmethod
    def _bundle_info(cm) -> BundleInfo:
        meta = cm.metadata
        annotations = dict(meta.annotations or {})
        return BundleInfo(
            name=meta.name,
            digest=annotations.get(ANNOTATION_DIGEST),
            created_at=_naive_utc(meta.creation_timestamp),
            labels=dict(meta.labels or {}),
            annotations=annotations,
        )

    # ── Units ───────────────────────────────────────────────────────

    def _job_body(self, spec: UnitSpec) -> client.V1Job:
        env = [client.V1EnvVar(name=k, value=v) for k, v in sorted(spec.env.items())]
        env.append(client.V1EnvVar(name="HOME", value="/tmp"))

        container = client.V1Container(
            name=CONTAINER_NAME,
            image=spec.image,
            command=spec.command,
            env=env,
            resources=client.V1ResourceRequirements(
                requests=spec.resources.get("requests"),
                limits=spec.resources.get("limits"),
            ),
            volume_mounts=[
                client.V1VolumeMount(name="source", mount_path=spec.mount_path, read_only=True),
                client.V1VolumeMount(name="scratch", mount_path="/tmp"),
            ],
            security_context=client.V1SecurityContext(
                allow_privilege_escalation=False,
                read_only_root_filesystem=True,
                run_as_non_root=True,
                run_as_user=SANDBOX_UID,
                capabilities=client.V1Capabilities(drop=["ALL"]),
            ),
        )

        pod_spec = client.V1PodSpec(
            restart_policy="Never",
            automount_service_account_token=False,
            enable_service_links=False,
            containers=[container],
            volumes=[
                client.V1Volume(
                    name="source",
                    config_map=client.V1ConfigMapVolumeSource(name=spec.bundle_name, default_mode=0o444),
                ),
                client.V1Volume(
                    name="scratch",
                    empty_dir=client.V1EmptyDirVolumeSource(size_limit=SCRATCH_SIZE),
                ),
            ],
        )

        return client.V1Job(
            metadata=client.V1ObjectMeta(
                name=spec.name,
                labels=spec.labels,
                annotations=spec.annotations,
            ),
            spec=client.V1JobSpec(
                backoff_limit=max(spec.max_attempts - 1, 0),
                active_deadline_seconds=spec.timeout_seconds,
                ttl_seconds_after_finished=spec.ttl_seconds,
                template=client.V1PodTemplateSpec(
                    metadata=client.V1ObjectMeta(labels=spec.labels),
                    spec=pod_spec,
                ),
            ),
        )

    def create_unit(self, spec: UnitSpec) -> UnitStatus:
        try:
            job = self.batch.create_namespaced_job(self.namespace, self._job_body(spec))
        except ApiException as e:
            if e.status == 409:
                raise ArtifactExists(KIND_UNIT, spec.name)
            self._raise(e, f"create Job {spec.name}")

        self._adopt_bundle(spec.bundle_name, job)
        return self._unit_status(job)

    def _adopt_bundle(self, bundle_name: str, job) -> None:
        """Make the Job own its ConfigMap so TTL deletion cascades."""
        patch = {
            "metadata": {
                "ownerReferences": [{
                    "apiVersion": "batch/v1",
                    "kind": "Job",
                    "name": job.metadata.name,
                    "uid": job.metadata.uid,
                    "blockOwnerDeletion": False,
                }]
            }
        }
        try:
            self.core.patch_namespaced_config_map(bundle_name, self.namespace, patch)
        except ApiException as e:
            # Not fatal: the sweep still catches an orphaned bundle.
            logger.warning(
                f"Could not attach ConfigMap {bundle_name} to Job {job.metadata.name}: "
                f"{e.status} {e.reason}"
            )

    def get_unit(self, name: str) -> Optional[UnitStatus]:
        try:
            job = self.batch.read_namespaced_job(name, self.namespace)
        except ApiException as e:
            if e.status == 404:
                return None
            self._raise(e, f"read Job {name}")

        status = self._unit_status(job)
        if status.is_terminal:
            status.exit_code = self._last_exit_code(name)
        return status

    def _unit_status(self, job) -> UnitStatus:
        meta = job.metadata
        st = job.status or client.V1JobStatus()

        succeeded = st.succeeded or 0
        failed = st.failed or 0
        active = st.active or 0

        phase = PHASE_PENDING
        reason = None
        for cond in st.conditions or []:
            if cond.status != "True":
                continue
            if cond.type == "Complete":
                phase = PHASE_SUCCEEDED
            elif cond.type == "Failed":
                reason = cond.reason
                phase = PHASE_TIMED_OUT if cond.reason == "DeadlineExceeded" else PHASE_FAILED

        if phase == PHASE_PENDING:
            if succeeded:
                phase = PHASE_SUCCEEDED
            elif active:
                phase = PHASE_RUNNING

        annotations = dict(meta.annotations or {})
        return UnitStatus(
            name=meta.name,
            phase=phase,
            attempts=succeeded + failed + active,
            reason=reason,
            bundle_name=annotations.get(ANNOTATION_BUNDLE),
            created_at=_naive_utc(meta.creation_timestamp),
            started_at=_naive_utc(st.start_time),
            finished_at=_naive_utc(st.completion_time),
            labels=dict(meta.labels or {}),
            annotations=annotations,
        )

    def _latest_pod(self, job_name: str):
        try:
            pods = self.core.list_namespaced_pod(
                self.namespace, label_selector=f"job-name={job_name}"
            ).items
        except ApiException as e:
            self._raise(e, f"list pods for Job {job_name}")
        if not pods:
            return None
        return max(pods, key=lambda p: p.metadata.creation_timestamp)

    def _last_exit_code(self, job_name: str) -> Optional[int]:
        pod = self._latest_pod(job_name)
        if pod is None or pod.status is None:
            return None
        for cs in pod.status.container_statuses or []:
            if cs.name == CONTAINER_NAME and cs.state and cs.state.terminated:
                return cs.state.terminated.exit_code
        return None

    def read_output(self, name: str) -> str:
        pod = self._latest_pod(name)
        if pod is None:
            return ""
        try:
            return self.core.read_namespaced_pod_log(
                pod.metadata.name, self.namespace, container=CONTAINER_NAME
            ) or ""
        except ApiException as e:
            if e.status in (400, 404):
                # Pod never started or already reaped.
                return ""
            self._raise(e, f"read logs of {pod.metadata.name}")

    def delete_unit(self, name: str) -> bool:
        try:
            self.batch.delete_namespaced_job(
                name,
                self.namespace,
                body=client.V1DeleteOptions(propagation_policy="Background"),
            )
        except ApiException as e:
            if e.status == 404:
                return False
            self._raise(e, f"delete Job {name}")
        return True

    def list_units(self) -> List[UnitStatus]:
        try:
            jobs = self.batch.list_namespaced_job(
                self.namespace, label_selector=_selector(KIND_UNIT)
            ).items
        except ApiException as e:
            self._raise(e, "list Jobs")
        return [self._unit_status(j) for j in jobs]

    def close(self) -> None:
        self.api_client.close()
