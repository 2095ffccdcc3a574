"""
Kubernetes Job builder for pipeline steps.
"""

from kubernetes import client
from typing import Dict, Optional
import hashlib

from controller.src.config import get_settings

settings = get_settings()

def build_job_name(run_id: str, job_name: str, step_order: int) -> str:
    """Generate a unique Kubernetes Job name for one step."""
    # K8s names must be lowercase, alphanumeric, max 63 chars
    safe_name = job_name.lower().replace(" ", "-").replace("_", "-")
    safe_name = "".join(c for c in safe_name if c.isalnum() or c == "-")
    safe_name = safe_name[:24].strip("-") or "job"

    # Short hash of the run id keeps names unique across runs
    run_hash = hashlib.sha256(run_id.encode()).hexdigest()[:8]

    return f"cv-{run_hash}-{safe_name}-{step_order}"

def build_labels(run_id: str, job_name: str, step_order: int) -> Dict[str, str]:
    return {
        "app": "conveyor",
        "run-id": run_id,
        "pipeline-job": build_job_name(run_id, job_name, step_order).rsplit("-", 1)[0],
        "step-order": str(step_order),
    }

def build_job(
    run_id: str,
    job_name: str,
    step_order: int,
    step_name: str,
    image: str,
    command: str,
    env_vars: Optional[Dict[str, str]] = None,
    timeout: int = 600,
    namespace: Optional[str] = None,
) -> client.V1Job:
    """
    Build a Kubernetes Job that runs one step's shell command.
    """
    name = build_job_name(run_id, job_name, step_order)
    labels = build_labels(run_id, job_name, step_order)

    env = [
        client.V1EnvVar(name="CONVEYOR_STEP_ORDER", value=str(step_order)),
    ]
    for key, value in (env_vars or {}).items():
        env.append(client.V1EnvVar(name=key, value=value))

    container = client.V1Container(
        name="step",
        image=image,
        command=["/bin/sh", "-c"],
        args=[command],
        env=env,
        resources=client.V1ResourceRequirements(
            requests={"cpu": "100m", "memory": "128Mi"},
            limits={"cpu": "500m", "memory": "512Mi"},
        ),
    )

    template = client.V1PodTemplateSpec(
        metadata=client.V1ObjectMeta(labels=labels, annotations={"conveyor/step-name": step_name}),
        spec=client.V1PodSpec(containers=[container], restart_policy="Never"),
    )

    job_spec = client.V1JobSpec(
        template=template,
        backoff_limit=0,  # Steps are never retried
        active_deadline_seconds=timeout,
        ttl_seconds_after_finished=settings.job_ttl_after_finished,
    )

    return client.V1Job(
        api_version="batch/v1",
        kind="Job",
        metadata=client.V1ObjectMeta(
            name=name,
            namespace=namespace or settings.k8s_namespace,
            labels=labels,
        ),
        spec=job_spec,
    )

def get_job_status(job: client.V1Job) -> str:
    """
    Determine job status from Kubernetes Job object.
    Returns: 'pending', 'running', 'succeeded', 'failed'
    """
    if job.status is None:
        return "pending"

    if job.status.succeeded and job.status.succeeded > 0:
        return "succeeded"

    if job.status.failed and job.status.failed > 0:
        return "failed"

    if job.status.active and job.status.active > 0:
        return "running"

    return "pending"

def is_deadline_exceeded(job: client.V1Job) -> bool:
    """True when Kubernetes killed the Job for exceeding active_deadline_seconds."""
    conditions = (job.status.conditions if job.status else None) or []
    return any(c.type == "Failed" and c.reason == "DeadlineExceeded" for c in conditions)

def get_pod_exit_code(pod: client.V1Pod) -> Optional[int]:
    statuses = (pod.status.container_statuses if pod.status else None) or []
    for status in statuses:
        terminated = status.state.terminated if status.state else None
        if terminated is not None:
            return terminated.exit_code
    return None
