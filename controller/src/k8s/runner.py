"""
Step runner that executes each step as a Kubernetes Job.
"""

import asyncio
import logging
from typing import Optional

from kubernetes.client.rest import ApiException

from controller.src.config import get_settings
from controller.src.k8s.client import (
    delete_job,
    ensure_namespace,
    find_job_pod,
    get_batch_api,
    get_pod_logs,
)
from controller.src.k8s.job_builder import (
    build_job,
    get_job_status,
    get_pod_exit_code,
    is_deadline_exceeded,
)
from controller.src.services.runners import TIMEOUT_EXIT_CODE, StepInvocation, StepOutcome

logger = logging.getLogger(__name__)
settings = get_settings()

class KubernetesStepRunner:
    """
    Runs a step's command in a fresh pod. The step's workspace is local to the
    controller, so steps running here see only their environment.
    """

    def __init__(
        self,
        image: Optional[str] = None,
        namespace: Optional[str] = None,
        poll_interval: float = 2.0,
    ):
        self.image = image or settings.k8s_default_image
        self.namespace = namespace or settings.k8s_namespace
        self.poll_interval = poll_interval
        self._namespace_ready = False

    async def _create(self, job):
        batch_v1 = get_batch_api()
        try:
            batch_v1.create_namespaced_job(namespace=self.namespace, body=job)
        except ApiException as e:
            if e.status != 409:
                raise
            # Left over from an earlier attempt of the same run
            logger.warning(f"Job {job.metadata.name} already exists, deleting...")
            delete_job(job.metadata.name, self.namespace)
            await asyncio.sleep(self.poll_interval)
            batch_v1.create_namespaced_job(namespace=self.namespace, body=job)

    async def wait_for_job(self, job_name: str, timeout: int) -> str:
        """
        Poll a Job until it finishes.
        Returns 'succeeded', 'failed' or 'timed-out'.
        """
        batch_v1 = get_batch_api()
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout

        while True:
            if loop.time() > deadline:
                logger.error(f"Job {job_name} timed out after {timeout}s")
                return "timed-out"
            try:
                job = batch_v1.read_namespaced_job(name=job_name, namespace=self.namespace)
                status = get_job_status(job)
                if status == "succeeded":
                    return status
                if status == "failed":
                    return "timed-out" if is_deadline_exceeded(job) else status
                await asyncio.sleep(self.poll_interval)
            except ApiException as e:
                logger.error(f"Error checking job status: {e}")
                await asyncio.sleep(self.poll_interval * 2)

    async def run(self, invocation: StepInvocation) -> StepOutcome:
        if not self._namespace_ready:
            ensure_namespace(self.namespace)
            self._namespace_ready = True

        job = build_job(
            run_id=invocation.run_id,
            job_name=invocation.job_name,
            step_order=invocation.step_order,
            step_name=invocation.step_name,
            image=self.image,
            command=invocation.command,
            env_vars=invocation.env,
            timeout=invocation.timeout,
            namespace=self.namespace,
        )
        job_name = job.metadata.name
        logger.info(f"Creating job {job_name} for step '{invocation.step_name}'")
        await self._create(job)

        try:
            result = await self.wait_for_job(job_name, invocation.timeout)
        except asyncio.CancelledError:
            logger.warning(f"Step '{invocation.step_name}' cancelled, deleting job {job_name}")
            delete_job(job_name, self.namespace)
            raise

        pod = find_job_pod(job_name, self.namespace)
        logs = get_pod_logs(pod.metadata.name, self.namespace) if pod else ""

        if result == "timed-out":
            delete_job(job_name, self.namespace)
            return StepOutcome(
                exit_code=TIMEOUT_EXIT_CODE,
                stdout=logs,
                stderr=f"Step timed out after {invocation.timeout}s",
                timed_out=True,
            )

        exit_code = get_pod_exit_code(pod) if pod else None
        if exit_code is None:
            exit_code = 0 if result == "succeeded" else 1
        return StepOutcome(exit_code=exit_code, stdout=logs)
