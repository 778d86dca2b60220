"""Job backend running bake commands as kubernetes Jobs.

Every bake becomes one Job with a single pod that is never restarted. The
files of the local configuration directory are published once at startup as a
config map, which every job mounts read only. Credentials passed on the
command line as `key=value` tokens are also handed to the container as
environment variables so that tools pick them up without extra arguments.

The blocking kubernetes client calls run in a worker thread.
"""

import asyncio
import logging
from pathlib import Path

from kubernetes import client
from kubernetes.client.rest import ApiException
from slugify import slugify

from ..config import K8sJobConfig
from ..exceptions import InvalidRequestException, JobException
from ..model import BakeStatus, JobRequest, Result, State
from .executor import FinishedJobs, JobExecutor, read_config_dir

__all__ = [
    "K8sJobExecutor",
    "job_name",
    "credential_env",
]

_LOGGER = logging.getLogger(__name__)

JOB_NAME_PREFIX = "bakery-job-"
CONTAINER_NAME = "bake-job"
CONFIG_VOLUME = "configuration-files"
CONFIG_MAP_PREFIX = "bakery-config-"
BAKE_LABEL = "bakery-bake"

# Name limit of kubernetes objects and label values
_MAX_NAME = 63

CREDENTIAL_ENV_VARS = {
    "aws_access_key": "AWS_ACCESS_KEY_ID",
    "aws_secret_key": "AWS_SECRET_ACCESS_KEY",
    "aws_session_token": "AWS_SESSION_TOKEN",
    "aws_region": "AWS_DEFAULT_REGION",
}

_CONTAINER_CREATING = "is waiting to start: ContainerCreating"


def job_name(job_id: str) -> str:
    """Return the deterministic name of the kubernetes Job of a bake."""
    return JOB_NAME_PREFIX + slugify(job_id, max_length=_MAX_NAME - len(JOB_NAME_PREFIX))


def _label(value: str | None) -> str:
    return slugify(value or "unset", max_length=_MAX_NAME) or "unset"


def credential_env(command: tuple[str, ...]) -> list[client.V1EnvVar]:
    """Map well known credential tokens of a command to environment variables."""
    params: dict[str, str] = {}
    for arg in command:
        key, _, value = arg.partition("=")
        params[key] = value
    return [
        client.V1EnvVar(name=env_name, value=params[key])
        for key, env_name in CREDENTIAL_ENV_VARS.items()
        if key in params
    ]


def _api_error(err: ApiException) -> str:
    return f"K8s Response - code: {err.status}, body: {err.body}"


class K8sJobExecutor(JobExecutor):
    """Runs jobs as kubernetes Jobs in a dedicated namespace."""

    def __init__(
        self,
        config: K8sJobConfig,
        batch_api: client.BatchV1Api,
        core_api: client.CoreV1Api,
    ) -> None:
        """Initialize K8sJobExecutor."""
        super().__init__()
        self._config = config
        self._batch_api = batch_api
        self._core_api = core_api
        self._config_map: client.V1ConfigMap | None = None
        self._terminal = FinishedJobs()

    @property
    def namespace(self) -> str:
        return self._config.namespace

    async def _provision(self) -> None:
        """Publish the configuration directory as a config map."""
        data = await asyncio.to_thread(read_config_dir, Path(self._config.config_dir))
        body = client.V1ConfigMap(
            metadata=client.V1ObjectMeta(generate_name=CONFIG_MAP_PREFIX),
            data=data,
        )
        try:
            self._config_map = await asyncio.to_thread(
                self._core_api.create_namespaced_config_map, self.namespace, body
            )
        except ApiException as err:
            raise JobException(
                "Failed to create config map out of local config files. "
                + _api_error(err)
            ) from err
        _LOGGER.info(
            "Created config map %s with %d files",
            self._config_map.metadata.name,
            len(data),
        )

    def _job_body(self, request: JobRequest) -> client.V1Job:
        if self._config_map is None:
            raise JobException("Job executor was not started")
        items = [
            client.V1KeyToPath(key=key, path=key)
            for key in (self._config_map.data or {})
        ]
        container = client.V1Container(
            name=CONTAINER_NAME,
            image=self._config.image,
            command=list(request.tokenized_command),
            env=credential_env(request.tokenized_command),
            volume_mounts=[
                client.V1VolumeMount(
                    name=CONFIG_VOLUME, mount_path=self._config.config_dir
                )
            ],
        )
        return client.V1Job(
            metadata=client.V1ObjectMeta(
                name=job_name(request.job_id),
                labels={
                    "jobId": _label(request.job_id),
                    "executionId": _label(request.execution_id),
                    BAKE_LABEL: "true",
                },
            ),
            spec=client.V1JobSpec(
                backoff_limit=0,
                active_deadline_seconds=self._config.timeout_minutes * 60,
                template=client.V1PodTemplateSpec(
                    spec=client.V1PodSpec(
                        containers=[container],
                        restart_policy="Never",
                        volumes=[
                            client.V1Volume(
                                name=CONFIG_VOLUME,
                                config_map=client.V1ConfigMapVolumeSource(
                                    name=self._config_map.metadata.name,
                                    items=items,
                                ),
                            )
                        ],
                    )
                ),
            ),
        )

    async def start_job(self, request: JobRequest) -> str:
        """Create the kubernetes Job for the bake."""
        if not request.tokenized_command:
            raise InvalidRequestException(
                f"No tokenized command specified for {request.job_id}. "
                f"(executionId: {request.execution_id})"
            )
        await self.start()
        _LOGGER.info(
            "Executing %s with tokenized command: %s. (executionId: %s)",
            request.job_id,
            ", ".join(request.masked_command),
            request.execution_id,
        )
        body = self._job_body(request)
        try:
            await asyncio.to_thread(
                self._batch_api.create_namespaced_job, self.namespace, body
            )
        except ApiException as err:
            raise JobException(
                "Failed to start remote K8s Job. " + _api_error(err)
            ) from err
        return request.job_id

    async def job_exists(self, job_id: str) -> bool:
        """Return True if a Job with the id label exists."""
        try:
            jobs = await asyncio.to_thread(
                self._batch_api.list_namespaced_job,
                self.namespace,
                label_selector=f"jobId={_label(job_id)}",
                limit=1,
            )
        except ApiException as err:
            raise JobException(
                f"Failed to query K8s API for job id {job_id}. " + _api_error(err)
            ) from err
        return bool(jobs.items)

    async def _pod_logs(self, name: str) -> str | None:
        pods = await asyncio.to_thread(
            self._core_api.list_namespaced_pod,
            self.namespace,
            label_selector=f"job-name={name}",
            limit=1,
        )
        if not pods.items:
            return None
        pod_name = pods.items[0].metadata.name
        try:
            return await asyncio.to_thread(
                self._core_api.read_namespaced_pod_log,
                pod_name,
                self.namespace,
                container=CONTAINER_NAME,
            )
        except ApiException as err:
            if _CONTAINER_CREATING not in str(err.body):
                _LOGGER.error("Failed to fetch log data. %s", _api_error(err))
            return ""

    async def _delete(self, name: str) -> None:
        await asyncio.to_thread(
            self._batch_api.delete_namespaced_job,
            name,
            self.namespace,
            grace_period_seconds=0,
            propagation_policy="Background",
        )

    async def update_job(self, job_id: str) -> BakeStatus | None:
        """Poll the Job and its pod, returning None on any query failure."""
        if (status := self._terminal.get(job_id)) is not None:
            return status
        name = job_name(job_id)
        try:
            job = await asyncio.to_thread(
                self._batch_api.read_namespaced_job, name, self.namespace
            )
            if job.status is None:
                return None
            execution_id = (job.metadata.labels or {}).get("executionId")
            _LOGGER.debug("Polling state for %s (executionId: %s)", job_id, execution_id)
            logs = await self._pod_logs(name)
        except ApiException as err:
            if _CONTAINER_CREATING not in str(err.body):
                _LOGGER.error("Failed to update %s. %s", job_id, _api_error(err))
            return None
        except Exception as err:
            _LOGGER.error("Failed to update %s: %s", job_id, err)
            return None

        content = logs or ""
        if (job.status.failed or 0) > 0:
            try:
                await self._delete(name)
            except ApiException as err:
                # The deadline of the job purges it eventually
                _LOGGER.error("Failed to delete errored k8s job. %s", _api_error(err))
            except Exception as err:
                _LOGGER.error("Failed to delete errored k8s job: %s", err)
            status = BakeStatus(
                id=job_id,
                state=State.CANCELED,
                result=Result.FAILURE,
                logs_content=content,
                output_content=content,
            )
        elif job.status.completion_time is not None:
            status = BakeStatus(
                id=job_id,
                state=State.COMPLETED,
                result=Result.SUCCESS,
                logs_content=content,
                output_content=content,
            )
        else:
            return BakeStatus(
                id=job_id,
                state=State.RUNNING,
                logs_content=content,
                output_content=content,
            )
        self._terminal.add(job_id, status)
        return status

    async def cancel_job(self, job_id: str) -> None:
        """Delete the Job of the bake, a no-op if it is already gone."""
        _LOGGER.info("Canceling job %s", job_id)
        try:
            await self._delete(job_name(job_id))
        except ApiException as err:
            if err.status == 404:
                return
            raise JobException("Failed to cancel k8s job. " + _api_error(err)) from err

    async def close(self) -> None:
        """Remove the config map shared by the jobs."""
        if self._config_map is None:
            return
        name = self._config_map.metadata.name
        self._config_map = None
        try:
            await asyncio.to_thread(
                self._core_api.delete_namespaced_config_map, name, self.namespace
            )
        except ApiException as err:
            _LOGGER.warning("Failed to delete config map %s. %s", name, _api_error(err))
