"""Job backend running bake commands as serverless container tasks.

A single task definition is registered at startup and reused by every bake.
Its entrypoint is a generic wrapper that reads the job context from the
secret broker, so the command, credentials and configuration files never
appear in the launch parameters of the task. See `bakery.jobs.secrets` for
the handoff.

Logs are read from the log stream the container writes to. The stream only
exists once the container started, so early polls fall back to the last logs
seen for the task or to a placeholder message.

The blocking boto3 calls run in a worker thread.
"""

import asyncio
import logging
from pathlib import Path
import re
import shlex
from typing import Any
import uuid

from botocore.exceptions import BotoCoreError, ClientError

from ..config import FargateJobConfig
from ..exceptions import InvalidRequestException, JobException
from ..model import BakeStatus, JobRequest, Result, State
from .executor import FinishedJobs, JobExecutor, read_config_dir
from .secrets import SecretBroker

__all__ = [
    "FargateJobExecutor",
    "LOGS_INIT_MESSAGE",
]

_LOGGER = logging.getLogger(__name__)

LOGS_INIT_MESSAGE = "Hang tight, the logs stream is being initialized..."

TASK_ID_RE = re.compile(r"arn:aws:ecs:.*?:task.*/(?P<taskId>.*)")
STS_ROLE_ARN_RE = re.compile(
    r"arn:aws:sts::(?P<accountId>\d+):assumed-role/(?P<roleName>.*?)/(?P<sessionName>.*)"
)

TASK_FAMILY_PREFIX = "bakery-job-task-"
WRAPPER_COMMAND = ["bash", "/opt/bakery-job/command-wrapper.sh"]
STOPPED = "STOPPED"
CANCEL_REASON = "canceled via bakery api"


def task_id_from_arn(task_arn: str) -> str:
    """Return the id of a task from its ARN."""
    if not (match := TASK_ID_RE.search(task_arn)):
        raise JobException(f"Failed to extract task id out of task arn {task_arn}")
    return match.group("taskId")


def _is_not_found(err: ClientError) -> bool:
    return err.response.get("Error", {}).get("Code") == "ResourceNotFoundException"


class FargateJobExecutor(JobExecutor):
    """Runs jobs as container tasks in a serverless cluster."""

    def __init__(
        self,
        config: FargateJobConfig,
        ecs: Any,
        logs: Any,
        sts: Any,
        broker: SecretBroker,
    ) -> None:
        """Initialize FargateJobExecutor with boto3 `ecs`, `logs` and `sts` clients."""
        super().__init__()
        self._config = config
        self._ecs = ecs
        self._logs = logs
        self._sts = sts
        self._broker = broker
        self._task_definition_arn: str | None = None
        self._broker_role: str | None = None
        self._config_map: dict[str, str] = {}
        self._log_snapshots: dict[str, str] = {}
        self._terminal = FinishedJobs()

    @property
    def task_definition_arn(self) -> str | None:
        """ARN of the task definition registered at startup."""
        return self._task_definition_arn

    def _cluster_args(self) -> dict[str, Any]:
        return {"cluster": self._config.cluster} if self._config.cluster else {}

    async def _execution_role(self) -> str:
        """Return the configured execution role or the role the bakery runs as."""
        if self._config.execution_role_arn:
            return self._config.execution_role_arn
        identity = await asyncio.to_thread(self._sts.get_caller_identity)
        if not (match := STS_ROLE_ARN_RE.search(identity["Arn"])):
            raise JobException(
                "Failed to extract the role name from the current sts caller identity arn"
            )
        self._broker_role = match.group("roleName")
        role_arn = f"arn:aws:iam::{identity['Account']}:role/{self._broker_role}"
        _LOGGER.info("Using %s as the execution arn", role_arn)
        return role_arn

    async def _provision(self) -> None:
        """Register the task definition shared by every bake."""
        self._config_map = await asyncio.to_thread(
            read_config_dir, Path(self._config.config_dir)
        )
        execution_role = await self._execution_role()
        try:
            response = await asyncio.to_thread(
                self._ecs.register_task_definition,
                family=f"{TASK_FAMILY_PREFIX}{uuid.uuid4()}",
                containerDefinitions=[
                    {
                        "name": self._config.job_container_name,
                        "image": self._config.job_image,
                        "command": WRAPPER_COMMAND,
                        "logConfiguration": {
                            "logDriver": "awslogs",
                            "options": {
                                "awslogs-region": self._config.region,
                                "awslogs-group": self._config.log_group,
                                "awslogs-stream-prefix": self._config.log_prefix,
                            },
                        },
                    }
                ],
                networkMode="awsvpc",
                requiresCompatibilities=["FARGATE"],
                memory=self._config.memory,
                cpu=self._config.cpu,
                executionRoleArn=execution_role,
            )
        except (BotoCoreError, ClientError) as err:
            raise JobException(f"Failed to register task definition: {err}") from err
        self._task_definition_arn = response["taskDefinition"]["taskDefinitionArn"]
        _LOGGER.info("Registered task definition %s", self._task_definition_arn)

    async def _assume_role(self, job_id: str) -> dict[str, str]:
        """Return short lived credentials for the target account as env vars."""
        if not self._config.iam_role:
            raise JobException("iam_role must be configured to run fargate jobs")
        args = {
            "RoleArn": self._config.iam_role,
            "RoleSessionName": f"bakery-bake-{job_id}"[:64],
        }
        if self._config.iam_role_external_id:
            args["ExternalId"] = self._config.iam_role_external_id
        try:
            response = await asyncio.to_thread(self._sts.assume_role, **args)
        except (BotoCoreError, ClientError) as err:
            raise JobException(
                f"Failed to assume role: {self._config.iam_role} for bake request: {job_id}"
            ) from err
        credentials = response["Credentials"]
        return {
            "AWS_ACCESS_KEY_ID": credentials["AccessKeyId"],
            "AWS_SECRET_ACCESS_KEY": credentials["SecretAccessKey"],
            "AWS_SESSION_TOKEN": credentials["SessionToken"],
            "AWS_DEFAULT_REGION": self._config.region,
        }

    async def _write_job_context(self, request: JobRequest) -> str:
        """Hand the context to the broker and return the token to read it."""
        credentials = await self._assume_role(request.job_id)
        context = {
            "configMap": self._config_map,
            "configDir": self._config.config_dir,
            "jobCommand": shlex.join(request.tokenized_command),
            "commandTimeout": f"{self._config.timeout_minutes}m",
            "awsCredentials": credentials,
        }
        try:
            return await self._broker.hand_off(
                f"bakery-job-token-{request.job_id}",
                context,
                role=self._broker_role,
                ttl=self._config.vault.token_ttl,
            )
        except JobException as err:
            raise JobException(
                f"Failed to write job context for job: {request.job_id}: {err}"
            ) from err

    async def start_job(self, request: JobRequest) -> str:
        """Launch a task for the bake and return the task id."""
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
        token = await self._write_job_context(request)
        try:
            response = await asyncio.to_thread(
                self._ecs.run_task,
                launchType="FARGATE",
                taskDefinition=self._task_definition_arn,
                networkConfiguration={
                    "awsvpcConfiguration": {
                        "subnets": list(self._config.subnets),
                        "assignPublicIp": "ENABLED",
                    }
                },
                overrides={
                    "containerOverrides": [
                        {
                            "name": self._config.job_container_name,
                            "environment": [
                                {"name": "VAULT_ADDR", "value": self._broker.address},
                                {"name": "VAULT_TOKEN", "value": token},
                            ],
                        }
                    ]
                },
                tags=[{"key": "jobId", "value": request.job_id}],
                **self._cluster_args(),
            )
        except (BotoCoreError, ClientError) as err:
            raise JobException(f"Failed to run task for {request.job_id}: {err}") from err
        if not (tasks := response.get("tasks")):
            raise JobException(
                f"No task started for {request.job_id}: {response.get('failures')}"
            )
        task_id = task_id_from_arn(tasks[0]["taskArn"])
        _LOGGER.info(
            "Fargate task for bake request id: %s started with id: %s",
            request.job_id,
            task_id,
        )
        return task_id

    async def _describe(self, task_id: str) -> dict[str, Any] | None:
        response = await asyncio.to_thread(
            self._ecs.describe_tasks, tasks=[task_id], **self._cluster_args()
        )
        return next(iter(response.get("tasks") or []), None)

    async def job_exists(self, task_id: str) -> bool:
        """Return True if the cluster knows about the task."""
        return await self._describe(task_id) is not None

    def _log_stream(self, task_id: str) -> str:
        return f"{self._config.log_prefix}/{self._config.job_container_name}/{task_id}"

    def _read_logs(self, task_id: str) -> str:
        """Page through the whole log stream of the task."""
        messages: list[str] = []
        token: str | None = None
        while True:
            args: dict[str, Any] = {
                "logGroupName": self._config.log_group,
                "logStreamName": self._log_stream(task_id),
                "startFromHead": True,
            }
            if token:
                args["nextToken"] = token
            response = self._logs.get_log_events(**args)
            messages.extend(event["message"] for event in response.get("events", []))
            next_token = response.get("nextForwardToken")
            # The same token is returned once the end of the stream is reached
            if next_token is None or next_token == token:
                break
            token = next_token
        return "\n".join(messages)

    async def _logs_for_task(self, task_id: str) -> str:
        try:
            logs = await asyncio.to_thread(self._read_logs, task_id)
        except ClientError as err:
            if not _is_not_found(err):
                raise
            return self._log_snapshots.get(task_id, LOGS_INIT_MESSAGE)
        self._log_snapshots[task_id] = logs
        return logs

    async def update_job(self, task_id: str) -> BakeStatus | None:
        """Poll the task, returning None on any query failure."""
        if (status := self._terminal.get(task_id)) is not None:
            return status
        try:
            task = await self._describe(task_id)
            if task is None:
                return BakeStatus(
                    id=task_id,
                    state=State.RUNNING,
                    logs_content=LOGS_INIT_MESSAGE,
                    output_content=LOGS_INIT_MESSAGE,
                )
            logs = await self._logs_for_task(task_id)
        except Exception as err:
            _LOGGER.error("Failed to update task %s: %s", task_id, err)
            return None

        if task.get("lastStatus") != STOPPED:
            return BakeStatus(
                id=task_id,
                state=State.RUNNING,
                logs_content=logs,
                output_content=logs,
            )
        containers = task.get("containers") or [{}]
        exit_code = containers[0].get("exitCode")
        if exit_code is None or exit_code != 0:
            state, result = State.CANCELED, Result.FAILURE
        else:
            state, result = State.COMPLETED, Result.SUCCESS
        status = BakeStatus(
            id=task_id,
            state=state,
            result=result,
            logs_content=logs,
            output_content=logs,
        )
        self._terminal.add(task_id, status)
        self._log_snapshots.pop(task_id, None)
        return status

    async def cancel_job(self, task_id: str) -> None:
        """Stop the task, a no-op if the cluster does not know about it."""
        self._log_snapshots.pop(task_id, None)
        try:
            if not await self.job_exists(task_id):
                return
            _LOGGER.info("Canceling task %s", task_id)
            await asyncio.to_thread(
                self._ecs.stop_task,
                task=task_id,
                reason=CANCEL_REASON,
                **self._cluster_args(),
            )
        except (BotoCoreError, ClientError) as err:
            raise JobException(f"Failed to cancel task {task_id}: {err}") from err

    async def close(self) -> None:
        """Deregister the task definition registered at startup."""
        if self._task_definition_arn is None:
            return
        arn = self._task_definition_arn
        self._task_definition_arn = None
        try:
            await asyncio.to_thread(
                self._ecs.deregister_task_definition, taskDefinition=arn
            )
        except (BotoCoreError, ClientError) as err:
            _LOGGER.warning("Failed to deregister task definition %s: %s", arn, err)
