"""Hand a job its context through a secret broker using a capability token.

Remote tasks must not receive credentials through their launch parameters,
which are visible to anyone able to describe the task. Instead the bakery:

1. logs in to the broker with its own identity,
2. mints a token limited to exactly two uses and a short TTL,
3. spends the first use writing the context into the token's private
   cubbyhole,
4. hands the token, now with a single use left, to the task which spends it
   reading the context back.

Once the task read its context the token is exhausted and worthless.
"""

from abc import ABC, abstractmethod
import base64
import json
import logging
from typing import Any
from urllib.parse import urlparse

import boto3
from botocore.auth import SigV4Auth
from botocore.awsrequest import AWSRequest
from botocore.credentials import Credentials, ReadOnlyCredentials
import httpx

from ..config import VaultConfig
from ..exceptions import JobException

__all__ = [
    "SecretBroker",
    "VaultSecretBroker",
    "iam_login_payload",
]

_LOGGER = logging.getLogger(__name__)

JOB_CONTEXT_PATH = "cubbyhole/job-context"
JOB_CONTEXT_KEY = "base64-encoded-job-context"
HANDOFF_TOKEN_USES = 2

STS_REGION = "us-east-1"
STS_ENDPOINT = f"https://sts.{STS_REGION}.amazonaws.com/"
STS_REQUEST_BODY = "Action=GetCallerIdentity&Version=2011-06-15"


def iam_login_payload(
    role: str | None,
    vault_address: str,
    credentials: Credentials | ReadOnlyCredentials,
) -> dict[str, Any]:
    """Build the body of a broker IAM login from a signed GetCallerIdentity request.

    The broker replays the signed request against STS to learn who is
    logging in, the request itself is never sent by the bakery.
    """
    request = AWSRequest(
        method="POST",
        url=STS_ENDPOINT,
        data=STS_REQUEST_BODY,
        headers={
            "X-Vault-AWS-IAM-Server-ID": urlparse(vault_address).netloc,
            "Content-Type": "application/x-www-form-urlencoded; charset=utf-8",
        },
    )
    SigV4Auth(credentials, "sts", STS_REGION).add_auth(request)
    headers = {key: [value] for key, value in request.headers.items()}
    payload: dict[str, Any] = {
        "iam_http_request_method": "POST",
        "iam_request_url": base64.b64encode(STS_ENDPOINT.encode()).decode(),
        "iam_request_body": base64.b64encode(STS_REQUEST_BODY.encode()).decode(),
        "iam_request_headers": base64.b64encode(json.dumps(headers).encode()).decode(),
    }
    if role:
        payload["role"] = role
    return payload


def encode_context(context: dict[str, Any]) -> str:
    """Return the job context as base64 encoded JSON."""
    return base64.b64encode(json.dumps(context).encode("utf-8")).decode("ascii")


class SecretBroker(ABC):
    """A secret store supporting use limited tokens and private secret paths."""

    @abstractmethod
    async def login(self, role: str | None) -> str:
        """Authenticate the bakery and return its token."""

    @abstractmethod
    async def create_token(
        self, token: str, display_name: str, num_uses: int, ttl: str
    ) -> str:
        """Mint a token that expires after `num_uses` requests or `ttl`."""

    @abstractmethod
    async def write(self, token: str, path: str, data: dict[str, Any]) -> None:
        """Write a secret, spending one use of the token."""

    @property
    @abstractmethod
    def address(self) -> str:
        """Address the remote side uses to reach the broker."""

    async def hand_off(
        self, display_name: str, context: dict[str, Any], role: str | None, ttl: str
    ) -> str:
        """Store the job context and return a token with one use left to read it."""
        client_token = await self.login(role)
        token = await self.create_token(
            client_token, display_name, HANDOFF_TOKEN_USES, ttl
        )
        await self.write(token, JOB_CONTEXT_PATH, {JOB_CONTEXT_KEY: encode_context(context)})
        return token


class VaultSecretBroker(SecretBroker):
    """Vault with the AWS IAM auth method."""

    def __init__(
        self,
        config: VaultConfig,
        client: httpx.AsyncClient | None = None,
        session: boto3.Session | None = None,
    ) -> None:
        """Initialize VaultSecretBroker."""
        self._config = config
        self._client = client or httpx.AsyncClient(
            base_url=config.address, timeout=config.timeout_seconds
        )
        self._session = session or boto3.Session()

    @property
    def address(self) -> str:
        return self._config.address

    async def _post(
        self, path: str, body: dict[str, Any], token: str | None = None
    ) -> dict[str, Any]:
        headers = {"X-Vault-Token": token} if token else {}
        try:
            response = await self._client.post(f"/v1/{path}", json=body, headers=headers)
            response.raise_for_status()
        except httpx.HTTPError as err:
            raise JobException(f"Vault request to {path} failed: {err}") from err
        if not response.content:
            return {}
        return response.json()

    async def login(self, role: str | None) -> str:
        """Log in with the IAM identity of the bakery."""
        credentials = self._session.get_credentials()
        if credentials is None:
            raise JobException("No AWS credentials available to authenticate with Vault")
        payload = iam_login_payload(
            role, self._config.address, credentials.get_frozen_credentials()
        )
        result = await self._post(f"auth/{self._config.iam_auth_mount}/login", payload)
        _LOGGER.debug("Authenticated with Vault using IAM role %s", role)
        return result["auth"]["client_token"]

    async def create_token(
        self, token: str, display_name: str, num_uses: int, ttl: str
    ) -> str:
        result = await self._post(
            "auth/token/create",
            {
                "display_name": display_name,
                "explicit_max_ttl": ttl,
                "renewable": False,
                "num_uses": num_uses,
                "no_default_policy": True,
            },
            token=token,
        )
        return result["auth"]["client_token"]

    async def write(self, token: str, path: str, data: dict[str, Any]) -> None:
        await self._post(path, data, token=token)

    async def close(self) -> None:
        """Release the underlying http connections."""
        await self._client.aclose()
