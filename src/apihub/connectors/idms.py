"""IDMS Connector: the identity management service of each environment.

Provides:
- create_client / fetch_client / delete_client
- new_secret: rotate a client's secret
- add_client_scope / delete_client_scope / fetch_client_scopes

Every environment has its own IDMS base URL and its own service credentials,
so one HTTP client is kept per environment id.
"""

import base64
import logging
from dataclasses import dataclass
from typing import Any, Callable, Protocol, TypeVar

import httpx

from apihub.environments import Environment
from apihub.errors import IdmsError
from apihub.models import ClientDescriptor, ClientResponse, ClientScope, Secret

logger = logging.getLogger(__name__)

T = TypeVar("T")


class IdmsConnector(Protocol):
    """Protocol for identity service connectors."""

    async def create_client(self, environment: Environment, client: ClientDescriptor) -> ClientResponse:
        ...

    async def fetch_client(self, environment: Environment, client_id: str) -> ClientResponse:
        ...

    async def delete_client(self, environment: Environment, client_id: str) -> None:
        ...

    async def new_secret(self, environment: Environment, client_id: str) -> Secret:
        ...

    async def add_client_scope(self, environment: Environment, client_id: str, scope_id: str) -> None:
        ...

    async def delete_client_scope(self, environment: Environment, client_id: str, scope_id: str) -> None:
        ...

    async def fetch_client_scopes(self, environment: Environment, client_id: str) -> list[ClientScope]:
        ...


@dataclass
class IdmsConfig:
    """HTTP settings shared by every environment."""
    timeout: float = 30.0
    proxy_url: str | None = None  # egress proxy for environments with use_proxy


class HttpIdmsConnector:
    """IDMS connector over HTTP."""

    def __init__(self, config: IdmsConfig | None = None, transport: httpx.AsyncBaseTransport | None = None):
        self.config = config or IdmsConfig()
        self._transport = transport
        self._clients: dict[str, httpx.AsyncClient] = {}

    def _get_client(self, environment: Environment) -> httpx.AsyncClient:
        client = self._clients.get(environment.id)
        if client is None:
            token = base64.b64encode(f"{environment.client_id}:{environment.secret}".encode()).decode()
            headers = {
                "Authorization": f"Basic {token}",
                "Accept": "application/json",
            }
            kwargs: dict[str, Any] = {}
            if environment.use_proxy:
                headers["x-api-key"] = environment.api_key or ""
                if self.config.proxy_url:
                    kwargs["proxy"] = self.config.proxy_url
            if self._transport is not None:
                kwargs["transport"] = self._transport

            client = httpx.AsyncClient(
                base_url=environment.base_url.rstrip("/"),
                timeout=self.config.timeout,
                headers=headers,
                **kwargs,
            )
            self._clients[environment.id] = client
        return client

    async def close(self):
        for client in self._clients.values():
            await client.aclose()
        self._clients.clear()

    async def _request(
        self,
        environment: Environment,
        method: str,
        path: str,
        client_id: str | None = None,
        json: dict[str, Any] | None = None,
    ) -> httpx.Response:
        """Send one request, mapping failures to IdmsError."""
        context = _context(environment, client_id)

        try:
            response = await self._get_client(environment).request(method, path, json=json)
        except httpx.HTTPError as exc:
            raise IdmsError.call_error(exc, context) from exc

        if response.is_success:
            return response
        if response.status_code == 404 and client_id is not None:
            raise IdmsError.client_not_found(client_id)
        if response.status_code in (401, 403):
            raise IdmsError.invalid_credential(environment.id, response.status_code)
        raise IdmsError.unexpected_response(response.status_code, context)

    def _decode(
        self,
        response: httpx.Response,
        parse: Callable[[Any], T],
        environment: Environment,
        client_id: str | None = None,
    ) -> T:
        """Parse a successful response body; a body that does not parse is an unexpected response."""
        try:
            return parse(response.json())
        except (ValueError, TypeError) as exc:
            logger.warning(f"Unreadable IDMS response from {environment.id}: {exc}")
            raise IdmsError.unexpected_response(
                response.status_code, _context(environment, client_id)
            ) from exc

    async def create_client(self, environment: Environment, client: ClientDescriptor) -> ClientResponse:
        response = await self._request(
            environment, "POST", "/identity/clients",
            json=client.model_dump(by_alias=True),
        )
        created = self._decode(response, ClientResponse.model_validate, environment)
        logger.info(f"Created client {created.client_id} in {environment.id}")
        return created

    async def fetch_client(self, environment: Environment, client_id: str) -> ClientResponse:
        response = await self._request(
            environment, "GET", f"/identity/clients/{client_id}/client-secret", client_id=client_id,
        )
        secret = self._decode(response, Secret.model_validate, environment, client_id)
        return ClientResponse(client_id=client_id, secret=secret.secret)

    async def delete_client(self, environment: Environment, client_id: str) -> None:
        await self._request(environment, "DELETE", f"/identity/clients/{client_id}", client_id=client_id)
        logger.info(f"Deleted client {client_id} in {environment.id}")

    async def new_secret(self, environment: Environment, client_id: str) -> Secret:
        response = await self._request(
            environment, "POST", f"/identity/clients/{client_id}/client-secret", client_id=client_id,
        )
        return self._decode(response, Secret.model_validate, environment, client_id)

    async def add_client_scope(self, environment: Environment, client_id: str, scope_id: str) -> None:
        await self._request(
            environment, "PUT", f"/identity/clients/{client_id}/client-scopes/{scope_id}", client_id=client_id,
        )

    async def delete_client_scope(self, environment: Environment, client_id: str, scope_id: str) -> None:
        await self._request(
            environment, "DELETE", f"/identity/clients/{client_id}/client-scopes/{scope_id}", client_id=client_id,
        )

    async def fetch_client_scopes(self, environment: Environment, client_id: str) -> list[ClientScope]:
        response = await self._request(
            environment, "GET", f"/identity/clients/{client_id}/client-scopes", client_id=client_id,
        )
        return self._decode(response, _client_scopes, environment, client_id)


def _context(environment: Environment, client_id: str | None) -> dict[str, str]:
    context = {"environment": environment.id}
    if client_id:
        context["clientId"] = client_id
    return context


def _client_scopes(body: Any) -> list[ClientScope]:
    if not isinstance(body, list):
        raise ValueError(f"expected a list of client scopes, got {type(body).__name__}")
    return [ClientScope.model_validate(item) for item in body]
