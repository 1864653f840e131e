"""Shared fixtures: an in-memory identity service, catalogue and topology."""

from datetime import datetime
from itertools import count

import pytest

from apihub.environments import Environment, EnvironmentTopology
from apihub.errors import CatalogueError, IdmsError
from apihub.models import (
    ApiDetail,
    ClientDescriptor,
    ClientResponse,
    ClientScope,
    Endpoint,
    EndpointMethod,
    Secret,
)


class FakeIdmsConnector:
    """Identity service kept in memory, recording every call."""

    def __init__(self):
        self.clients: dict[tuple[str, str], dict] = {}
        self.calls: list[tuple] = []
        self.errors: dict[str, IdmsError] = {}
        self._ids = count(1)
        self.closed = False

    def add_client(self, environment_id: str, client_id: str, secret: str = "secret-0000", scopes=()):
        self.clients[(environment_id, client_id)] = {"secret": secret, "scopes": set(scopes)}

    def scopes(self, environment_id: str, client_id: str) -> set[str]:
        return self.clients[(environment_id, client_id)]["scopes"]

    def calls_to(self, method: str) -> list[tuple]:
        return [c for c in self.calls if c[0] == method]

    def _check(self, method: str, environment: Environment, client_id: str | None = None) -> dict | None:
        if method in self.errors:
            raise self.errors[method]
        if client_id is None:
            return None
        client = self.clients.get((environment.id, client_id))
        if client is None:
            raise IdmsError.client_not_found(client_id)
        return client

    async def create_client(self, environment: Environment, client: ClientDescriptor) -> ClientResponse:
        self.calls.append(("create_client", environment.id, client.application_name))
        self._check("create_client", environment)
        n = next(self._ids)
        client_id, secret = f"client-{n}", f"secret-{n:04d}"
        self.add_client(environment.id, client_id, secret)
        return ClientResponse(client_id=client_id, secret=secret)

    async def fetch_client(self, environment: Environment, client_id: str) -> ClientResponse:
        self.calls.append(("fetch_client", environment.id, client_id))
        client = self._check("fetch_client", environment, client_id)
        return ClientResponse(client_id=client_id, secret=client["secret"])

    async def delete_client(self, environment: Environment, client_id: str) -> None:
        self.calls.append(("delete_client", environment.id, client_id))
        self._check("delete_client", environment, client_id)
        del self.clients[(environment.id, client_id)]

    async def new_secret(self, environment: Environment, client_id: str) -> Secret:
        self.calls.append(("new_secret", environment.id, client_id))
        client = self._check("new_secret", environment, client_id)
        client["secret"] = f"rotated-{next(self._ids):04d}"
        return Secret(secret=client["secret"])

    async def add_client_scope(self, environment: Environment, client_id: str, scope_id: str) -> None:
        self.calls.append(("add_client_scope", environment.id, client_id, scope_id))
        client = self._check("add_client_scope", environment, client_id)
        client["scopes"].add(scope_id)

    async def delete_client_scope(self, environment: Environment, client_id: str, scope_id: str) -> None:
        self.calls.append(("delete_client_scope", environment.id, client_id, scope_id))
        client = self._check("delete_client_scope", environment, client_id)
        client["scopes"].discard(scope_id)

    async def fetch_client_scopes(self, environment: Environment, client_id: str) -> list[ClientScope]:
        self.calls.append(("fetch_client_scopes", environment.id, client_id))
        client = self._check("fetch_client_scopes", environment, client_id)
        return [ClientScope(client_scope_id=s) for s in sorted(client["scopes"])]

    async def close(self):
        self.closed = True


class FakeCatalogueConnector:
    """Catalogue holding a fixed set of APIs."""

    def __init__(self):
        self.apis: dict[str, ApiDetail] = {}
        self.errors: dict[str, CatalogueError] = {}
        self.closed = False

    def add_api(self, api_id: str, scopes_by_endpoint: dict[str, list[str]]) -> ApiDetail:
        detail = ApiDetail(
            id=api_id,
            title=f"API {api_id}",
            endpoints=[
                Endpoint(path=path, methods=[EndpointMethod(http_method="GET", scopes=scopes)])
                for path, scopes in scopes_by_endpoint.items()
            ],
        )
        self.apis[api_id] = detail
        return detail

    async def find_api_by_id(self, api_id: str) -> ApiDetail:
        if api_id in self.errors:
            raise self.errors[api_id]
        if api_id not in self.apis:
            raise CatalogueError.api_not_found(api_id)
        return self.apis[api_id]

    async def close(self):
        self.closed = True


@pytest.fixture
def fake_idms():
    return FakeIdmsConnector()


@pytest.fixture
def fake_catalogue():
    return FakeCatalogueConnector()


@pytest.fixture
def now():
    return datetime(2026, 3, 1, 12, 0, 0)


@pytest.fixture
def topology():
    """test (non-production) promotes to production."""
    return EnvironmentTopology(
        [
            Environment(
                id="test",
                name="Test",
                rank=1,
                base_url="https://idms.test.example.com",
                client_id="test-client",
                secret="test-secret",
                promote_to="production",
            ),
            Environment(
                id="production",
                name="Production",
                rank=2,
                is_production_like=True,
                base_url="https://idms.example.com",
                client_id="prod-client",
                secret="prod-secret",
            ),
        ],
        production="production",
        deploy_to="test",
    )


@pytest.fixture
def non_prod_env(topology):
    return topology.by_id("test")


@pytest.fixture
def prod_env(topology):
    return topology.by_id("production")
