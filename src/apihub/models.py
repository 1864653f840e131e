"""Core data models for apihub.

Applications and credentials are value objects: every mutator returns a new
instance and leaves the original untouched.
"""

from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from apihub.environments import Environment
from apihub.errors import CredentialNotFoundError

SECRET_FRAGMENT_LENGTH = 4


def utcnow() -> datetime:
    """Get current UTC time (naive, as stored on credentials)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def environment_id(environment: Environment | str) -> str:
    return environment if isinstance(environment, str) else environment.id


class WireModel(BaseModel):
    """Shape exchanged with an external service (camelCase on the wire)."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# -- Credentials and scopes -------------------------------------------------


class Credential(BaseModel):
    """Client credential issued to an application in one environment."""
    model_config = ConfigDict(frozen=True)

    client_id: str
    created: datetime
    client_secret: str | None = Field(default=None, repr=False)
    secret_fragment: str | None = None
    environment_id: str

    @property
    def is_hidden(self) -> bool:
        """Hidden credentials are never shown to end users."""
        return self.secret_fragment is None

    def with_secret(self, secret: str) -> "Credential":
        return self.model_copy(update={
            "client_secret": secret,
            "secret_fragment": secret[-SECRET_FRAGMENT_LENGTH:],
        })

    def redacted(self) -> "Credential":
        return self.model_copy(update={"client_secret": None})


class ScopeStatus(str, Enum):
    """Local approval status of a scope."""
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    DENIED = "DENIED"


class Scope(BaseModel):
    """Named permission recorded against an application environment."""
    model_config = ConfigDict(frozen=True)

    name: str
    status: ScopeStatus = ScopeStatus.APPROVED


class CredentialScopes(BaseModel):
    """Scopes the identity service reports for one credential."""
    environment_id: str
    client_id: str
    created: datetime
    scopes: list[str] = []

    def sort_key(self) -> tuple[str, datetime, str]:
        return (self.environment_id, self.created, self.client_id)


# -- APIs ---------------------------------------------------------------------


class ApiEndpoint(BaseModel):
    """Endpoint of a linked API the application uses."""
    model_config = ConfigDict(frozen=True)

    http_method: str
    path: str


class Api(BaseModel):
    """API linked to an application."""
    model_config = ConfigDict(frozen=True)

    id: str
    title: str = ""
    endpoints: tuple[ApiEndpoint, ...] = ()


class EndpointMethod(WireModel):
    http_method: str
    summary: str | None = None
    scopes: list[str] = []


class Endpoint(WireModel):
    path: str
    methods: list[EndpointMethod] = []


class ApiDetail(WireModel):
    """API definition held by the integration catalogue."""
    id: str
    publisher_reference: str = ""
    title: str = ""
    description: str = ""
    version: str = ""
    endpoints: list[Endpoint] = []
    short_description: str | None = None
    api_status: str = "LIVE"
    team_id: str | None = None

    def required_scope_names(self, api: Api | None = None) -> set[str]:
        """Scopes required by this API's endpoints.

        When `api` lists the endpoints an application uses, only those count.
        """
        selected = None
        if api is not None and api.endpoints:
            selected = {(e.http_method.upper(), e.path) for e in api.endpoints}

        return {
            scope
            for endpoint in self.endpoints
            for method in endpoint.methods
            if selected is None or (method.http_method.upper(), endpoint.path) in selected
            for scope in method.scopes
        }


# -- Access requests ----------------------------------------------------------


class AccessRequestStatus(str, Enum):
    """Approval workflow status."""
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    CANCELLED = "CANCELLED"


class AccessRequestEndpoint(BaseModel):
    http_method: str
    path: str
    scopes: list[str] = []


class AccessRequest(BaseModel):
    """Request for an application to reach an API in a production-like environment."""
    id: str | None = None
    application_id: str
    api_id: str
    api_name: str = ""
    status: AccessRequestStatus = AccessRequestStatus.PENDING
    environment_id: str
    endpoints: list[AccessRequestEndpoint] = []
    supporting_information: str = ""
    requested: datetime | None = None
    requested_by: str = ""

    @property
    def is_approved(self) -> bool:
        return self.status == AccessRequestStatus.APPROVED

    def scope_names(self) -> set[str]:
        return {scope for endpoint in self.endpoints for scope in endpoint.scopes}


# -- Identity service shapes --------------------------------------------------


class ClientDescriptor(WireModel):
    """Body of a create-client call."""
    application_name: str
    description: str

    @classmethod
    def for_application(cls, application: "Application") -> "ClientDescriptor":
        return cls(application_name=application.name, description=application.name)


class ClientResponse(WireModel):
    client_id: str
    secret: str = Field(repr=False)

    def as_new_credential(self, now: datetime, environment: Environment) -> Credential:
        return Credential(
            client_id=self.client_id,
            created=now,
            client_secret=self.secret,
            secret_fragment=self.secret[-SECRET_FRAGMENT_LENGTH:],
            environment_id=environment.id,
        )

    def as_new_hidden_credential(self, now: datetime, environment: Environment) -> Credential:
        return Credential(
            client_id=self.client_id,
            created=now,
            environment_id=environment.id,
        )


class ClientScope(WireModel):
    client_scope_id: str


class Secret(WireModel):
    secret: str = Field(repr=False)


# -- Application ----------------------------------------------------------------


class Application(BaseModel):
    """Consumer application and the credentials it holds in each environment.

    Use the accessors below rather than assigning fields, so credentials and
    recorded scopes stay consistent per environment.
    """
    model_config = ConfigDict(frozen=True)

    id: str | None = None
    name: str
    team_id: str | None = None
    created_by: str = ""
    created: datetime = Field(default_factory=utcnow)
    last_updated: datetime = Field(default_factory=utcnow)
    apis: list[Api] = []
    credentials: list[Credential] = []
    scopes: dict[str, list[Scope]] = {}
    issues: list[str] = []

    # Credentials

    def credentials_for(self, environment: Environment | str) -> list[Credential]:
        env_id = environment_id(environment)
        return [c for c in self.credentials if c.environment_id == env_id]

    def master_credential(self, environment: Environment | str) -> Credential | None:
        """The most recently created credential in the environment."""
        credentials = self.credentials_for(environment)
        if not credentials:
            return None
        return max(credentials, key=lambda c: c.created)

    def set_credentials(self, environment: Environment | str, credentials: list[Credential]) -> "Application":
        env_id = environment_id(environment)
        others = [c for c in self.credentials if c.environment_id != env_id]
        mine = [
            c if c.environment_id == env_id else c.model_copy(update={"environment_id": env_id})
            for c in credentials
        ]
        return self.model_copy(update={"credentials": others + mine})

    def add_credential(self, environment: Environment | str, credential: Credential) -> "Application":
        existing = [c for c in self.credentials_for(environment) if c.client_id != credential.client_id]
        return self.set_credentials(environment, existing + [credential])

    def remove_credential(self, environment: Environment | str, client_id: str) -> "Application":
        remaining = [c for c in self.credentials_for(environment) if c.client_id != client_id]
        return self.set_credentials(environment, remaining)

    def replace_credential(self, environment: Environment | str, credential: Credential) -> "Application":
        """Swap the credential sharing `credential.client_id`."""
        credentials = self.credentials_for(environment)
        if not any(c.client_id == credential.client_id for c in credentials):
            raise CredentialNotFoundError.for_client_id(credential.client_id)
        return self.set_credentials(
            environment,
            [credential if c.client_id == credential.client_id else c for c in credentials],
        )

    def update_credential_secret(self, environment: Environment | str, client_id: str, secret: str) -> "Application":
        return self.set_credentials(
            environment,
            [c.with_secret(secret) if c.client_id == client_id else c for c in self.credentials_for(environment)],
        )

    def find_credential(self, client_id: str) -> Credential | None:
        return next((c for c in self.credentials if c.client_id == client_id), None)

    # Scopes

    def scopes_for(self, environment: Environment | str) -> list[Scope]:
        return list(self.scopes.get(environment_id(environment), []))

    def set_scopes(self, environment: Environment | str, scopes: list[Scope]) -> "Application":
        updated = dict(self.scopes)
        updated[environment_id(environment)] = list(scopes)
        return self.model_copy(update={"scopes": updated})

    def add_scope(self, environment: Environment | str, scope: Scope | str) -> "Application":
        if isinstance(scope, str):
            scope = Scope(name=scope)
        existing = [s for s in self.scopes_for(environment) if s.name != scope.name]
        return self.set_scopes(environment, existing + [scope])

    def remove_scope(self, environment: Environment | str, scope_name: str) -> "Application":
        return self.set_scopes(
            environment,
            [s for s in self.scopes_for(environment) if s.name != scope_name],
        )

    def has_pending_scope(self, environment: Environment | str) -> bool:
        return any(s.status == ScopeStatus.PENDING for s in self.scopes_for(environment))

    # Everything else

    def add_issue(self, issue: str) -> "Application":
        return self.model_copy(update={"issues": self.issues + [issue]})

    def touch(self, now: datetime) -> "Application":
        return self.model_copy(update={"last_updated": now})

    def make_public(self) -> "Application":
        """Copy safe to show end users: no hidden credentials, no secrets."""
        return self.model_copy(update={
            "credentials": [c.redacted() for c in self.credentials if not c.is_hidden],
        })


class Issues:
    """Human-readable issues recorded on an application during enrichment."""

    @staticmethod
    def credential_not_found(environment: Environment | str, error: Exception) -> str:
        return f"Credential not found in environment {environment_id(environment)}. {error}"

    @staticmethod
    def scopes_not_found(environment: Environment | str, error: Exception) -> str:
        return f"Scopes not found in environment {environment_id(environment)}. {error}"
