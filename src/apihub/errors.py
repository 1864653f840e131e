"""Exceptions raised by apihub."""

from enum import Enum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from apihub.models import Application, Credential


class ApiHubError(Exception):
    """Base exception for apihub errors."""
    pass


def _with_context(message: str, context: dict[str, Any] | None) -> str:
    if not context:
        return message
    details = ", ".join(f"{key}={value}" for key, value in context.items())
    return f"{message} ({details})"


class ConfigError(ApiHubError):
    """Configuration file missing or invalid."""
    pass


class TopologyRule(str, Enum):
    """Environment topology rules checked at construction."""
    RANKS_INVALID = "ranks-invalid"
    IDS_NOT_UNIQUE = "ids-not-unique"
    IDS_NOT_URL_SAFE = "ids-not-url-safe"
    UNKNOWN_PRODUCTION = "unknown-production"
    PRODUCTION_PROMOTES = "production-promotes"
    PRODUCTION_NOT_PRODUCTION_LIKE = "production-not-production-like"
    UNKNOWN_DEPLOY_TO = "unknown-deploy-to"
    UNKNOWN_VALIDATE_IN = "unknown-validate-in"
    PROMOTE_TO_NOT_UNIQUE = "promote-to-not-unique"
    UNKNOWN_PROMOTE_TO = "unknown-promote-to"
    PROMOTION_CYCLE = "promotion-cycle"
    INVALID_BASE_URL = "invalid-base-url"
    PROXY_WITHOUT_API_KEY = "proxy-without-api-key"


class TopologyError(ApiHubError):
    """Environment configuration violates a topology rule."""

    def __init__(self, rule: TopologyRule, message: str):
        self.rule = rule
        super().__init__(f"{message} [{rule.value}]")


class EnvironmentNotFoundError(ApiHubError, KeyError):
    """No environment with the given id."""

    def __init__(self, environment_id: str):
        self.environment_id = environment_id
        super().__init__(f"No configuration for environment {environment_id}")

    def __str__(self) -> str:
        return self.args[0]


class IdmsIssue(str, Enum):
    """Why a call to the identity service failed."""
    CLIENT_NOT_FOUND = "client-not-found"
    UNEXPECTED_RESPONSE = "unexpected-response"
    CALL_ERROR = "call-error"
    INVALID_CREDENTIAL = "invalid-credential"


class IdmsError(ApiHubError):
    """Error from the identity management service."""

    def __init__(
        self,
        message: str,
        issue: IdmsIssue,
        status_code: int | None = None,
    ):
        self.message = message
        self.issue = issue
        self.status_code = status_code
        super().__init__(message)

    @property
    def is_client_not_found(self) -> bool:
        return self.issue == IdmsIssue.CLIENT_NOT_FOUND

    @classmethod
    def client_not_found(cls, client_id: str) -> "IdmsError":
        return cls(f"Client not found: clientId={client_id}", IdmsIssue.CLIENT_NOT_FOUND, 404)

    @classmethod
    def unexpected_response(
        cls,
        status_code: int,
        context: dict[str, Any] | None = None,
    ) -> "IdmsError":
        return cls(
            _with_context(f"Unexpected response {status_code} returned from IDMS", context),
            IdmsIssue.UNEXPECTED_RESPONSE,
            status_code,
        )

    @classmethod
    def invalid_credential(cls, environment_id: str, status_code: int) -> "IdmsError":
        return cls(
            f"IDMS rejected the credentials configured for environment {environment_id}",
            IdmsIssue.INVALID_CREDENTIAL,
            status_code,
        )

    @classmethod
    def call_error(cls, cause: BaseException, context: dict[str, Any] | None = None) -> "IdmsError":
        error = cls(
            _with_context(f"Error calling IDMS: {cause}", context),
            IdmsIssue.CALL_ERROR,
        )
        error.__cause__ = cause
        return error


class CatalogueIssue(str, Enum):
    """Why a call to the integration catalogue failed."""
    API_NOT_FOUND = "api-not-found"
    UNEXPECTED_RESPONSE = "unexpected-response"
    CALL_ERROR = "call-error"


class CatalogueError(ApiHubError):
    """Error from the integration catalogue."""

    def __init__(self, message: str, issue: CatalogueIssue, status_code: int | None = None):
        self.message = message
        self.issue = issue
        self.status_code = status_code
        super().__init__(message)

    @property
    def is_api_not_found(self) -> bool:
        return self.issue == CatalogueIssue.API_NOT_FOUND

    @classmethod
    def api_not_found(cls, api_id: str) -> "CatalogueError":
        return cls(f"Cannot find API with Id {api_id}", CatalogueIssue.API_NOT_FOUND, 404)

    @classmethod
    def unexpected_response(cls, status_code: int) -> "CatalogueError":
        return cls(
            f"Unexpected response {status_code} returned from the integration catalogue",
            CatalogueIssue.UNEXPECTED_RESPONSE,
            status_code,
        )

    @classmethod
    def call_error(cls, cause: BaseException) -> "CatalogueError":
        error = cls(f"Error calling the integration catalogue: {cause}", CatalogueIssue.CALL_ERROR)
        error.__cause__ = cause
        return error


class ReconciliationError(ApiHubError):
    """Scope reconciliation stopped on the first hard error."""

    def __init__(self, cause: IdmsError | CatalogueError):
        self.cause = cause
        super().__init__(f"Scope reconciliation failed: {cause}")
        self.__cause__ = cause


class CredentialLimitError(ApiHubError):
    """Too many, or too few, credentials in an environment."""

    @classmethod
    def too_many(cls, application_id: str | None, environment_id: str, limit: int) -> "CredentialLimitError":
        return cls(
            f"Application {application_id} already has {limit} credentials in environment {environment_id}"
        )

    @classmethod
    def last_credential(cls, application_id: str | None, environment_id: str) -> "CredentialLimitError":
        return cls(
            f"Cannot delete the last credential of application {application_id} in environment {environment_id}"
        )


class CredentialNotFoundError(ApiHubError):
    """Application has no credential with the given client id."""

    @classmethod
    def for_client_id(cls, client_id: str) -> "CredentialNotFoundError":
        return cls(f"Cannot find credential with clientId {client_id}")


class ScopeCopyError(ApiHubError):
    """A new credential was issued but its scopes could not be copied.

    ``application`` already records ``credential``; store it so the client
    issued at the identity service is not lost.
    """

    def __init__(self, application: "Application", credential: "Credential", cause: IdmsError):
        self.application = application
        self.credential = credential
        self.cause = cause
        super().__init__(
            f"Credential {credential.client_id} created in environment {credential.environment_id} "
            f"but copying its scopes failed: {cause}"
        )
        self.__cause__ = cause
