"""apihub: API gateway onboarding across environments."""

from apihub.audit import AuditLogger
from apihub.circuit_breaker import CircuitBreaker, CircuitBreakerIdmsConnector
from apihub.credentials import ApplicationsCredentialsService
from apihub.environments import Environment, EnvironmentTopology
from apihub.errors import (
    ApiHubError,
    CatalogueError,
    ConfigError,
    CredentialLimitError,
    CredentialNotFoundError,
    EnvironmentNotFoundError,
    IdmsError,
    ReconciliationError,
    ScopeCopyError,
    TopologyError,
    TopologyRule,
)
from apihub.models import (
    AccessRequest,
    Api,
    ApiDetail,
    Application,
    Credential,
    CredentialScopes,
    Scope,
    ScopeStatus,
)
from apihub.reconciliation import ScopeReconciler

__all__ = [
    # Environments
    "Environment",
    "EnvironmentTopology",
    # Models
    "AccessRequest",
    "Api",
    "ApiDetail",
    "Application",
    "Credential",
    "CredentialScopes",
    "Scope",
    "ScopeStatus",
    # Services
    "ApplicationsCredentialsService",
    "AuditLogger",
    "CircuitBreaker",
    "CircuitBreakerIdmsConnector",
    "ScopeReconciler",
    # Errors
    "ApiHubError",
    "CatalogueError",
    "ConfigError",
    "CredentialLimitError",
    "CredentialNotFoundError",
    "ScopeCopyError",
    "EnvironmentNotFoundError",
    "IdmsError",
    "ReconciliationError",
    "TopologyError",
    "TopologyRule",
]

__version__ = "0.1.0"
