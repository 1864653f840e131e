"""Scope reconciliation: make each credential's remote scopes match policy.

For one application:
1. required scopes: union of what its linked APIs' endpoints need
2. snapshot: the scopes every credential holds right now
3. allowed scopes per environment: required, gated by approved access
   requests in production-like environments
4. revoke actual - allowed, grant allowed - actual, all concurrently
5. the first failure is raised once every call has finished
"""

import logging

from apihub.audit import AuditLogger
from apihub.connectors.catalogue import CatalogueConnector
from apihub.connectors.idms import IdmsConnector
from apihub.enrichers import gather_or_raise
from apihub.environments import Environment, EnvironmentTopology
from apihub.errors import CatalogueError, IdmsError, ReconciliationError
from apihub.models import AccessRequest, Api, Application, Credential, CredentialScopes

logger = logging.getLogger(__name__)


async def snapshot_scopes(
    idms: IdmsConnector,
    topology: EnvironmentTopology,
    application: Application,
    credentials: list[Credential] | None = None,
) -> list[CredentialScopes]:
    """Current remote scopes of each credential, in environment then creation order.

    Credentials in environments the topology does not know are skipped.
    """
    if credentials is None:
        targets = [
            (environment, credential)
            for environment in topology.environments()
            for credential in application.credentials_for(environment)
        ]
    else:
        targets = []
        for credential in credentials:
            environment = topology.find(credential.environment_id)
            if environment is None:
                logger.debug(f"Skipping {credential.client_id}: unknown environment {credential.environment_id}")
                continue
            targets.append((environment, credential))

    async def fetch(environment: Environment, credential: Credential) -> CredentialScopes:
        client_scopes = await idms.fetch_client_scopes(environment, credential.client_id)
        return CredentialScopes(
            environment_id=environment.id,
            client_id=credential.client_id,
            created=credential.created,
            scopes=[s.client_scope_id for s in client_scopes],
        )

    records = await gather_or_raise(fetch(environment, credential) for environment, credential in targets)
    return sorted(records, key=CredentialScopes.sort_key)


class ScopeReconciler:
    """Aligns the identity service's scope grants with an application's APIs.

    Never changes the application itself; only remote state moves.
    """

    def __init__(
        self,
        catalogue: CatalogueConnector,
        idms: IdmsConnector,
        topology: EnvironmentTopology,
        audit: AuditLogger | None = None,
    ):
        self.catalogue = catalogue
        self.idms = idms
        self.topology = topology
        self.audit = audit

    async def reconcile(
        self,
        application: Application,
        access_requests: list[AccessRequest],
        credentials: list[Credential] | None = None,
    ) -> None:
        """Converge remote scopes for all (or just the given) credentials.

        Raises ReconciliationError wrapping the first hard failure.
        """
        try:
            required = await self.required_scopes(application)
            snapshot = await self.credential_scopes(application, credentials)

            operations = []
            for record in snapshot:
                environment = self.topology.by_id(record.environment_id)
                allowed = self.allowed_scopes(environment, required, access_requests)
                actual = set(record.scopes)

                for scope in sorted(actual - allowed):
                    operations.append(self._revoke(application, environment, record.client_id, scope))
                for scope in sorted(allowed - actual):
                    operations.append(self._grant(application, environment, record.client_id, scope))

            logger.info(
                f"Reconciling application {application.id}: "
                f"{len(snapshot)} credentials, {len(operations)} scope changes"
            )
            await gather_or_raise(operations)
        except (IdmsError, CatalogueError) as e:
            logger.error(f"Scope reconciliation failed for application {application.id}: {e}")
            raise ReconciliationError(e) from e

    async def required_scopes(self, application: Application) -> set[str]:
        """Scopes the application's linked APIs need. Missing APIs need nothing."""
        per_api = await gather_or_raise(self._scopes_for_api(api) for api in application.apis)
        return set().union(*per_api)

    async def _scopes_for_api(self, api: Api) -> set[str]:
        try:
            detail = await self.catalogue.find_api_by_id(api.id)
        except CatalogueError as e:
            if not e.is_api_not_found:
                raise
            logger.info(f"API {api.id} no longer in the catalogue, ignoring")
            return set()
        return detail.required_scope_names(api)

    async def credential_scopes(
        self,
        application: Application,
        credentials: list[Credential] | None = None,
    ) -> list[CredentialScopes]:
        """Snapshot of remote scopes, see snapshot_scopes."""
        return await snapshot_scopes(self.idms, self.topology, application, credentials)

    def allowed_scopes(
        self,
        environment: Environment,
        required: set[str],
        access_requests: list[AccessRequest],
    ) -> set[str]:
        if not environment.is_production_like:
            return set(required)

        approved = set()
        for request in access_requests:
            if request.is_approved and request.environment_id == environment.id:
                approved |= request.scope_names()
        return required & approved

    async def _grant(self, application: Application, environment: Environment, client_id: str, scope: str) -> None:
        try:
            await self.idms.add_client_scope(environment, client_id, scope)
        except IdmsError as e:
            self._audit("scope_granted", application, environment, client_id, scope, error=str(e))
            raise
        self._audit("scope_granted", application, environment, client_id, scope, result="ok")

    async def _revoke(self, application: Application, environment: Environment, client_id: str, scope: str) -> None:
        try:
            await self.idms.delete_client_scope(environment, client_id, scope)
        except IdmsError as e:
            if not e.is_client_not_found:
                self._audit("scope_revoked", application, environment, client_id, scope, error=str(e))
                raise
            self._audit("scope_revoked", application, environment, client_id, scope, result="client-not-found")
            return
        self._audit("scope_revoked", application, environment, client_id, scope, result="ok")

    def _audit(
        self,
        event: str,
        application: Application,
        environment: Environment,
        client_id: str,
        scope: str,
        result: str | None = None,
        error: str | None = None,
    ) -> None:
        if self.audit is None:
            return
        self.audit.log(
            event,
            environment=environment.id,
            client_id=client_id,
            scope=scope,
            application_id=application.id,
            result=result,
            error=error,
        )
