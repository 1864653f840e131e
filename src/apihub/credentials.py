"""Credential lifecycle for applications: add, delete, grant access.

Works on in-memory Application values; storing the returned application is
the caller's job.
"""

import logging
from datetime import datetime
from typing import Any, Callable

from apihub.audit import AuditLogger
from apihub.connectors.idms import IdmsConnector
from apihub.enrichers import credential_deleting_enricher, gather_or_raise
from apihub.environments import Environment, EnvironmentTopology
from apihub.errors import CredentialLimitError, CredentialNotFoundError, IdmsError, ScopeCopyError
from apihub.models import (
    AccessRequest,
    Application,
    ClientDescriptor,
    Credential,
    CredentialScopes,
    utcnow,
)
from apihub.reconciliation import snapshot_scopes

logger = logging.getLogger(__name__)

MAX_CREDENTIALS_PER_ENVIRONMENT = 5


class ApplicationsCredentialsService:
    """Issues and retires an application's credentials."""

    def __init__(
        self,
        idms: IdmsConnector,
        topology: EnvironmentTopology,
        clock: Callable[[], datetime] = utcnow,
        audit: AuditLogger | None = None,
    ):
        self.idms = idms
        self.topology = topology
        self.clock = clock
        self.audit = audit

    async def add_credential(
        self,
        application: Application,
        environment: Environment | str,
    ) -> tuple[Application, Credential]:
        """Issue a credential the user can see.

        A hidden master credential is revealed by rotating its secret instead
        of creating another client. If a new client's scopes cannot be copied,
        ScopeCopyError carries the application that already records it.
        """
        environment = self._environment(environment)
        existing = application.credentials_for(environment)
        if len(existing) >= MAX_CREDENTIALS_PER_ENVIRONMENT:
            raise CredentialLimitError.too_many(application.id, environment.id, MAX_CREDENTIALS_PER_ENVIRONMENT)

        now = self.clock()
        master = application.master_credential(environment)

        if master is not None and master.is_hidden:
            secret = await self.idms.new_secret(environment, master.client_id)
            credential = master.model_copy(update={"created": now}).with_secret(secret.secret)
            updated = application.replace_credential(environment, credential).touch(now)
            self._audit("credential_revealed", updated, credential, params={"_client_secret": credential.client_secret})
            logger.info(f"Revealed hidden credential {credential.client_id} in {environment.id}")
            return updated, credential

        response = await self.idms.create_client(environment, ClientDescriptor.for_application(application))
        credential = response.as_new_credential(now, environment)
        updated = application.add_credential(environment, credential).touch(now)

        # new clients start with the scopes already recorded for the environment
        scope_names = [scope.name for scope in application.scopes_for(environment)]
        params = {"scopes": scope_names, "_client_secret": credential.client_secret}
        try:
            await gather_or_raise(
                self.idms.add_client_scope(environment, credential.client_id, name)
                for name in scope_names
            )
        except IdmsError as e:
            self._audit("credential_added", updated, credential, params=params, error=str(e))
            logger.warning(f"Copying scopes to {credential.client_id} in {environment.id} failed: {e}")
            raise ScopeCopyError(updated, credential, e) from e

        self._audit("credential_added", updated, credential, params=params)
        logger.info(f"Added credential {credential.client_id} in {environment.id}")
        return updated, credential

    async def delete_credential(
        self,
        application: Application,
        environment: Environment | str,
        client_id: str,
    ) -> Application:
        environment = self._environment(environment)
        credentials = application.credentials_for(environment)

        credential = next((c for c in credentials if c.client_id == client_id), None)
        if credential is None:
            raise CredentialNotFoundError.for_client_id(client_id)
        if len(credentials) <= 1:
            raise CredentialLimitError.last_credential(application.id, environment.id)

        enricher = await credential_deleting_enricher(environment, application, self.idms, client_id)
        updated = enricher(application).touch(self.clock())
        self._audit("credential_deleted", updated, credential, params={"remaining": len(credentials) - 1})
        return updated

    async def fetch_all_scopes(self, application: Application) -> list[CredentialScopes]:
        return await snapshot_scopes(self.idms, self.topology, application)

    async def grant_access(self, application: Application, access_request: AccessRequest) -> None:
        """Grant an approved access request's scopes to every credential it covers."""
        if not access_request.is_approved:
            raise ValueError(f"Access request {access_request.id} is {access_request.status.value}, not APPROVED")

        environment = self.topology.by_id(access_request.environment_id)
        scopes = sorted(access_request.scope_names())
        await gather_or_raise(
            self.idms.add_client_scope(environment, credential.client_id, scope)
            for credential in application.credentials_for(environment)
            for scope in scopes
        )
        logger.info(f"Granted {len(scopes)} scopes in {environment.id} to application {application.id}")

    def _environment(self, environment: Environment | str) -> Environment:
        if isinstance(environment, str):
            return self.topology.by_id(environment)
        return environment

    def _audit(
        self,
        event: str,
        application: Application,
        credential: Credential,
        params: dict[str, Any] | None = None,
        error: str | None = None,
    ) -> None:
        if self.audit is None:
            return
        self.audit.log(
            event,
            environment=credential.environment_id,
            client_id=credential.client_id,
            application_id=application.id,
            params=params,
            result=None if error else "ok",
            error=error,
        )
