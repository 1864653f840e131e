"""Credential enrichers.

An enricher builder makes the identity service call(s) for one change and
returns a pure function that applies the outcome to an Application:

    enricher = await credential_creating_enricher(env, application, idms)
    application = enricher(application)

Builders raise IdmsError on failure. "Client not found" is tolerated where
the desired end state already holds (deletes, revokes) and recorded as an
application issue where it means the local record is stale (fetches).
"""

import asyncio
import logging
from datetime import datetime
from typing import Any, Awaitable, Callable, Iterable

from apihub.connectors.idms import IdmsConnector
from apihub.environments import Environment
from apihub.errors import CredentialNotFoundError, IdmsError
from apihub.models import (
    Application,
    ClientDescriptor,
    ClientResponse,
    Credential,
    Issues,
    Scope,
    ScopeStatus,
    utcnow,
)

logger = logging.getLogger(__name__)

ApplicationEnricher = Callable[[Application], Application]
EnricherProvider = Callable[[Application, IdmsConnector], Awaitable[ApplicationEnricher]]


async def gather_or_raise(aws: Iterable[Awaitable[Any]]) -> list[Any]:
    """Await everything concurrently, then raise the first error in dispatch order."""
    results = await asyncio.gather(*aws, return_exceptions=True)
    for result in results:
        if isinstance(result, BaseException):
            raise result
    return results


def _no_op(application: Application) -> Application:
    return application


async def process(application: Application, enrichers: Iterable[Awaitable[ApplicationEnricher]]) -> Application:
    """Apply enrichers left to right once every remote call has succeeded."""
    for enricher in await gather_or_raise(enrichers):
        application = enricher(application)
    return application


async def process_all(
    applications: list[Application],
    provider: EnricherProvider,
    idms: IdmsConnector,
) -> list[Application]:
    """Enrich each application with the enricher `provider` builds for it."""
    enrichers = await gather_or_raise(provider(application, idms) for application in applications)
    return [enricher(application) for application, enricher in zip(applications, enrichers)]


async def credential_creating_enricher(
    environment: Environment,
    original: Application,
    idms: IdmsConnector,
    now: datetime | None = None,
    hidden_primary: bool = True,
) -> ApplicationEnricher:
    """Create a client for the application and add it as a credential.

    Production-like environments get a hidden credential unless
    `hidden_primary` is False.
    """
    now = now or utcnow()
    response = await idms.create_client(environment, ClientDescriptor.for_application(original))

    if environment.is_production_like and hidden_primary:
        credential = response.as_new_hidden_credential(now, environment)
    else:
        credential = response.as_new_credential(now, environment)

    return lambda application: application.add_credential(environment, credential)


async def credential_deleting_enricher(
    environment: Environment,
    original: Application,
    idms: IdmsConnector,
    client_id: str,
) -> ApplicationEnricher:
    if not any(c.client_id == client_id for c in original.credentials_for(environment)):
        raise CredentialNotFoundError.for_client_id(client_id)

    try:
        await idms.delete_client(environment, client_id)
    except IdmsError as e:
        if not e.is_client_not_found:
            raise
        logger.info(f"Client {client_id} already gone from {environment.id}")

    return lambda application: application.remove_credential(environment, client_id)


async def credential_secret_enricher(
    environment: Environment,
    original: Application,
    idms: IdmsConnector,
    credential: Credential | None = None,
) -> ApplicationEnricher:
    """Fetch current secrets; hidden credentials stay hidden."""
    if credential is not None:
        credentials = [credential]
    else:
        credentials = [c for c in original.credentials_for(environment) if not c.is_hidden]

    async def fetch(client_id: str) -> ClientResponse | str:
        try:
            return await idms.fetch_client(environment, client_id)
        except IdmsError as e:
            if not e.is_client_not_found:
                raise
            return Issues.credential_not_found(environment, e)

    outcomes = await gather_or_raise(fetch(c.client_id) for c in credentials)

    def enrich(application: Application) -> Application:
        for outcome in outcomes:
            if isinstance(outcome, str):
                application = application.add_issue(outcome)
            else:
                application = application.update_credential_secret(environment, outcome.client_id, outcome.secret)
        return application

    return enrich


async def scope_enricher(
    environment: Environment,
    original: Application,
    idms: IdmsConnector,
) -> ApplicationEnricher:
    """Record the master credential's scopes as the environment's scopes.

    Locally pending scopes are kept; the identity service has not heard of
    them yet.
    """
    master = original.master_credential(environment)
    if master is None:
        return _no_op

    try:
        client_scopes = await idms.fetch_client_scopes(environment, master.client_id)
    except IdmsError as e:
        if not e.is_client_not_found:
            raise
        issue = Issues.scopes_not_found(environment, e)
        return lambda application: application.add_issue(issue)

    remote = [s.client_scope_id for s in client_scopes]

    def enrich(application: Application) -> Application:
        pending = [
            s for s in application.scopes_for(environment)
            if s.status == ScopeStatus.PENDING and s.name not in remote
        ]
        return application.set_scopes(environment, [Scope(name=name) for name in remote] + pending)

    return enrich


async def scope_adding_enricher(
    environment: Environment,
    original: Application,
    idms: IdmsConnector,
    scope_name: str,
) -> ApplicationEnricher:
    """Grant a scope to every credential in the environment."""
    await gather_or_raise(
        idms.add_client_scope(environment, c.client_id, scope_name)
        for c in original.credentials_for(environment)
    )
    return lambda application: application.add_scope(environment, scope_name)


async def scope_removing_enricher(
    environment: Environment,
    original: Application,
    idms: IdmsConnector,
    scope_name: str,
    client_id: str | None = None,
) -> ApplicationEnricher:
    """Revoke a scope from the environment's credentials, or just `client_id`'s.

    The recorded scope is only dropped when the master credential lost it.
    """
    async def revoke(target: str) -> None:
        try:
            await idms.delete_client_scope(environment, target, scope_name)
        except IdmsError as e:
            if not e.is_client_not_found:
                raise

    await gather_or_raise(
        revoke(c.client_id)
        for c in original.credentials_for(environment)
        if client_id is None or c.client_id == client_id
    )

    def enrich(application: Application) -> Application:
        if client_id is not None:
            master = application.master_credential(environment)
            if master is None or master.client_id != client_id:
                return application
        return application.remove_scope(environment, scope_name)

    return enrich
