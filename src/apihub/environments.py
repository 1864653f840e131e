"""Environment topology: the deployment environments and how they promote.

The topology is built once at start-up and never changes afterwards:
- environments are ranked 1..N
- exactly one environment is production, and it does not promote
- promote_to references are ids, resolved through an id index
- every rule is checked before the topology exists; there is no partial topology
"""

import logging
import re
from typing import Any, Iterable

from pydantic import AnyUrl, BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from apihub.errors import EnvironmentNotFoundError, TopologyError, TopologyRule

logger = logging.getLogger(__name__)

URL_SAFE_ID = re.compile(r"[A-Za-z0-9\-_.~]+")

_url_adapter = TypeAdapter(AnyUrl)


class Environment(BaseModel):
    """One deployment target of the API gateway."""
    model_config = ConfigDict(frozen=True)

    id: str
    name: str = ""
    rank: int
    is_production_like: bool = False
    base_url: str = Field(description="Identity service base URL for this environment")
    client_id: str = Field(repr=False)
    secret: str = Field(repr=False)
    use_proxy: bool = False
    api_key: str | None = Field(default=None, repr=False)
    promote_to: str | None = Field(default=None, description="Id of the environment this one promotes to")
    external_name: str = Field(default="", description="Name the identity service knows this environment by")
    used: bool = True

    def shareable(self) -> dict[str, Any]:
        """Environment details safe to display (no credentials)."""
        return self.model_dump(exclude={"client_id", "secret", "api_key"})


class EnvironmentTopology:
    """Validated, immutable set of environments.

    Raises TopologyError naming the first rule the environments break.
    """

    def __init__(
        self,
        environments: Iterable[Environment],
        production: str,
        deploy_to: str | None = None,
        validate_in: str | None = None,
    ):
        configured = list(environments)
        deploy_to = deploy_to or production
        validate_in = validate_in or production

        _validate(configured, production, deploy_to, validate_in)

        used = sorted((e for e in configured if e.used), key=lambda e: e.rank)
        self._environments: tuple[Environment, ...] = tuple(used)
        self._by_id: dict[str, Environment] = {e.id: e for e in used}
        self._production_id = production
        self._deploy_to_id = deploy_to
        self._validate_in_id = validate_in

        logger.debug(
            f"Environment topology: {[e.id for e in used]} production={production}"
        )

    def environments(self) -> list[Environment]:
        """Environments ordered by rank."""
        return list(self._environments)

    def by_id(self, environment_id: str) -> Environment:
        try:
            return self._by_id[environment_id]
        except KeyError:
            raise EnvironmentNotFoundError(environment_id) from None

    def find(self, environment_id: str) -> Environment | None:
        return self._by_id.get(environment_id)

    def __contains__(self, environment_id: object) -> bool:
        return environment_id in self._by_id

    def __iter__(self):
        return iter(self._environments)

    def __len__(self) -> int:
        return len(self._environments)

    def production(self) -> Environment:
        return self._by_id[self._production_id]

    def deploy_to(self) -> Environment:
        return self._by_id[self._deploy_to_id]

    def validate_in(self) -> Environment:
        return self._by_id[self._validate_in_id]

    def production_like(self) -> list[Environment]:
        return [e for e in self._environments if e.is_production_like]

    def non_production(self) -> list[Environment]:
        return [e for e in self._environments if not e.is_production_like]

    def resolve_promotion(self, environment: Environment | str) -> Environment | None:
        """The environment that `environment` promotes to, if any."""
        if isinstance(environment, str):
            environment = self.by_id(environment)
        if environment.promote_to is None:
            return None
        return self.by_id(environment.promote_to)

    def promotion_chain(self, environment: Environment | str) -> list[Environment]:
        """Every environment reached by promoting repeatedly, nearest first."""
        chain = []
        current = self.resolve_promotion(environment)
        while current is not None:
            chain.append(current)
            current = self.resolve_promotion(current)
        return chain

    def shareable(self) -> dict[str, Any]:
        """Topology summary with credentials removed."""
        return {
            "environments": [e.shareable() for e in self._environments],
            "production": self._production_id,
            "deploy_to": self._deploy_to_id,
            "validate_in": self._validate_in_id,
        }


def _validate(
    environments: list[Environment],
    production: str,
    deploy_to: str,
    validate_in: str,
) -> None:
    used = [e for e in environments if e.used]

    _validate_ranks(environments)
    _validate_ids(environments)
    _validate_production(used, production)
    _validate_target(used, deploy_to, TopologyRule.UNKNOWN_DEPLOY_TO, "deploy_to")
    _validate_target(used, validate_in, TopologyRule.UNKNOWN_VALIDATE_IN, "validate_in")
    _validate_promote_tos(used)
    _validate_base_urls(environments)
    _validate_api_keys(environments)


def _validate_ranks(environments: list[Environment]) -> None:
    # contiguous, starting at 1, one rank per environment
    actual = [e.rank for e in environments]
    if sorted(actual) != list(range(1, len(environments) + 1)):
        raise TopologyError(TopologyRule.RANKS_INVALID, "Environments must have valid ranks")


def _validate_ids(environments: list[Environment]) -> None:
    ids = [e.id for e in environments]
    if len(set(ids)) != len(ids):
        raise TopologyError(TopologyRule.IDS_NOT_UNIQUE, "Environment ids must be unique")
    if any(not URL_SAFE_ID.fullmatch(environment_id) for environment_id in ids):
        raise TopologyError(
            TopologyRule.IDS_NOT_URL_SAFE,
            "Environment ids must only contain URL unreserved characters",
        )


def _validate_production(used: list[Environment], production: str) -> None:
    environment = next((e for e in used if e.id == production), None)
    if environment is None:
        raise TopologyError(
            TopologyRule.UNKNOWN_PRODUCTION,
            f"production id {production} must match one of the configured environments",
        )
    if environment.promote_to is not None:
        promotions = {e.id: e.promote_to for e in used}
        if _promotes_back_to(production, promotions):
            raise TopologyError(
                TopologyRule.PROMOTION_CYCLE,
                f"environment {production} cyclically promotes to itself",
            )
        raise TopologyError(
            TopologyRule.PRODUCTION_PROMOTES,
            "production environment cannot promote to anywhere",
        )
    if not environment.is_production_like:
        raise TopologyError(
            TopologyRule.PRODUCTION_NOT_PRODUCTION_LIKE,
            "production environment must be production-like",
        )


def _validate_target(used: list[Environment], target: str, rule: TopologyRule, label: str) -> None:
    if not any(e.id == target for e in used):
        raise TopologyError(rule, f"{label} id {target} must match one of the configured environments")


def _validate_promote_tos(used: list[Environment]) -> None:
    ids = {e.id for e in used}
    promote_tos = [e.promote_to for e in used if e.promote_to is not None]

    if len(set(promote_tos)) != len(promote_tos):
        raise TopologyError(TopologyRule.PROMOTE_TO_NOT_UNIQUE, "promote_to ids must be unique")

    if not set(promote_tos) <= ids:
        raise TopologyError(TopologyRule.UNKNOWN_PROMOTE_TO, "promote_to ids must be real")

    promotions = {e.id: e.promote_to for e in used}
    for environment in used:
        if _promotes_back_to(environment.id, promotions):
            raise TopologyError(
                TopologyRule.PROMOTION_CYCLE,
                f"environment {environment.id} cyclically promotes to itself",
            )


def _promotes_back_to(start: str, promotions: dict[str, str | None]) -> bool:
    """Walk the promotion chain from `start`; True if it loops."""
    visited = {start}
    target = promotions.get(start)
    while target is not None:
        if target in visited:
            return True
        visited.add(target)
        target = promotions.get(target)
    return False


def _validate_base_urls(environments: list[Environment]) -> None:
    for environment in environments:
        try:
            _url_adapter.validate_python(environment.base_url)
        except ValidationError:
            raise TopologyError(
                TopologyRule.INVALID_BASE_URL,
                f"environment {environment.id} must have a valid base_url",
            ) from None


def _validate_api_keys(environments: list[Environment]) -> None:
    if any(e.use_proxy and not e.api_key for e in environments):
        raise TopologyError(
            TopologyRule.PROXY_WITHOUT_API_KEY,
            "environments with use_proxy=true must have an api_key",
        )
