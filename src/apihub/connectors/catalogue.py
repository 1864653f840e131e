"""Integration catalogue connector: API definitions and their scopes."""

import logging
from dataclasses import dataclass
from typing import Protocol

import httpx

from apihub.errors import CatalogueError
from apihub.models import ApiDetail

logger = logging.getLogger(__name__)


class CatalogueConnector(Protocol):
    """Protocol for catalogue connectors."""

    async def find_api_by_id(self, api_id: str) -> ApiDetail:
        ...


@dataclass
class CatalogueConfig:
    base_url: str
    auth_token: str | None = None
    timeout: float = 30.0


class HttpCatalogueConnector:
    """Reads API details from the integration catalogue over HTTP."""

    def __init__(self, config: CatalogueConfig, transport: httpx.AsyncBaseTransport | None = None):
        self.config = config
        self._transport = transport
        self._client = None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            headers = {"Accept": "application/json"}
            if self.config.auth_token:
                headers["Authorization"] = self.config.auth_token
            self._client = httpx.AsyncClient(
                base_url=self.config.base_url.rstrip("/"),
                timeout=self.config.timeout,
                headers=headers,
                transport=self._transport,
            )
        return self._client

    async def close(self):
        if self._client:
            await self._client.aclose()
            self._client = None

    async def find_api_by_id(self, api_id: str) -> ApiDetail:
        try:
            response = await self._get_client().get(f"/integration-catalogue/integrations/{api_id}")
        except httpx.HTTPError as exc:
            raise CatalogueError.call_error(exc) from exc

        if response.status_code == 404:
            raise CatalogueError.api_not_found(api_id)
        if not response.is_success:
            raise CatalogueError.unexpected_response(response.status_code)

        try:
            return ApiDetail.model_validate(response.json())
        except ValueError as exc:
            logger.warning(f"Unreadable catalogue response for API {api_id}: {exc}")
            raise CatalogueError.unexpected_response(response.status_code) from exc
