"""Connectors to the services apihub depends on."""

from apihub.connectors.catalogue import CatalogueConfig, CatalogueConnector, HttpCatalogueConnector
from apihub.connectors.idms import HttpIdmsConnector, IdmsConfig, IdmsConnector

__all__ = [
    "CatalogueConfig",
    "CatalogueConnector",
    "HttpCatalogueConnector",
    "HttpIdmsConnector",
    "IdmsConfig",
    "IdmsConnector",
]
