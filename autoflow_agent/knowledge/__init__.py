"""Capability knowledge layer: the engine's node-type catalog.

Public surface:
    CapabilityCatalog  live / cached / fallback registry with copy-on-write refresh.
    CatalogSnapshot    immutable view returned by CapabilityCatalog.current().
    CapabilitySchema   per node-type descriptor.
    ParamSpec          one parameter of a node type.
"""

from autoflow_agent.knowledge.catalog import (
    HTTP_REQUEST_TYPE,
    CapabilityCatalog,
    CapabilitySchema,
    CatalogSnapshot,
    ParamSpec,
    infer_category,
    local_name,
)

__all__ = [
    "HTTP_REQUEST_TYPE",
    "CapabilityCatalog",
    "CapabilitySchema",
    "CatalogSnapshot",
    "ParamSpec",
    "infer_category",
    "local_name",
]
