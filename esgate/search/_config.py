from __future__ import annotations

from enum import Enum
from typing import Any

from esgate.core import DataModel, YamlLoader


class TierAccessLevel(str, Enum):
    PRIVATE = "private"
    """Records are filtered by the caller's authorized resources."""

    REGULAR = "regular"
    """Counts below the access limit are hidden from unauthorized callers."""

    LIBRE = "libre"
    """Everything is visible."""


class IndexDescriptor(DataModel):
    """Index descriptor."""

    index: str
    """Elasticsearch index name."""

    type: str
    """Logical document type served from the index."""


class TierAccessConfig(DataModel):
    """Tier access config."""

    level: TierAccessLevel = TierAccessLevel.PRIVATE
    """Tier access level."""

    limit: int = 1000
    """Minimum count disclosed to unauthorized callers."""


class SearchConfig(DataModel):
    """Search config."""

    host: str | list[str] = "http://localhost:9200"
    """Elasticsearch hosts."""

    indices: list[IndexDescriptor] = []
    """Indices served by the client."""

    config_index: str | None = None
    """Index holding array field declarations, one document per index."""

    tier_access: TierAccessConfig = TierAccessConfig()
    """Tier access config."""

    api_key: str | list[str] | None = None
    """Elasticsearch api key."""

    basic_auth: str | list[str] | None = None
    """Elasticsearch basic auth."""

    verify_certs: bool | None = None
    """Elasticsearch verify certs."""

    ca_certs: str | None = None
    """Elasticsearch ca certs."""

    request_timeout: float | None = None
    """Elasticsearch request timeout in seconds."""

    nparams: dict[str, Any] = dict()
    """Native parameters to Elasticsearch client."""

    @classmethod
    def load(cls, path: str) -> SearchConfig:
        return cls.from_dict(YamlLoader.load(path))
