from __future__ import annotations

import asyncio
import json
import logging
from typing import Any

from elasticsearch import ApiError, AsyncElasticsearch, TransportError

from esgate.core.exceptions import (
    BadRequestError,
    ConfigurationError,
    NotFoundError,
)

from ._config import IndexDescriptor
from ._helper import Helper
from ._models import IndexMetadata

logger = logging.getLogger(__name__)


class IndexMetadataCache:
    """Field types and array fields per configured index.

    Filled by ``initialize`` and read-only afterwards. Re-initializing
    builds a new mapping and swaps it in whole.
    """

    _client: AsyncElasticsearch
    _indices: list[IndexDescriptor]
    _metadata: dict[str, IndexMetadata] | None

    def __init__(self, client: AsyncElasticsearch):
        self._client = client
        self._indices = []
        self._metadata = None

    @property
    def ready(self) -> bool:
        return self._metadata is not None

    @property
    def indices(self) -> list[IndexDescriptor]:
        return list(self._indices)

    async def initialize(
        self,
        indices: list[IndexDescriptor],
        config_index: str | None = None,
    ) -> None:
        if not indices:
            raise ConfigurationError(
                "Error when initializing: empty indices configuration",
                operation="initialize",
            )
        logger.info("Getting mappings from elasticsearch...")
        results = await asyncio.gather(
            *[self._get_field_types(d.index, d.type) for d in indices]
        )
        field_types = {d.index: r for d, r in zip(indices, results)}
        logger.info("Got mappings for %d indices", len(field_types))
        logger.debug("Field types: %s", json.dumps(field_types, indent=4))

        array_fields = await self._get_array_fields(field_types, config_index)
        metadata = {}
        for descriptor in indices:
            fields = array_fields.get(descriptor.index, [])
            for field in fields:
                if field_types[descriptor.index][field] == "object":
                    logger.warning(
                        "Array field %r of index %r is mapped as object, "
                        "elements are matched without correlation",
                        field,
                        descriptor.index,
                    )
            metadata[descriptor.index] = IndexMetadata(
                index=descriptor.index,
                type=descriptor.type,
                field_types=field_types[descriptor.index],
                array_fields=frozenset(fields),
            )
        self._indices = list(indices)
        self._metadata = metadata

    async def _get_field_types(self, index: str, type: str) -> dict[str, str]:
        err_msg = f'Error getting mapping from index "{index}"'
        try:
            resp = await self._client.indices.get_mapping(index=index)
        except (ApiError, TransportError) as e:
            logger.error("%s: %s", err_msg, e)
            raise ConfigurationError(
                f"{err_msg}: {e}",
                operation="get_mapping",
                index=index,
                type=type,
            ) from e
        try:
            body = Helper.get_body(resp)
            mappings = next(iter(body.values()))["mappings"]
            if "properties" not in mappings and type in mappings:
                mappings = mappings[type]
            properties = mappings["properties"]
        except (StopIteration, KeyError, TypeError, AttributeError) as e:
            raise ConfigurationError(
                f"{err_msg}: unexpected mapping format",
                operation="get_mapping",
                index=index,
                type=type,
            ) from e
        field_types: dict[str, str] = {}
        self._flatten_properties(properties, "", field_types)
        return field_types

    def _flatten_properties(
        self, properties: dict[str, Any], prefix: str, result: dict[str, str]
    ) -> None:
        for name, prop in properties.items():
            path = f"{prefix}{name}"
            if "properties" in prop:
                result[path] = prop.get("type", "object")
                self._flatten_properties(
                    prop["properties"], f"{path}.", result
                )
            else:
                result[path] = prop.get("type", "object")

    async def _get_array_fields(
        self,
        field_types: dict[str, dict[str, str]],
        config_index: str | None,
    ) -> dict[str, list[str]]:
        if config_index is None:
            logger.info("No array fields from config index")
            return {}
        logger.info(
            'Getting array fields from config index "%s"...', config_index
        )
        try:
            resp = await self._client.search(
                index=config_index,
                query={"ids": {"values": list(field_types.keys())}},
                size=len(field_types),
            )
        except (ApiError, TransportError) as e:
            raise ConfigurationError(
                f'Error reading array fields from "{config_index}": {e}',
                operation="get_array_fields",
                index=config_index,
            ) from e
        array_fields: dict[str, list[str]] = {}
        for doc in Helper.get_body(resp)["hits"]["hits"]:
            index = doc["_id"]
            if index not in field_types:
                logger.error(
                    'Wrong array entry from config index: index "%s" '
                    "not found, skipped",
                    index,
                )
                continue
            for field in doc.get("_source", {}).get("array") or []:
                if field not in field_types[index]:
                    logger.warning(
                        'Wrong array entry from config index: field "%s" '
                        'not found in index "%s", skipped',
                        field,
                        index,
                    )
                    continue
                array_fields.setdefault(index, []).append(field)
        logger.info(
            "Got array fields from config index: %s",
            json.dumps(array_fields),
        )
        return array_fields

    def _get_metadata(self) -> dict[str, IndexMetadata]:
        if self._metadata is None:
            raise ConfigurationError("Index metadata is not initialized")
        return self._metadata

    def metadata_of(self, index: str) -> IndexMetadata:
        metadata = self._get_metadata()
        if index not in metadata:
            raise NotFoundError(f'Index "{index}" not found', index=index)
        return metadata[index]

    def fields_of(self, index: str) -> dict[str, str]:
        return dict(self.metadata_of(index).field_types)

    def is_array_field(self, index: str, field: str) -> bool:
        metadata = self._get_metadata().get(index)
        return metadata is not None and metadata.is_array_field(field)

    def index_for_type(self, type: str) -> str:
        for descriptor in self._indices:
            if descriptor.type == type:
                return descriptor.index
        raise BadRequestError(f'Invalid es type: "{type}"', type=type)
