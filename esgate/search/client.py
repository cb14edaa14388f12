"""
Elasticsearch query client.
"""

from __future__ import annotations

__all__ = ["SearchClient"]

import json
import logging
from typing import Any, AsyncIterator

from elasticsearch import ApiError, AsyncElasticsearch, TransportError

from esgate.core.exceptions import (
    BadRequestError,
    NotFoundError,
    UpstreamError,
)
from esgate.ql import Expression, OrderBy

from ._aggregation import AggregationEngine
from ._config import SearchConfig
from ._converter import FilterConverter, SortConverter
from ._helper import Helper
from ._metadata import IndexMetadataCache
from ._models import (
    SCROLL_PAGE_SIZE,
    SCROLL_TTL,
    AccessTierContext,
    FieldInfo,
    NumericBucket,
    TextBucket,
)
from ._tier_access import TierAccessGuard, build_guards

logger = logging.getLogger(__name__)

Filter = dict | Expression | None
Sort = list | dict | str | OrderBy | None


class SearchClient:
    config: SearchConfig
    metadata: IndexMetadataCache
    aggregator: AggregationEngine
    guards: dict[str, TierAccessGuard]

    _client: AsyncElasticsearch

    def __init__(
        self,
        config: SearchConfig | dict | None = None,
        client: AsyncElasticsearch | None = None,
    ):
        """Initialize.

        Args:
            config:
                Search config.
            client:
                Elasticsearch client to use instead of
                creating one from the config.
        """
        if config is None:
            config = SearchConfig()
        elif isinstance(config, dict):
            config = SearchConfig.from_dict(config)
        self.config = config
        self._client = client or AsyncElasticsearch(
            **self._get_client_params()
        )
        self.metadata = IndexMetadataCache(self.client)
        self.aggregator = AggregationEngine(self.query)
        self.guards = build_guards(config)

    @property
    def client(self) -> AsyncElasticsearch:
        return self._client

    def _get_client_params(self) -> dict:
        def _add_if_not_none(key, value):
            return {key: value} if value is not None else {}

        def _convert_if_list(value):
            return tuple(value) if isinstance(value, list) else value

        args = {
            "hosts": self.config.host,
            **_add_if_not_none(
                "api_key", _convert_if_list(self.config.api_key)
            ),
            **_add_if_not_none(
                "basic_auth", _convert_if_list(self.config.basic_auth)
            ),
            **_add_if_not_none("verify_certs", self.config.verify_certs),
            **_add_if_not_none("ca_certs", self.config.ca_certs),
            **_add_if_not_none("request_timeout", self.config.request_timeout),
        }
        if self.config.nparams is not None:
            args.update(self.config.nparams)
        return args

    async def __aenter__(self) -> SearchClient:
        await self.initialize()
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.close()

    async def initialize(self) -> None:
        """Load field metadata of all configured indices.

        Raises ConfigurationError when any index mapping cannot be read.
        """
        try:
            up = await self.client.ping()
        except (ApiError, TransportError):
            up = False
        if up:
            logger.info("Connected to elasticsearch at %s", self.config.host)
        else:
            logger.error(
                "Elasticsearch cluster at %s is down!", self.config.host
            )
        await self.metadata.initialize(
            self.config.indices, self.config.config_index
        )

    async def close(self) -> None:
        await self._client.close()

    async def query(
        self,
        index: str,
        type: str,
        operation: str = "query",
        **args: Any,
    ) -> dict[str, Any]:
        """Run a search.

        Arguments set to None are left out of the request.
        """
        args = Helper.drop_none(args)
        logger.debug(
            "[%s] query body: %s", operation, json.dumps(args, default=str)
        )
        resp = await self._execute(
            operation, index, type, self.client.search, index=index, **args
        )
        return Helper.get_body(resp)

    async def _execute(
        self,
        operation: str,
        op_index: str | None,
        op_type: str | None,
        func: Any,
        **kwargs: Any,
    ) -> Any:
        try:
            return await func(**kwargs)
        except (ApiError, TransportError) as e:
            message = getattr(e, "message", str(e))
            logger.error("[%s] error during querying: %s", operation, message)
            raise UpstreamError(
                f"{operation} failed on {op_index}/{op_type}: {message}",
                operation=operation,
                index=op_index,
                type=op_type,
            ) from e

    async def filter_data(
        self,
        index: str,
        type: str,
        filter: Filter = None,
        fields: list[str] | None = None,
        sort: Sort = None,
        offset: int = 0,
        size: int | None = None,
        operation: str = "filter_data",
    ) -> dict[str, Any]:
        metadata = self.metadata.metadata_of(index)
        metadata.validate_fields(fields, operation=operation)
        query = FilterConverter(metadata).convert(
            Helper.get_filter(filter), operation
        )
        sort_args = SortConverter(metadata).convert(
            Helper.get_sort(sort), operation
        )
        return await self.query(
            index,
            type,
            operation,
            from_=offset or None,
            size=size,
            query=query,
            sort=sort_args,
            source=fields or None,
        )

    async def get_data(
        self,
        index: str,
        type: str,
        filter: Filter = None,
        fields: list[str] | None = None,
        sort: Sort = None,
        offset: int = 0,
        size: int | None = None,
    ) -> list[dict[str, Any]]:
        if size is not None and offset + size > SCROLL_PAGE_SIZE:
            raise BadRequestError(
                f"Large query forbidden for offset + size > "
                f"{SCROLL_PAGE_SIZE}, offset = {offset} and size = {size}, "
                f"please use download endpoint for large data queries "
                f"instead.",
                operation="get_data",
                index=index,
                type=type,
            )
        resp = await self.filter_data(
            index,
            type,
            filter=filter,
            fields=fields,
            sort=sort,
            offset=offset,
            size=size,
            operation="get_data",
        )
        return Helper.get_sources(resp)

    async def get_count(
        self,
        index: str,
        type: str,
        filter: Filter = None,
    ) -> int:
        metadata = self.metadata.metadata_of(index)
        query = FilterConverter(metadata).convert(
            Helper.get_filter(filter), "get_count"
        )
        resp = await self.query(
            index,
            type,
            "get_count",
            size=0,
            query=query,
            track_total_hits=True,
        )
        return Helper.get_total(resp)

    def download_data(
        self,
        index: str,
        type: str,
        filter: Filter = None,
        fields: list[str] | None = None,
        sort: Sort = None,
    ) -> AsyncIterator[dict[str, Any]]:
        """Stream all matching documents through a scroll cursor.

        Arguments are validated before the iterator is returned.
        """
        Helper.check_index_type(index, type)
        metadata = self.metadata.metadata_of(index)
        metadata.validate_fields(fields, operation="download_data")
        query = FilterConverter(metadata).convert(
            Helper.get_filter(filter), "download_data"
        )
        sort_args = SortConverter(metadata).convert(
            Helper.get_sort(sort), "download_data"
        )
        return self.scroll_query(
            index, type, query=query, fields=fields, sort=sort_args
        )

    async def export_data(
        self,
        index: str,
        type: str,
        filter: Filter = None,
        fields: list[str] | None = None,
        sort: Sort = None,
    ) -> list[dict[str, Any]]:
        return [
            doc
            async for doc in self.download_data(
                index, type, filter=filter, fields=fields, sort=sort
            )
        ]

    async def scroll_query(
        self,
        index: str,
        type: str,
        query: dict[str, Any] | None = None,
        fields: list[str] | None = None,
        sort: list[str] | None = None,
    ) -> AsyncIterator[dict[str, Any]]:
        """Scroll through all documents matching an Elasticsearch query.

        The scroll cursor is cleared once, when scrolling ends, fails
        or the iterator is closed early.
        """
        scroll_id = None
        try:
            args = Helper.drop_none(
                dict(
                    index=index,
                    query=query,
                    scroll=SCROLL_TTL,
                    size=SCROLL_PAGE_SIZE,
                    source=fields or None,
                    sort=sort,
                )
            )
            logger.debug(
                "[scroll_query] args: %s", json.dumps(args, default=str)
            )
            resp = await self._execute(
                "scroll_query", index, type, self.client.search, **args
            )
            logger.debug("[scroll_query] created scroll")
            while True:
                body = Helper.get_body(resp)
                scroll_id = body.get("_scroll_id") or scroll_id
                hits = body["hits"]["hits"]
                logger.debug("[scroll_query] got batch size = %d", len(hits))
                if len(hits) == 0:
                    break
                for hit in hits:
                    yield hit.get("_source", {})
                resp = await self._execute(
                    "scroll_query",
                    index,
                    type,
                    self.client.scroll,
                    scroll_id=scroll_id,
                    scroll=SCROLL_TTL,
                )
            logger.debug("[scroll_query] end scrolling")
        finally:
            if scroll_id is not None:
                await self._clear_scroll(scroll_id)

    async def _clear_scroll(self, scroll_id: str) -> None:
        try:
            await self.client.clear_scroll(scroll_id=scroll_id)
            logger.debug("[scroll_query] scroll cleaned")
        except (ApiError, TransportError) as e:
            logger.error(
                "[scroll_query] error clearing scroll: %s",
                getattr(e, "message", str(e)),
            )

    async def numeric_aggregation(
        self,
        index: str,
        type: str,
        field: str,
        filter: Filter = None,
        range_start: float | None = None,
        range_end: float | None = None,
        range_step: float | None = None,
        bin_count: int | None = None,
        filter_self: bool = True,
        default_auth_filter: Filter = None,
    ) -> list[NumericBucket]:
        return await self.aggregator.numeric_aggregation(
            self.metadata.metadata_of(index),
            field,
            range_start=range_start,
            range_end=range_end,
            range_step=range_step,
            bin_count=bin_count,
            filter=Helper.get_filter(filter),
            filter_self=filter_self,
            default_auth_filter=Helper.get_filter(default_auth_filter),
        )

    async def text_aggregation(
        self,
        index: str,
        type: str,
        field: str,
        filter: Filter = None,
        filter_self: bool = True,
        default_auth_filter: Filter = None,
        nested_agg_fields: list[str] | None = None,
    ) -> list[TextBucket]:
        return await self.aggregator.text_aggregation(
            self.metadata.metadata_of(index),
            field,
            filter=Helper.get_filter(filter),
            filter_self=filter_self,
            default_auth_filter=Helper.get_filter(default_auth_filter),
            nested_agg_fields=nested_agg_fields,
        )

    async def total_count(
        self,
        index: str,
        type: str,
        filter: Filter = None,
        default_auth_filter: Filter = None,
    ) -> int:
        return await self.aggregator.total_count(
            self.metadata.metadata_of(index),
            filter=Helper.get_filter(filter),
            default_auth_filter=Helper.get_filter(default_auth_filter),
        )

    def get_es_fields(
        self, index: str | None = None
    ) -> dict[str, FieldInfo] | FieldInfo:
        """Get fields by index.

        If index is not set, return the fields of all indices keyed by
        index name.
        """
        if index is None:
            return {
                d.index: self._get_field_info(d.index)
                for d in self.metadata.indices
            }
        try:
            return self._get_field_info(index)
        except NotFoundError as e:
            raise BadRequestError(
                f'Invalid es index: "{index}"', index=index
            ) from e

    def _get_field_info(self, index: str) -> FieldInfo:
        metadata = self.metadata.metadata_of(index)
        return FieldInfo(
            index=metadata.index,
            type=metadata.type,
            fields=list(metadata.field_types.keys()),
        )

    def get_field_types(self, index: str) -> dict[str, str]:
        return self.metadata.fields_of(index)

    def get_index_by_type(self, type: str) -> str:
        return self.metadata.index_for_type(type)

    def is_array_field(self, index: str, field: str) -> bool:
        return self.metadata.is_array_field(index, field)

    def get_guard(self, type: str) -> TierAccessGuard:
        if type not in self.guards:
            raise BadRequestError(f'Invalid es type: "{type}"', type=type)
        return self.guards[type]

    def tier_context(
        self, authorized: bool = False, is_raw_data_query: bool = False
    ) -> AccessTierContext:
        return AccessTierContext(
            minimum_count_threshold=self.config.tier_access.limit,
            is_raw_data_query=is_raw_data_query,
            authorized=authorized,
        )
