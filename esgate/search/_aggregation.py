from __future__ import annotations

import logging
import math
from typing import Any, Awaitable, Protocol

from esgate.core.exceptions import BadRequestError
from esgate.ql import Expression, QueryProcessor

from ._converter import FilterConverter
from ._helper import Helper
from ._models import (
    MAX_BUCKETS,
    TEXT_AGG_SIZE,
    IndexMetadata,
    NumericBucket,
    TextBucket,
)

logger = logging.getLogger(__name__)


class QueryExecutor(Protocol):
    def __call__(
        self,
        index: str,
        type: str,
        operation: str = ...,
        **args: Any,
    ) -> Awaitable[dict[str, Any]]: ...


class AggregationEngine:
    """Numeric histogram and text bucket aggregations.

    Fields inside a nested scope are aggregated within ``nested``
    aggregations and counted back on the root documents with
    ``reverse_nested``, so every count is a document count.
    """

    executor: QueryExecutor

    def __init__(self, executor: QueryExecutor) -> None:
        self.executor = executor

    async def numeric_aggregation(
        self,
        metadata: IndexMetadata,
        field: str,
        range_start: float | None = None,
        range_end: float | None = None,
        range_step: float | None = None,
        bin_count: int | None = None,
        filter: Expression | None = None,
        filter_self: bool = True,
        default_auth_filter: Expression | None = None,
    ) -> list[NumericBucket]:
        operation = "numeric_aggregation"
        metadata.validate_fields([field], operation=operation)
        self._validate_binning(
            field, range_start, range_end, range_step, bin_count
        )
        query = self._get_query(
            metadata,
            field,
            filter,
            filter_self,
            default_auth_filter,
            operation,
        )
        paths = metadata.nested_paths(field)

        start, end = range_start, range_end
        closed = False
        if start is None or end is None:
            stats = await self._get_stats(metadata, field, query, paths)
            if not stats.get("count"):
                return []
            if start is None:
                start = stats["min"]
            if end is None:
                end = stats["max"]
                closed = True
            if start > end:
                return []

        bounds = self.get_bounds(start, end, range_step, bin_count)
        ranges: list[dict[str, Any]] = [
            {"from": lower, "to": upper} for lower, upper in bounds
        ]
        if closed or start == end:
            # observed maximum is counted in the last bucket
            ranges[-1]["to"] = math.nextafter(end, math.inf)
        agg = {"range": {"field": field, "ranges": ranges}}
        resp = await self.executor(
            metadata.index,
            metadata.type,
            operation,
            size=0,
            query=query,
            aggs=self._scope_agg(paths, "numeric_range", agg),
        )
        result = self._unscope_agg(
            resp["aggregations"], paths, "numeric_range"
        )
        buckets = []
        for (lower, upper), bucket in zip(bounds, result["buckets"]):
            buckets.append(
                NumericBucket(
                    lower=lower,
                    upper=upper,
                    count=self._doc_count(bucket, paths),
                )
            )
        return buckets

    async def text_aggregation(
        self,
        metadata: IndexMetadata,
        field: str,
        filter: Expression | None = None,
        filter_self: bool = True,
        default_auth_filter: Expression | None = None,
        nested_agg_fields: list[str] | None = None,
    ) -> list[TextBucket]:
        operation = "text_aggregation"
        nested_agg_fields = nested_agg_fields or []
        metadata.validate_fields([field, *nested_agg_fields], operation)
        paths = metadata.nested_paths(field)
        if paths and nested_agg_fields:
            raise BadRequestError(
                f"Nested aggregation fields are not supported under "
                f"nested field {field!r}",
                operation=operation,
                index=metadata.index,
                type=metadata.type,
                fields=nested_agg_fields,
            )
        query = self._get_query(
            metadata,
            field,
            filter,
            filter_self,
            default_auth_filter,
            operation,
        )
        agg: dict[str, Any] = {
            "terms": {"field": field, "size": TEXT_AGG_SIZE},
        }
        sub_aggs: dict[str, Any] = {}
        for nested_field in nested_agg_fields:
            sub_aggs.update(
                self._scope_agg(
                    metadata.nested_paths(nested_field),
                    nested_field,
                    {"terms": {"field": nested_field, "size": TEXT_AGG_SIZE}},
                )
            )
        if sub_aggs:
            agg["aggs"] = sub_aggs
        resp = await self.executor(
            metadata.index,
            metadata.type,
            operation,
            size=0,
            query=query,
            aggs=self._scope_agg(paths, "text_terms", agg),
        )
        result = self._unscope_agg(
            resp["aggregations"], paths, "text_terms"
        )
        buckets = []
        for bucket in result["buckets"]:
            nested = None
            if nested_agg_fields:
                nested = {}
                for nested_field in nested_agg_fields:
                    nested_paths = metadata.nested_paths(nested_field)
                    sub_result = self._unscope_agg(
                        bucket, nested_paths, nested_field
                    )
                    nested[nested_field] = self._sort_buckets(
                        [
                            TextBucket(
                                key=self._bucket_key(b),
                                count=self._doc_count(b, nested_paths),
                            )
                            for b in sub_result["buckets"]
                        ]
                    )
            buckets.append(
                TextBucket(
                    key=self._bucket_key(bucket),
                    count=self._doc_count(bucket, paths),
                    nested=nested,
                )
            )
        return self._sort_buckets(buckets)

    async def total_count(
        self,
        metadata: IndexMetadata,
        filter: Expression | None = None,
        default_auth_filter: Expression | None = None,
    ) -> int:
        expr = QueryProcessor.and_merge(filter, default_auth_filter)
        query = FilterConverter(metadata).convert(expr, "total_count")
        resp = await self.executor(
            metadata.index,
            metadata.type,
            "total_count",
            size=0,
            query=query,
            track_total_hits=True,
        )
        return Helper.get_total(resp)

    @staticmethod
    def get_bounds(
        start: float,
        end: float,
        range_step: float | None = None,
        bin_count: int | None = None,
    ) -> list[tuple[float, float]]:
        """Bucket bounds covering [start, end], ascending.

        Raises BadRequestError when more than MAX_BUCKETS buckets would be
        needed.
        """
        if start == end:
            return [(start, end)]
        bounds = []
        if range_step is not None:
            count = max(1, math.ceil(round((end - start) / range_step, 9)))
            if count > MAX_BUCKETS:
                raise BadRequestError(
                    f"rangeStep {range_step} over [{start}, {end}] gives "
                    f"{count} buckets, more than {MAX_BUCKETS}",
                    operation="numeric_aggregation",
                )
            for i in range(count):
                lower = start + i * range_step
                upper = min(start + (i + 1) * range_step, end)
                bounds.append((lower, upper))
        elif bin_count is not None:
            width = (end - start) / bin_count
            for i in range(bin_count):
                lower = start + i * width
                upper = end if i == bin_count - 1 else start + (i + 1) * width
                bounds.append((lower, upper))
        return bounds

    def _validate_binning(
        self,
        field: str,
        range_start: float | None,
        range_end: float | None,
        range_step: float | None,
        bin_count: int | None,
    ) -> None:
        def error(message: str) -> BadRequestError:
            return BadRequestError(
                message, operation="numeric_aggregation", fields=[field]
            )

        if range_step is not None and bin_count is not None:
            raise error("Only one of rangeStep and binCount can be set")
        if range_step is None and bin_count is None:
            raise error("One of rangeStep and binCount must be set")
        if range_step is not None and range_step <= 0:
            raise error(f"rangeStep must be positive, got {range_step}")
        if bin_count is not None and bin_count <= 0:
            raise error(f"binCount must be positive, got {bin_count}")
        if bin_count is not None and bin_count > MAX_BUCKETS:
            raise error(f"binCount must be at most {MAX_BUCKETS}")
        if (
            range_start is not None
            and range_end is not None
            and range_start > range_end
        ):
            raise error(
                f"rangeStart {range_start} is greater than "
                f"rangeEnd {range_end}"
            )

    def _get_query(
        self,
        metadata: IndexMetadata,
        field: str,
        filter: Expression | None,
        filter_self: bool,
        default_auth_filter: Expression | None,
        operation: str,
    ) -> dict[str, Any] | None:
        if not filter_self:
            filter = QueryProcessor.remove_field(filter, field)
        expr = QueryProcessor.and_merge(filter, default_auth_filter)
        return FilterConverter(metadata).convert(expr, operation)

    async def _get_stats(
        self,
        metadata: IndexMetadata,
        field: str,
        query: dict[str, Any] | None,
        paths: list[str],
    ) -> dict[str, Any]:
        resp = await self.executor(
            metadata.index,
            metadata.type,
            "numeric_stats",
            size=0,
            query=query,
            aggs=self._scope_agg(
                paths,
                "numeric_stats",
                {"stats": {"field": field}},
                count_docs=False,
            ),
        )
        stats = self._unscope_agg(
            resp["aggregations"], paths, "numeric_stats"
        )
        logger.debug("Stats of %s: %s", field, stats)
        return stats

    def _scope_agg(
        self,
        paths: list[str],
        name: str,
        agg: dict[str, Any],
        count_docs: bool = True,
    ) -> dict[str, Any]:
        if not paths:
            return {name: agg}
        if count_docs:
            agg = dict(agg)
            agg["aggs"] = {
                **agg.get("aggs", {}),
                "docs": {"reverse_nested": {}},
            }
        aggs = {name: agg}
        for i, path in reversed(list(enumerate(paths))):
            aggs = {
                f"{name}_nested_{i}": {
                    "nested": {"path": path},
                    "aggs": aggs,
                }
            }
        return aggs

    def _unscope_agg(
        self, aggs: dict[str, Any], paths: list[str], name: str
    ) -> dict[str, Any]:
        for i in range(len(paths)):
            aggs = aggs[f"{name}_nested_{i}"]
        return aggs[name]

    def _doc_count(self, bucket: dict[str, Any], paths: list[str]) -> int:
        if paths:
            return bucket["docs"]["doc_count"]
        return bucket["doc_count"]

    def _bucket_key(self, bucket: dict[str, Any]) -> Any:
        return bucket.get("key_as_string", bucket["key"])

    def _sort_buckets(self, buckets: list[TextBucket]) -> list[TextBucket]:
        return sorted(buckets, key=lambda b: b.count, reverse=True)
