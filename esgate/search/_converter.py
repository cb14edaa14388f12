from __future__ import annotations

from typing import Any

from esgate.core.exceptions import BadRequestError
from esgate.ql import (
    And,
    Comparison,
    ComparisonOp,
    Exists,
    Expression,
    Not,
    Or,
    OrderBy,
    OrderByDirection,
    QueryProcessor,
    Range,
)

from ._models import IndexMetadata


class FilterConverter:
    """Converts a filter expression into an Elasticsearch query.

    Leaves on fields inside a nested scope are wrapped in ``nested``
    queries. Positive leaves combined by AND on the same scope share one
    ``nested`` query, so they must hold on the same array element.
    """

    metadata: IndexMetadata

    def __init__(self, metadata: IndexMetadata) -> None:
        self.metadata = metadata

    def convert(
        self, expr: Expression | None, operation: str | None = None
    ) -> dict[str, Any] | None:
        if expr is None:
            return None
        self.metadata.validate_fields(
            QueryProcessor.extract_filter_fields(expr), operation=operation
        )
        return self.convert_expr(expr)

    def convert_expr(self, expr: Expression) -> dict[str, Any]:
        if isinstance(expr, And):
            return {"bool": {"must": self._convert_and(expr.exprs)}}
        if isinstance(expr, Or):
            return {
                "bool": {
                    "should": [self.convert_expr(e) for e in expr.exprs],
                    "minimum_should_match": 1,
                }
            }
        if isinstance(expr, Not):
            return {"bool": {"must_not": [self.convert_expr(expr.expr)]}}
        if isinstance(expr, Comparison) and expr.op in (
            ComparisonOp.NEQ,
            ComparisonOp.NIN,
        ):
            positive = Comparison(
                field=expr.field,
                op=(
                    ComparisonOp.EQ
                    if expr.op == ComparisonOp.NEQ
                    else ComparisonOp.IN
                ),
                value=expr.value,
            )
            return {"bool": {"must_not": [self.convert_expr(positive)]}}
        if isinstance(expr, (Comparison, Range, Exists)):
            return self._wrap_nested(
                self.metadata.nested_paths(expr.field),
                self.convert_leaf(expr),
            )
        raise BadRequestError(f"Expression {expr!r} not supported")

    def _convert_and(self, exprs: list[Expression]) -> list[dict[str, Any]]:
        clauses: list[Any] = []
        groups: dict[tuple[str, ...], list[Expression]] = {}
        for expr in exprs:
            paths: tuple[str, ...] = ()
            if QueryProcessor.is_element_leaf(expr):
                paths = tuple(self.metadata.nested_paths(expr.field))
            if not paths:
                clauses.append(self.convert_expr(expr))
                continue
            if paths not in groups:
                groups[paths] = []
                # placeholder keeps the group at its first position
                clauses.append(paths)
            groups[paths].append(expr)
        result = []
        for clause in clauses:
            if not isinstance(clause, tuple):
                result.append(clause)
                continue
            leaves = [self.convert_leaf(e) for e in groups[clause]]
            inner = (
                leaves[0] if len(leaves) == 1 else {"bool": {"must": leaves}}
            )
            result.append(self._wrap_nested(list(clause), inner))
        return result

    def convert_leaf(self, expr: Expression) -> dict[str, Any]:
        if isinstance(expr, Comparison):
            if expr.op == ComparisonOp.EQ:
                return {"term": {expr.field: expr.value}}
            if expr.op == ComparisonOp.IN:
                if not isinstance(expr.value, list):
                    raise BadRequestError(
                        f"IN expects a list of values for {expr.field!r}",
                        fields=[expr.field],
                    )
                return {"terms": {expr.field: expr.value}}
        if isinstance(expr, Range):
            bounds: dict[str, Any] = {}
            if expr.lower is not None:
                bounds["gte" if expr.include_lower else "gt"] = expr.lower
            if expr.upper is not None:
                bounds["lte" if expr.include_upper else "lt"] = expr.upper
            if not bounds:
                raise BadRequestError(
                    f"Range on {expr.field!r} has no bounds",
                    fields=[expr.field],
                )
            return {"range": {expr.field: bounds}}
        if isinstance(expr, Exists):
            return {"exists": {"field": expr.field}}
        raise BadRequestError(f"Expression {expr!r} not supported")

    def _wrap_nested(
        self, paths: list[str], query: dict[str, Any]
    ) -> dict[str, Any]:
        for path in reversed(paths):
            query = {"nested": {"path": path, "query": query}}
        return query


class SortConverter:
    """Converts an order by into ``field:direction`` tokens.

    The client sends sort tokens as a query string parameter, which takes
    strings rather than sort objects.
    """

    metadata: IndexMetadata

    def __init__(self, metadata: IndexMetadata) -> None:
        self.metadata = metadata

    def convert(
        self, order_by: OrderBy | None, operation: str | None = None
    ) -> list[str] | None:
        if order_by is None or len(order_by.terms) == 0:
            return None
        self.metadata.validate_fields(
            [term.field for term in order_by.terms], operation=operation
        )
        args: list[str] = []
        for term in order_by.terms:
            direction = (
                "desc" if term.direction == OrderByDirection.DESC else "asc"
            )
            args.append(f"{term.field}:{direction}")
        return args
