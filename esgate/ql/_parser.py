"""
Parser for filter and sort arguments as they arrive from GraphQL.

Filters are nested dictionaries keyed by an operator:

    {"AND": [{"=": {"gender": "female"}}, {">=": {"age": 20}}]}

Sorts are lists of single key dictionaries or ``field:direction`` tokens:

    [{"age": "desc"}, "name:asc"]
"""

from __future__ import annotations

from typing import Any

from esgate.core.exceptions import BadRequestError

from ._models import (
    And,
    Comparison,
    ComparisonOp,
    Exists,
    Expression,
    Not,
    Or,
    OrderBy,
    OrderByDirection,
    Range,
)

_COMPARISON_OPS = {
    "=": ComparisonOp.EQ,
    "eq": ComparisonOp.EQ,
    "!=": ComparisonOp.NEQ,
    "neq": ComparisonOp.NEQ,
    "in": ComparisonOp.IN,
    "nin": ComparisonOp.NIN,
    "not in": ComparisonOp.NIN,
}

_RANGE_OPS = {
    ">": ("lower", False),
    "gt": ("lower", False),
    ">=": ("lower", True),
    "gte": ("lower", True),
    "<": ("upper", False),
    "lt": ("upper", False),
    "<=": ("upper", True),
    "lte": ("upper", True),
}


class FilterParser:
    @staticmethod
    def parse(filter: dict | Expression | None) -> Expression | None:
        if filter is None or isinstance(
            filter, (And, Or, Not, Comparison, Range, Exists)
        ):
            return filter
        if not isinstance(filter, dict):
            raise BadRequestError(f"Filter format error: {filter!r}")
        if len(filter) == 0:
            return None
        if len(filter) != 1:
            raise BadRequestError(
                f"Filter must have exactly one operator, got {list(filter)}"
            )
        key, arg = next(iter(filter.items()))
        op = str(key).lower()
        if op in ("and", "or"):
            if not isinstance(arg, list):
                raise BadRequestError(f"{key} expects a list of filters")
            exprs = [FilterParser.parse(a) for a in arg]
            exprs = [e for e in exprs if e is not None]
            if not exprs:
                return None
            if len(exprs) == 1:
                return exprs[0]
            return And(exprs=exprs) if op == "and" else Or(exprs=exprs)
        if op == "not":
            expr = FilterParser.parse(arg)
            if expr is None:
                raise BadRequestError("NOT expects a filter")
            return Not(expr=expr)
        if op == "exists":
            if not isinstance(arg, str):
                raise BadRequestError("EXISTS expects a field name")
            return Exists(field=arg)
        field, value = FilterParser._parse_field_arg(key, arg)
        if op in _COMPARISON_OPS:
            comparison_op = _COMPARISON_OPS[op]
            if comparison_op in (ComparisonOp.IN, ComparisonOp.NIN):
                if not isinstance(value, list):
                    raise BadRequestError(
                        f"{key} expects a list of values for {field!r}"
                    )
            return Comparison(field=field, op=comparison_op, value=value)
        if op in _RANGE_OPS:
            side, inclusive = _RANGE_OPS[op]
            if side == "lower":
                return Range(field=field, lower=value, include_lower=inclusive)
            return Range(field=field, upper=value, include_upper=inclusive)
        if op == "between":
            if not isinstance(value, list) or len(value) != 2:
                raise BadRequestError(
                    f"BETWEEN expects [lower, upper], got {value!r}"
                )
            return Range(field=field, lower=value[0], upper=value[1])
        raise BadRequestError(f"Filter operator {key!r} not supported")

    @staticmethod
    def _parse_field_arg(key: str, arg: Any) -> tuple[str, Any]:
        if not isinstance(arg, dict) or len(arg) != 1:
            raise BadRequestError(
                f"{key} expects a single {{field: value}} pair, got {arg!r}"
            )
        return next(iter(arg.items()))


class SortParser:
    @staticmethod
    def parse(sort: list | dict | str | OrderBy | None) -> OrderBy | None:
        if sort is None or isinstance(sort, OrderBy):
            return sort
        if isinstance(sort, (dict, str)):
            sort = [sort]
        order_by = OrderBy()
        for item in sort:
            if isinstance(item, str):
                field, _, direction = item.partition(":")
                SortParser._add(order_by, field, direction or None)
            elif isinstance(item, dict):
                for field, direction in item.items():
                    SortParser._add(order_by, field, direction)
            else:
                raise BadRequestError(f"Sort format error: {item!r}")
        return order_by

    @staticmethod
    def _add(order_by: OrderBy, field: str, direction: Any) -> None:
        if not field:
            raise BadRequestError("Sort field must be specified")
        if direction is None:
            order_by.add_field(field)
            return
        try:
            order_by.add_field(field, OrderByDirection(str(direction).lower()))
        except ValueError as e:
            raise BadRequestError(
                f"Invalid sort direction {direction!r} for {field!r}",
                fields=[field],
            ) from e
