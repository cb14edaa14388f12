from __future__ import annotations

import copy
from typing import Any, Callable

from esgate.core.exceptions import BadRequestError

from ._models import (
    And,
    Comparison,
    ComparisonOp,
    Exists,
    Expression,
    Not,
    Or,
    Range,
)

ScopeResolver = Callable[[str], list[str]]


class QueryProcessor:
    """Filter tree utilities and in-memory evaluation.

    Evaluation follows the engine's matching rules: a leaf on a
    multi-valued field matches when any single value satisfies it, and
    positive leaves combined by AND inside the same nested scope must hold
    on the same element.
    """

    @staticmethod
    def extract_filter_fields(expr: Expression | None) -> list[str]:
        fields: list[str] = []

        def extract_field(expr: Expression | None):
            if isinstance(expr, (Comparison, Range, Exists)):
                if expr.field not in fields:
                    fields.append(expr.field)
            if isinstance(expr, (And, Or)):
                for e in expr.exprs:
                    extract_field(e)
            if isinstance(expr, Not):
                extract_field(expr.expr)

        extract_field(expr)
        return fields

    @staticmethod
    def remove_field(
        expr: Expression | None, field: str
    ) -> Expression | None:
        """Drop every leaf on ``field``.

        Composite nodes left without children disappear too.
        """
        if expr is None:
            return None
        if isinstance(expr, (Comparison, Range, Exists)):
            return None if expr.field == field else expr
        if isinstance(expr, Not):
            inner = QueryProcessor.remove_field(expr.expr, field)
            return None if inner is None else Not(expr=inner)
        if isinstance(expr, (And, Or)):
            exprs = [QueryProcessor.remove_field(e, field) for e in expr.exprs]
            exprs = [e for e in exprs if e is not None]
            if not exprs:
                return None
            if len(exprs) == 1:
                return exprs[0]
            return type(expr)(exprs=exprs)
        raise BadRequestError(f"Expression {expr!r} not supported")

    @staticmethod
    def and_merge(*exprs: Expression | None) -> Expression | None:
        merged: list[Expression] = []
        for expr in exprs:
            if expr is None:
                continue
            if isinstance(expr, And):
                merged.extend(expr.exprs)
            else:
                merged.append(expr)
        if not merged:
            return None
        if len(merged) == 1:
            return merged[0]
        return And(exprs=merged)

    @staticmethod
    def is_element_leaf(expr: Expression) -> bool:
        if isinstance(expr, (Range, Exists)):
            return True
        return isinstance(expr, Comparison) and expr.op in (
            ComparisonOp.EQ,
            ComparisonOp.IN,
        )

    @staticmethod
    def filter_items(
        items: list[Any],
        where: Expression | None = None,
        scope_resolver: ScopeResolver | None = None,
    ) -> list[Any]:
        result = []
        for item in items:
            if where is None or QueryProcessor.eval_expr(
                item, where, scope_resolver
            ):
                result.append(item)
        return result

    @staticmethod
    def eval_expr(
        item: Any,
        expr: Expression,
        scope_resolver: ScopeResolver | None = None,
        entered: tuple[str, ...] = (),
    ) -> bool:
        if isinstance(expr, Comparison):
            values = QueryProcessor.eval_field(item, expr.field)
            if expr.op == ComparisonOp.EQ:
                return expr.value in values
            if expr.op == ComparisonOp.NEQ:
                return expr.value not in values
            if not isinstance(expr.value, list):
                raise BadRequestError(
                    f"Right operand for {expr.op.value} must be a list"
                )
            hit = any(v in expr.value for v in values)
            return hit if expr.op == ComparisonOp.IN else not hit
        if isinstance(expr, Range):
            return any(
                QueryProcessor.in_range(v, expr)
                for v in QueryProcessor.eval_field(item, expr.field)
            )
        if isinstance(expr, Exists):
            return len(QueryProcessor.eval_field(item, expr.field)) > 0
        if isinstance(expr, Or):
            return any(
                QueryProcessor.eval_expr(item, e, scope_resolver, entered)
                for e in expr.exprs
            )
        if isinstance(expr, Not):
            return not QueryProcessor.eval_expr(
                item, expr.expr, scope_resolver, entered
            )
        if isinstance(expr, And):
            return QueryProcessor._eval_and(
                item, expr, scope_resolver, entered
            )
        raise BadRequestError(f"Expression {expr!r} not supported")

    @staticmethod
    def _eval_and(
        item: Any,
        expr: And,
        scope_resolver: ScopeResolver | None,
        entered: tuple[str, ...],
    ) -> bool:
        groups: dict[tuple[str, ...], list[Expression]] = {}
        for e in expr.exprs:
            scopes: tuple[str, ...] = ()
            if scope_resolver and QueryProcessor.is_element_leaf(e):
                scopes = tuple(
                    s for s in scope_resolver(e.field) if s not in entered
                )
            if not scopes:
                if not QueryProcessor.eval_expr(
                    item, e, scope_resolver, entered
                ):
                    return False
            else:
                groups.setdefault(scopes, []).append(e)
        for scopes, group in groups.items():
            inner = And(exprs=group) if len(group) > 1 else group[0]
            if not any(
                QueryProcessor.eval_expr(
                    element, inner, scope_resolver, entered + scopes[:1]
                )
                for element in QueryProcessor.scope_items(item, scopes[0])
            ):
                return False
        return True

    @staticmethod
    def scope_items(item: Any, path: str) -> list[Any]:
        """Copies of item with the list at path narrowed to one element."""
        parts = path.split(".")
        parent = item
        for part in parts[:-1]:
            if not isinstance(parent, dict):
                return []
            parent = parent.get(part)
        if not isinstance(parent, dict):
            return []
        elements = parent.get(parts[-1])
        if elements is None:
            return []
        if not isinstance(elements, list):
            elements = [elements]
        result = []
        for element in elements:
            narrowed = copy.deepcopy(item)
            target = narrowed
            for part in parts[:-1]:
                target = target[part]
            target[parts[-1]] = element
            result.append(narrowed)
        return result

    @staticmethod
    def eval_field(item: Any, field: str) -> list[Any]:
        values = [item]
        for part in field.split("."):
            next_values = []
            for value in values:
                for v in value if isinstance(value, list) else [value]:
                    if isinstance(v, dict) and part in v:
                        next_values.append(v[part])
            values = next_values
        flat: list[Any] = []
        for value in values:
            if isinstance(value, list):
                flat.extend(v for v in value if v is not None)
            elif value is not None:
                flat.append(value)
        return flat

    @staticmethod
    def in_range(value: Any, expr: Range) -> bool:
        try:
            if expr.lower is not None:
                if value < expr.lower or (
                    value == expr.lower and not expr.include_lower
                ):
                    return False
            if expr.upper is not None:
                if value > expr.upper or (
                    value == expr.upper and not expr.include_upper
                ):
                    return False
        except TypeError:
            return False
        return True
