from __future__ import annotations

import json
from enum import Enum
from typing import Any, Union

from esgate.core.data_model import DataModel


def _str_value(value: Any) -> Any:
    if value is None or isinstance(value, (str, int, float, bool, dict, list)):
        return json.dumps(value)
    return str(value)


class ComparisonOp(str, Enum):
    """Comparison op.

    Attributes:
        EQ: Equals.
        NEQ: Not equals.
        IN: In.
        NIN: Not in.
    """

    EQ = "="
    NEQ = "!="
    IN = "in"
    NIN = "not in"


class Comparison(DataModel):
    """Comparison expression.

    Attributes:
        field: Field path.
        op: Comparison op.
        value: Scalar value, or list of values for IN and NIN.
    """

    field: str
    op: ComparisonOp
    value: Any

    def __str__(self) -> str:
        if self.op in (ComparisonOp.IN, ComparisonOp.NIN) and isinstance(
            self.value, list
        ):
            values = ", ".join(_str_value(v) for v in self.value)
            return f"{self.field} {self.op.value} ({values})"
        return f"{self.field} {self.op.value} {_str_value(self.value)}"


class Range(DataModel):
    """Range expression.

    A missing bound leaves that side open.

    Attributes:
        field: Field path.
        lower: Lower bound.
        upper: Upper bound.
        include_lower: Whether the lower bound matches.
        include_upper: Whether the upper bound matches.
    """

    field: str
    lower: Any = None
    upper: Any = None
    include_lower: bool = True
    include_upper: bool = True

    def __str__(self) -> str:
        terms = []
        if self.lower is not None:
            op = ">=" if self.include_lower else ">"
            terms.append(f"{self.field} {op} {_str_value(self.lower)}")
        if self.upper is not None:
            op = "<=" if self.include_upper else "<"
            terms.append(f"{self.field} {op} {_str_value(self.upper)}")
        return f"({' AND '.join(terms)})" if terms else f"{self.field} range()"


class Exists(DataModel):
    """Exists expression.

    Attributes:
        field: Field path.
    """

    field: str

    def __str__(self) -> str:
        return f"exists({self.field})"


class And(DataModel):
    """And expression.

    Attributes:
        exprs: Child expressions.
    """

    exprs: list[Expression]

    def __str__(self) -> str:
        return f"({' AND '.join(str(e) for e in self.exprs)})"


class Or(DataModel):
    """Or expression.

    Attributes:
        exprs: Child expressions.
    """

    exprs: list[Expression]

    def __str__(self) -> str:
        return f"({' OR '.join(str(e) for e in self.exprs)})"


class Not(DataModel):
    """Not expression.

    Attributes:
        expr: Expression.
    """

    expr: Expression

    def __str__(self) -> str:
        return f"NOT {self.expr}"


class OrderBy(DataModel):
    """Order by.

    Attributes:
        terms: Order by terms.
    """

    terms: list[OrderByTerm] = []

    def add_field(
        self,
        field: str,
        direction: OrderByDirection | None = None,
    ) -> OrderBy:
        self.terms.append(OrderByTerm(field=field, direction=direction))
        return self

    def __str__(self) -> str:
        return ", ".join([str(t) for t in self.terms])


class OrderByTerm(DataModel):
    """Order by term.

    Attributes:
        field: Order by field.
        direction: Order by direction.
    """

    field: str
    direction: OrderByDirection | None = None

    def __str__(self) -> str:
        str = self.field
        if self.direction:
            str = f"{str} {self.direction.value}"
        return str


class OrderByDirection(str, Enum):
    """Order by direction.

    Attributes:
        ASC: Ascending.
        DESC: Descending.
    """

    ASC = "asc"
    DESC = "desc"


Expression = Union[Comparison, Range, Exists, And, Or, Not]

And.model_rebuild()
Or.model_rebuild()
Not.model_rebuild()
OrderBy.model_rebuild()
