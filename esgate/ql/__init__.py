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
    OrderByTerm,
    Range,
)
from ._parser import FilterParser, SortParser
from ._query_processor import QueryProcessor

__all__ = [
    "And",
    "Comparison",
    "ComparisonOp",
    "Exists",
    "Expression",
    "FilterParser",
    "Not",
    "Or",
    "OrderBy",
    "OrderByDirection",
    "OrderByTerm",
    "QueryProcessor",
    "Range",
    "SortParser",
]
