from __future__ import annotations

from esgate.core import DataModel
from esgate.core.exceptions import BadRequestError

SCROLL_PAGE_SIZE = 10000
"""Page size ceiling for bounded queries and scroll batch size."""

SCROLL_TTL = "1m"
"""Scroll cursor time to live."""

TEXT_AGG_SIZE = 10000
"""Maximum number of buckets in a text aggregation."""

MAX_BUCKETS = 65536
"""Bucket ceiling of a numeric histogram, the engine's search.max_buckets
default."""

HIDDEN_COUNT = -1
"""Reported in place of counts the caller may not see."""


class IndexMetadata(DataModel):
    """Field metadata of one index.

    Built once when the client initializes and never mutated.
    """

    index: str
    """Index name."""

    type: str
    """Document type."""

    field_types: dict[str, str]
    """Field to Elasticsearch type, sub-fields as dotted paths."""

    array_fields: frozenset[str] = frozenset()
    """Fields declared as arrays."""

    def has_field(self, field: str) -> bool:
        return field in self.field_types

    def is_array_field(self, field: str) -> bool:
        return field in self.array_fields

    def validate_fields(
        self, fields: list[str] | None, operation: str | None = None
    ) -> None:
        invalid = [f for f in fields or [] if f not in self.field_types]
        if invalid:
            names = '", "'.join(invalid)
            raise BadRequestError(
                f'Invalid fields: "{names}"',
                operation=operation,
                index=self.index,
                type=self.type,
                fields=invalid,
            )

    def nested_paths(self, field: str) -> list[str]:
        """Nested scopes enclosing field, outermost first.

        Clauses on a field inside a nested scope have to be evaluated
        against single array elements. Only the mapping decides: scalar
        arrays already match per value, and object arrays are correlated
        only when mapped ``nested``.
        """
        parts = field.split(".")
        paths = []
        for i in range(1, len(parts) + 1):
            path = ".".join(parts[:i])
            if self.field_types.get(path) == "nested":
                paths.append(path)
        return paths


class FieldInfo(DataModel):
    """Fields of one index."""

    index: str
    """Index name."""

    type: str
    """Document type."""

    fields: list[str]
    """Field names."""


class NumericBucket(DataModel):
    """Numeric histogram bucket."""

    lower: float
    """Inclusive lower bound."""

    upper: float
    """Upper bound."""

    count: int
    """Document count, or HIDDEN_COUNT."""


class TextBucket(DataModel):
    """Text histogram bucket."""

    key: str | int | float | bool
    """Term value."""

    count: int
    """Document count, or HIDDEN_COUNT."""

    nested: dict[str, list[TextBucket]] | None = None
    """Sub-buckets per nested aggregation field."""


class AccessTierContext(DataModel):
    """Access tier of the calling request."""

    minimum_count_threshold: int
    """Counts below this value are hidden."""

    is_raw_data_query: bool = False
    """Whether the request returns records rather than aggregates."""

    authorized: bool = False
    """Whether the caller may see every record of the index."""


TextBucket.model_rebuild()
