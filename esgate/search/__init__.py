from esgate.core.exceptions import (
    BadRequestError,
    ConfigurationError,
    ForbiddenError,
    NotFoundError,
    UpstreamError,
)

from ._aggregation import AggregationEngine
from ._config import (
    IndexDescriptor,
    SearchConfig,
    TierAccessConfig,
    TierAccessLevel,
)
from ._converter import FilterConverter, SortConverter
from ._metadata import IndexMetadataCache
from ._models import (
    HIDDEN_COUNT,
    MAX_BUCKETS,
    SCROLL_PAGE_SIZE,
    SCROLL_TTL,
    TEXT_AGG_SIZE,
    AccessTierContext,
    FieldInfo,
    IndexMetadata,
    NumericBucket,
    TextBucket,
)
from ._tier_access import TierAccessGuard, build_guards
from .client import SearchClient

__all__ = [
    "HIDDEN_COUNT",
    "MAX_BUCKETS",
    "SCROLL_PAGE_SIZE",
    "SCROLL_TTL",
    "TEXT_AGG_SIZE",
    "AccessTierContext",
    "AggregationEngine",
    "BadRequestError",
    "ConfigurationError",
    "FieldInfo",
    "FilterConverter",
    "ForbiddenError",
    "IndexDescriptor",
    "IndexMetadata",
    "IndexMetadataCache",
    "NotFoundError",
    "NumericBucket",
    "SearchClient",
    "SearchConfig",
    "SortConverter",
    "TextBucket",
    "TierAccessConfig",
    "TierAccessGuard",
    "TierAccessLevel",
    "UpstreamError",
    "build_guards",
]
