from __future__ import annotations

import functools
import logging
from typing import Any, Awaitable, Callable, TypeVar

from esgate.core.exceptions import ForbiddenError

from ._config import SearchConfig, TierAccessLevel
from ._models import (
    HIDDEN_COUNT,
    AccessTierContext,
    NumericBucket,
    TextBucket,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")
Bucket = TypeVar("Bucket", NumericBucket, TextBucket)


class TierAccessGuard:
    """Redacts counts the caller's tier may not see.

    One guard exists per configured index and type. It only shapes
    results, after they have been resolved.
    """

    index: str
    type: str
    level: TierAccessLevel

    def __init__(
        self,
        index: str,
        type: str,
        level: TierAccessLevel = TierAccessLevel.REGULAR,
    ) -> None:
        self.index = index
        self.type = type
        self.level = level

    def is_active(self, tier: AccessTierContext) -> bool:
        return self.level == TierAccessLevel.REGULAR and not tier.authorized

    def check_raw_data(self, tier: AccessTierContext) -> None:
        if tier.is_raw_data_query and self.is_active(tier):
            logger.info(
                "Denied raw data query on %s/%s", self.index, self.type
            )
            raise ForbiddenError(
                "You don't have access to raw data of this type",
                operation="raw_data",
                index=self.index,
                type=self.type,
            )

    def hide_number(self, count: int, tier: AccessTierContext) -> int:
        if not self.is_active(tier):
            return count
        if count < tier.minimum_count_threshold:
            return HIDDEN_COUNT
        return count

    def hide_histogram(
        self, buckets: list[Bucket], tier: AccessTierContext
    ) -> list[Bucket]:
        if not self.is_active(tier):
            return buckets
        return [self._hide_bucket(b, tier) for b in buckets]

    def _hide_bucket(self, bucket: Bucket, tier: AccessTierContext) -> Bucket:
        update: dict[str, Any] = {
            "count": self.hide_number(bucket.count, tier)
        }
        if isinstance(bucket, TextBucket) and bucket.nested:
            update["nested"] = {
                field: self.hide_histogram(sub_buckets, tier)
                for field, sub_buckets in bucket.nested.items()
            }
        return bucket.copy(update=update)

    def hide_number_resolver(
        self, is_total_count: bool = False
    ) -> Callable[
        [Callable[..., Awaitable[Any]]], Callable[..., Awaitable[Any]]
    ]:
        """Decorate a resolver returning a count or histogram.

        The decorated resolver takes the caller's tier as the ``tier``
        keyword argument.
        """

        def decorator(
            resolver: Callable[..., Awaitable[Any]],
        ) -> Callable[..., Awaitable[Any]]:
            @functools.wraps(resolver)
            async def wrapper(*args: Any, tier: AccessTierContext, **kwargs):
                result = await resolver(*args, **kwargs)
                if is_total_count:
                    return self.hide_number(result, tier)
                return self.hide_histogram(result, tier)

            return wrapper

        return decorator

    def raw_data_resolver(
        self, resolver: Callable[..., Awaitable[T]]
    ) -> Callable[..., Awaitable[T]]:
        @functools.wraps(resolver)
        async def wrapper(*args: Any, tier: AccessTierContext, **kwargs) -> T:
            self.check_raw_data(tier)
            return await resolver(*args, **kwargs)

        return wrapper


def build_guards(config: SearchConfig) -> dict[str, TierAccessGuard]:
    """Guards keyed by document type."""
    return {
        descriptor.type: TierAccessGuard(
            index=descriptor.index,
            type=descriptor.type,
            level=config.tier_access.level,
        )
        for descriptor in config.indices
    }
