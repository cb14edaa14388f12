from typing import Any

from esgate.core.exceptions import BadRequestError
from esgate.ql import Expression, FilterParser, OrderBy, SortParser


class Helper:
    @staticmethod
    def get_body(response: Any) -> dict[str, Any]:
        return getattr(response, "body", response)

    @staticmethod
    def get_total(response: Any) -> int:
        total = Helper.get_body(response)["hits"]["total"]
        if isinstance(total, dict):
            return total.get("value", 0)
        return total

    @staticmethod
    def get_sources(response: Any) -> list[dict[str, Any]]:
        hits = Helper.get_body(response).get("hits", {}).get("hits", [])
        return [hit.get("_source", {}) for hit in hits]

    @staticmethod
    def drop_none(args: dict[str, Any]) -> dict[str, Any]:
        return {k: v for k, v in args.items() if v is not None}

    @staticmethod
    def get_filter(filter: dict | Expression | None) -> Expression | None:
        return FilterParser.parse(filter)

    @staticmethod
    def get_sort(sort: list | dict | str | OrderBy | None) -> OrderBy | None:
        return SortParser.parse(sort)

    @staticmethod
    def check_index_type(index: str | None, type: str | None) -> None:
        if not index or not type:
            raise BadRequestError(
                "Invalid es index or es type name", index=index, type=type
            )
