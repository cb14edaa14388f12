from .search import SearchClient, SearchConfig

__all__ = ["SearchClient", "SearchConfig"]
