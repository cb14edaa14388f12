from ._yaml_loader import YamlLoader
from .data_model import DataModel
from .exceptions import (
    BadRequestError,
    BaseError,
    ConfigurationError,
    ErrorKind,
    ForbiddenError,
    NotFoundError,
    UpstreamError,
)

__all__ = [
    "BadRequestError",
    "BaseError",
    "ConfigurationError",
    "DataModel",
    "ErrorKind",
    "ForbiddenError",
    "NotFoundError",
    "UpstreamError",
    "YamlLoader",
]
