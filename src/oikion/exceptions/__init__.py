from oikion.exceptions.handlers import (
    ConfigurationError,
    NotFoundError,
    OikionException,
    ValidationError,
)

__all__ = [
    "OikionException",
    "ValidationError",
    "NotFoundError",
    "ConfigurationError",
]
