"""Registry models."""

from enum import Enum


class RegistryErrorCode(str, Enum):
    """Registry error codes."""

    INVALID_REFERENCE = "invalid_reference"
    UNAUTHORIZED = "unauthorized"
    NOT_FOUND = "not_found"
    UPSTREAM_UNAVAILABLE = "upstream_unavailable"
    UPSTREAM_ERROR = "upstream_error"
