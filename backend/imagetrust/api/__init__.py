# API routes package

from . import signatures

__all__ = [
    "signatures",
]
