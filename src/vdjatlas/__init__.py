"""V(D)J annotation and repertoire metrics for single-cell annotation tables."""

__version__ = "0.1.0"
__author__ = "vdjatlas Contributors"

from . import chains, exceptions, receptor, schemas, utils

__all__ = [
    "chains",
    "exceptions",
    "receptor",
    "schemas",
    "utils",
]
