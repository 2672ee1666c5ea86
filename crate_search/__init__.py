"""
Semantic search and retrieval-augmented chat over crate metadata.
"""

from .config import Settings
from .exceptions import (
    CrateSearchError,
    GenerationError,
    NotFound,
    PartialBatchFailure,
    ProviderError,
    StoreError,
)

__version__ = "1.0.0"

__all__ = [
    "CrateSearchError",
    "GenerationError",
    "NotFound",
    "PartialBatchFailure",
    "ProviderError",
    "Settings",
    "StoreError",
]
