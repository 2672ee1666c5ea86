"""
Error types raised by the crate search core.

Every failure surfaced by the package is one of the classes below, so callers
can handle them exhaustively:

    CrateSearchError
    ├── ProviderError          embedding / chat provider failed or answered garbage
    │   └── GenerationError    chat completion failed
    ├── NotFound               crate id does not exist
    ├── StoreError             database I/O failed
    └── PartialBatchFailure    some crates of a bulk indexing run failed
"""

from typing import Iterable, Optional


class CrateSearchError(Exception):
    """Base class for all crate search errors."""


class ProviderError(CrateSearchError):
    """Upstream model provider failed (network, auth, rate limit, malformed response)."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code

    @property
    def retryable(self) -> bool:
        # Transport errors carry no status code
        if self.status_code is None:
            return True
        return self.status_code == 429 or self.status_code >= 500


class GenerationError(ProviderError):
    """Chat completion call failed."""


class NotFound(CrateSearchError):
    """Referenced crate id is absent from the store."""

    def __init__(self, crate_id: str):
        super().__init__(f"Crate '{crate_id}' not found")
        self.crate_id = crate_id


class StoreError(CrateSearchError):
    """Relational store I/O failure."""


class PartialBatchFailure(CrateSearchError):
    """A bulk embedding run finished but some crates could not be indexed."""

    def __init__(self, failed_ids: Iterable[str]):
        self.failed_ids = frozenset(failed_ids)
        super().__init__(
            f"{len(self.failed_ids)} crate(s) failed to index: "
            f"{', '.join(sorted(self.failed_ids))}"
        )
