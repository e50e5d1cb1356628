"""
Error types raised by the indexing pipeline.
"""

from typing import Iterable, List, Optional


class IndexingError(Exception):
    """Base class for indexing failures"""


class InvalidRecordError(IndexingError):
    """Record is permanently invalid and was not indexed"""

    def __init__(self, message: str, uri: Optional[str] = None):
        super().__init__(message)
        self.uri = uri


class UnknownCollectionError(IndexingError):
    """No plugin is registered for the record's collection"""

    def __init__(self, collection: str):
        super().__init__(f"No indexer registered for collection {collection}")
        self.collection = collection


class UpdateFailedError(IndexingError):
    """Record was removed from the index during an update but could not be replaced"""

    def __init__(self, uri: str):
        super().__init__(f"Record update failed: {uri} removed from index but could not be replaced")
        self.uri = uri


class AggregateMaintenanceError(IndexingError):
    """
    Recomputing denormalized counters failed.

    The indexed rows are already committed when this is raised. Operators
    can re-run the recount for ``subjects`` without re-ingesting records.
    """

    def __init__(self, collection: str, subjects: Iterable[str]):
        self.collection = collection
        self.subjects: List[str] = sorted(set(subjects))
        super().__init__(
            f"Aggregate maintenance failed for {collection} "
            f"({len(self.subjects)} subjects)"
        )
