"""Storage layer for MediTrack: the keyed in-memory store and its CSV files."""

from .keyed_store import KeyedStore, Page, Snapshot, StoreStatistics, StoreValidationResult

__all__ = [
    "KeyedStore",
    "Page",
    "Snapshot",
    "StoreStatistics",
    "StoreValidationResult",
]
