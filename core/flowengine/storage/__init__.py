"""Storage backends for engine records."""

from flowengine.storage.backend import (
    FileRecordStore,
    InMemoryRecordStore,
    RecordStore,
    validate_key,
)

__all__ = ["FileRecordStore", "InMemoryRecordStore", "RecordStore", "validate_key"]
