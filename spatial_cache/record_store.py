"""In-memory record store keyed by record id (insertion ordered, no tile knowledge)."""
from typing import Dict, List, Optional

from common.types import Record


class RecordStore:
    """Deduplicated map id -> Record. Iteration order is first-insertion order."""

    def __init__(self) -> None:
        self._records: Dict[str, Record] = {}

    def upsert(self, record: Record) -> bool:
        """Insert or replace by id (last write wins, position kept). Returns True if the id was new."""
        is_new = record.id not in self._records
        self._records[record.id] = record
        return is_new

    def get(self, record_id: str) -> Optional[Record]:
        return self._records.get(record_id)

    def delete(self, record_id: str) -> bool:
        return self._records.pop(record_id, None) is not None

    def all(self) -> List[Record]:
        return list(self._records.values())

    def ids(self) -> List[str]:
        return list(self._records)

    def size(self) -> int:
        return len(self._records)

    def clear(self) -> None:
        self._records.clear()

    def __len__(self) -> int:
        return len(self._records)

    def __contains__(self, record_id: object) -> bool:
        return record_id in self._records
