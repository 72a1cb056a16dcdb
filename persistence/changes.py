"""
Change records produced by reconciliation.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from pydantic import BaseModel

from models.base import ChangeType
from models.table_metadata import Lookup


@dataclass
class Change:
    """
    One statement to run: the column values to persist, the entity they
    came from and its composite lookup key.
    """

    change_type: ChangeType
    changes: Dict[str, Any]
    original: Optional[BaseModel] = None
    key: str = ""


@dataclass
class ChangeSet:
    inserts: List[Change] = field(default_factory=list)
    updates: List[Change] = field(default_factory=list)
    deletes: List[Change] = field(default_factory=list)
    inserts_have_primary_key: bool = False
    lookups_used: List[Lookup] = field(default_factory=list)

    def extend(self, other: "ChangeSet") -> None:
        self.inserts.extend(other.inserts)
        self.updates.extend(other.updates)
        self.deletes.extend(other.deletes)
        self.inserts_have_primary_key = self.inserts_have_primary_key or other.inserts_have_primary_key

    def __len__(self) -> int:
        return len(self.inserts) + len(self.updates) + len(self.deletes)
