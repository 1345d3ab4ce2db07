# Copyright 2025 Google LLC
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
# ==============================================================================

import math
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

# Legacy "still living" marker used for `died` in the imported dataset.
LIVING_SENTINEL_YEAR = 9999


class SyncKind(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    BULK = "bulk"


class BackupTrigger(str, Enum):
    MANUAL = "manual"
    AUTO_BULK = "auto-bulk"
    PRE_RESTORE = "pre-restore"


def coerce_year(value: Any) -> Optional[int]:
    """Returns `value` as an int year, or None for null/NaN/blank values."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, float):
        if math.isnan(value):
            return None
        return int(value)
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        stripped = value.strip()
        if not stripped or stripped.lower() == "nan":
            return None
        try:
            return int(float(stripped))
        except ValueError:
            return None
    return None


@dataclass
class FamilyMember:
    """A family record as stored in the document store.

    Only the fields the replication engine reads are typed; everything else
    in the document is kept in `extra` and written back unchanged.
    """

    external_id: str
    name: Optional[str] = None
    born: Optional[int] = None
    died: Optional[int] = None
    monarch_ids: List[str] = field(default_factory=list)
    extra: Dict[str, Any] = field(default_factory=dict)

    _KNOWN_KEYS = ("externalId", "name", "born", "died", "monarchIds")

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> "FamilyMember":
        external_id = doc.get("externalId")
        if external_id is None:
            raise ValueError("Family member document is missing externalId")
        monarch_ids = doc.get("monarchIds") or []
        return cls(
            external_id=str(external_id),
            name=doc.get("name"),
            born=coerce_year(doc.get("born")),
            died=coerce_year(doc.get("died")),
            monarch_ids=[str(m) for m in monarch_ids],
            extra={k: v for k, v in doc.items() if k not in cls._KNOWN_KEYS},
        )

    def to_document(self) -> Dict[str, Any]:
        doc = dict(self.extra)
        doc.update(
            {
                "externalId": self.external_id,
                "name": self.name,
                "born": self.born,
                "died": self.died,
                "monarchIds": list(self.monarch_ids),
            }
        )
        return doc


@dataclass
class Monarch:
    """A reign interval. Dates are kept as stored (usually ISO strings)."""

    id: str
    reign_from: Any
    reign_to: Any
    name: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    _KNOWN_KEYS = ("id", "name", "reignFrom", "reignTo")

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> "Monarch":
        if doc.get("id") is None:
            raise ValueError("Monarch document is missing id")
        return cls(
            id=str(doc["id"]),
            name=doc.get("name"),
            reign_from=doc.get("reignFrom"),
            reign_to=doc.get("reignTo"),
            extra={k: v for k, v in doc.items() if k not in cls._KNOWN_KEYS},
        )

    def to_document(self) -> Dict[str, Any]:
        doc = dict(self.extra)
        doc.update(
            {
                "id": self.id,
                "name": self.name,
                "reignFrom": self.reign_from,
                "reignTo": self.reign_to,
            }
        )
        return doc


@dataclass
class SyncOperation:
    """A dataset push that failed and is waiting in the retry queue."""

    id: str
    kind: SyncKind
    payload: Dict[str, Any]
    enqueued_at: float = field(default_factory=lambda: time.time())
    attempts: int = 0
    last_error: Optional[str] = None

    @property
    def record(self) -> Dict[str, Any]:
        return self.payload.get("record") or {}

    @property
    def dataset(self) -> List[Dict[str, Any]]:
        return self.payload.get("dataset") or []


@dataclass(frozen=True)
class BackupMetadata:
    filename: str
    timestamp: datetime
    trigger: BackupTrigger
    record_count: Optional[int]
    size_bytes: int

    def as_dict(self) -> dict:
        return {
            "filename": self.filename,
            "timestamp": self.timestamp.isoformat(),
            "trigger": self.trigger.value,
            "record_count": self.record_count,
            "size_bytes": self.size_bytes,
        }
