"""
Record store for family members and monarch reference data.

Every mutation returns the full dataset snapshot so it can be handed to the
sync orchestrator. Documents are camelCase dicts keyed by `externalId`
(members) or `id` (monarchs).
"""

from __future__ import annotations

import copy
import json
import logging
import re
from pathlib import Path
from typing import Dict, Iterable, Optional, Protocol

from sqlalchemy import JSON, Column, Integer, String, create_engine, func, select
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from shared.types import LIVING_SENTINEL_YEAR, coerce_year

logger = logging.getLogger(__name__)


class RecordNotFoundError(LookupError):
    pass


class DuplicateRecordError(ValueError):
    pass


class RecordStore(Protocol):
    """Interface for family member storage."""

    def get_all(self) -> list[dict]:
        ...

    def get(self, external_id: str) -> Optional[dict]:
        ...

    def create(self, record: dict) -> list[dict]:
        ...

    def update(self, external_id: str, patch: dict) -> list[dict]:
        ...

    def delete(self, external_id: str) -> list[dict]:
        ...

    def bulk_upsert(self, records: Iterable[dict]) -> tuple[list[dict], int, int]:
        ...

    def replace_all(self, records: Iterable[dict]) -> list[dict]:
        ...


class MonarchStore(Protocol):
    def get_all_monarchs(self) -> list[dict]:
        ...


def _external_id(record: dict) -> str:
    external_id = record.get("externalId")
    if external_id is None or str(external_id).strip() == "":
        raise ValueError("Record is missing externalId")
    return str(external_id)


def _nullable(value):
    if isinstance(value, float) and value != value:
        return None
    if value == "NaN":
        return None
    return value


def _from_flat_export(item: dict) -> dict:
    """Convert a row of the original flat ancestry export."""
    died = coerce_year(item.get("Died"))
    return {
        "externalId": str(item["ID"]),
        "name": item.get("Name"),
        "born": coerce_year(item.get("Born")),
        "died": None if died == LIVING_SENTINEL_YEAR else died,
        "biologicalSex": item.get("Sex") or "Unknown",
        "notes": item.get("Notes") or None,
        "father": _nullable(item.get("Father")),
        "ageAtDeath": coerce_year(item.get("AgeAtDeath")),
        "diedYoung": bool(item.get("DiedYoung") or False),
        "isSuccessionSon": bool(item.get("IsSuccessionSon") or False),
        "hasMaleChildren": bool(item.get("HasMaleChildren") or False),
        "nobleBranch": _nullable(item.get("NobleBranch")),
        "monarchDuringLife": item.get("MonarchDuringLife")
        if isinstance(item.get("MonarchDuringLife"), list)
        else [],
    }


def load_seed_documents(path: str | Path) -> list[dict]:
    """
    Load a JSON array of documents. Bare `NaN` values are read as null and
    rows in the flat export format (`ID`, `Name`, `Born`, ...) are converted.
    """
    raw = Path(path).read_text(encoding="utf-8")
    cleaned = re.sub(r":\s*NaN\b", ": null", raw)
    items = json.loads(cleaned)
    if not isinstance(items, list):
        raise ValueError(f"Seed file {path} must contain a JSON array")
    return [_from_flat_export(item) if "ID" in item else item for item in items]


class InMemoryRecordStore:
    """Simple in-memory record store for development and tests."""

    def __init__(
        self,
        records: Optional[Iterable[dict]] = None,
        monarchs: Optional[Iterable[dict]] = None,
    ):
        self.records: Dict[str, dict] = {}
        self.monarchs: list[dict] = [copy.deepcopy(m) for m in monarchs or []]
        for record in records or []:
            self.records[_external_id(record)] = copy.deepcopy(record)

    def reset(self) -> None:
        """Clear all stored data (useful in tests)."""
        self.records.clear()
        self.monarchs.clear()

    def get_all(self) -> list[dict]:
        return [copy.deepcopy(r) for r in self.records.values()]

    def get(self, external_id: str) -> Optional[dict]:
        record = self.records.get(external_id)
        return copy.deepcopy(record) if record is not None else None

    def create(self, record: dict) -> list[dict]:
        external_id = _external_id(record)
        if external_id in self.records:
            raise DuplicateRecordError(f"Family member {external_id} already exists")
        self.records[external_id] = copy.deepcopy(record)
        return self.get_all()

    def update(self, external_id: str, patch: dict) -> list[dict]:
        record = self.records.get(external_id)
        if record is None:
            raise RecordNotFoundError(external_id)
        record.update({k: copy.deepcopy(v) for k, v in patch.items() if k != "externalId"})
        return self.get_all()

    def delete(self, external_id: str) -> list[dict]:
        if self.records.pop(external_id, None) is None:
            raise RecordNotFoundError(external_id)
        return self.get_all()

    def bulk_upsert(self, records: Iterable[dict]) -> tuple[list[dict], int, int]:
        updated = created = 0
        for record in records:
            external_id = _external_id(record)
            if external_id in self.records:
                self.records[external_id].update(copy.deepcopy(record))
                updated += 1
            else:
                self.records[external_id] = copy.deepcopy(record)
                created += 1
        return self.get_all(), updated, created

    def replace_all(self, records: Iterable[dict]) -> list[dict]:
        self.records = {_external_id(r): copy.deepcopy(r) for r in records}
        return self.get_all()

    def get_all_monarchs(self) -> list[dict]:
        return [copy.deepcopy(m) for m in self.monarchs]

    def add_monarch(self, monarch: dict) -> None:
        self.monarchs.append(copy.deepcopy(monarch))


class SqlRecordStore:
    """
    SQLAlchemy-backed implementation. Accepts any SQLAlchemy URL (e.g., Postgres or SQLite for tests).
    """

    def __init__(self, database_url: str):
        if not database_url:
            raise ValueError("DATABASE_URL is required for SqlRecordStore")
        self.engine = create_engine(
            database_url,
            future=True,
            pool_pre_ping=True,
            pool_recycle=1800,
        )
        self.Session = sessionmaker(
            bind=self.engine, class_=Session, expire_on_commit=False, future=True
        )
        Base.metadata.create_all(self.engine)

    def _all(self, session: Session) -> list[dict]:
        rows = session.execute(select(MemberRow).order_by(MemberRow.position.asc())).scalars()
        return [dict(row.data) for row in rows]

    def _next_position(self, session: Session, model) -> int:
        current = session.execute(select(func.max(model.position))).scalar()
        return (current or 0) + 1

    def get_all(self) -> list[dict]:
        with self.Session() as session:
            return self._all(session)

    def get(self, external_id: str) -> Optional[dict]:
        with self.Session() as session:
            row = session.get(MemberRow, external_id)
            return dict(row.data) if row else None

    def create(self, record: dict) -> list[dict]:
        external_id = _external_id(record)
        with self.Session() as session:
            if session.get(MemberRow, external_id):
                raise DuplicateRecordError(f"Family member {external_id} already exists")
            session.add(
                MemberRow(
                    external_id=external_id,
                    position=self._next_position(session, MemberRow),
                    data=dict(record),
                )
            )
            session.commit()
            return self._all(session)

    def update(self, external_id: str, patch: dict) -> list[dict]:
        with self.Session() as session:
            row = session.get(MemberRow, external_id)
            if not row:
                raise RecordNotFoundError(external_id)
            data = dict(row.data)
            data.update({k: v for k, v in patch.items() if k != "externalId"})
            # Reassign so SQLAlchemy notices the JSON change.
            row.data = data
            session.commit()
            return self._all(session)

    def delete(self, external_id: str) -> list[dict]:
        with self.Session() as session:
            row = session.get(MemberRow, external_id)
            if not row:
                raise RecordNotFoundError(external_id)
            session.delete(row)
            session.commit()
            return self._all(session)

    def bulk_upsert(self, records: Iterable[dict]) -> tuple[list[dict], int, int]:
        updated = created = 0
        with self.Session() as session:
            position = self._next_position(session, MemberRow)
            for record in records:
                external_id = _external_id(record)
                row = session.get(MemberRow, external_id)
                if row:
                    data = dict(row.data)
                    data.update(record)
                    row.data = data
                    updated += 1
                else:
                    session.add(MemberRow(external_id=external_id, position=position, data=dict(record)))
                    position += 1
                    created += 1
                session.flush()
            session.commit()
            return self._all(session), updated, created

    def replace_all(self, records: Iterable[dict]) -> list[dict]:
        with self.Session() as session:
            session.query(MemberRow).delete()
            for position, record in enumerate(records, start=1):
                session.add(
                    MemberRow(external_id=_external_id(record), position=position, data=dict(record))
                )
            session.commit()
            return self._all(session)

    def get_all_monarchs(self) -> list[dict]:
        with self.Session() as session:
            rows = session.execute(select(MonarchRow).order_by(MonarchRow.position.asc())).scalars()
            return [dict(row.data) for row in rows]

    def add_monarch(self, monarch: dict) -> None:
        with self.Session() as session:
            existing = session.get(MonarchRow, str(monarch["id"]))
            if existing:
                existing.data = dict(monarch)
            else:
                session.add(
                    MonarchRow(
                        id=str(monarch["id"]),
                        position=self._next_position(session, MonarchRow),
                        data=dict(monarch),
                    )
                )
            session.commit()


Base = declarative_base()


class MemberRow(Base):
    __tablename__ = "family_members"

    external_id = Column(String, primary_key=True)
    position = Column(Integer, nullable=False, index=True)
    data = Column(JSON, nullable=False)


class MonarchRow(Base):
    __tablename__ = "monarchs"

    id = Column(String, primary_key=True)
    position = Column(Integer, nullable=False, index=True)
    data = Column(JSON, nullable=False)
