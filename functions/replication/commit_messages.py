"""
Commit messages for dataset pushes to the versioned target.
"""

from __future__ import annotations

from typing import Any, Mapping, Optional

DATA_ONLY_PREFIX = "[data-only] admin: "


def format_commit_message(kind: str, payload: Optional[Mapping[str, Any]]) -> str:
    """Describe a record change, e.g. "add family member 'Tyge' (0.1)"."""
    data = payload or {}
    kind = getattr(kind, "value", kind)
    name = data.get("name")
    external_id = data.get("externalId") or "no-id"

    if kind == "create":
        return f"add family member '{name or 'unknown'}' ({external_id})"
    if kind == "update":
        return f"update {name or 'family member'} ({external_id})"
    if kind == "delete":
        return f"delete family member '{name or 'unknown'}' ({external_id})"
    if kind == "bulk":
        return f"bulk update {data.get('count') or 'multiple'} family members"
    return f"{kind} family data"


def dataset_commit_message(kind: str, payload: Optional[Mapping[str, Any]]) -> str:
    return DATA_ONLY_PREFIX + format_commit_message(kind, payload)


def backup_commit_message(trigger: str, record_count: int) -> str:
    return f"backup: create {trigger} backup ({record_count} members)"


def cleanup_commit_message(trigger: str) -> str:
    return f"cleanup: remove old {trigger} backup"
