"""
Pydantic schemas for the replication control API.
"""

from __future__ import annotations

from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


class SyncStatusResponse(BaseModel):
    available: bool
    connected: bool
    lastSync: Optional[str] = None
    pendingOperations: int
    failedRetries: int
    isRetrying: bool
    error: Optional[str] = None


class ConnectionTestResponse(BaseModel):
    connected: bool
    error: Optional[str] = None


class RetryResponse(BaseModel):
    success: bool
    message: str


class SyncLogEntryResponse(BaseModel):
    timestamp: str
    message: str
    success: bool


class SyncLogsResponse(BaseModel):
    logs: list[SyncLogEntryResponse]


class MemberReconciliationResponse(BaseModel):
    member_id: str
    member_name: Optional[str] = None
    status: Literal["updated", "would_update", "no_change", "skipped", "error"]
    old_monarch_count: Optional[int] = None
    new_monarch_count: Optional[int] = None
    monarch_ids: Optional[list[str]] = None
    reason: Optional[str] = None


class ReconciliationResponse(BaseModel):
    updated: int
    processed: int
    total: int
    dry_run: bool
    detailed_report: list[MemberReconciliationResponse]
    message: str
    backup_filename: Optional[str] = None


class BackupMetadataResponse(BaseModel):
    filename: str
    timestamp: str
    trigger: Literal["manual", "auto-bulk", "pre-restore"]
    record_count: Optional[int] = None
    size_bytes: int


class ListBackupsResponse(BaseModel):
    backups: list[BackupMetadataResponse]


class CreateBackupRequest(BaseModel):
    trigger: Literal["manual", "auto-bulk", "pre-restore"] = "manual"


class BackupContentResponse(BaseModel):
    filename: str
    records: list[dict]
    count: int


class MemberPayload(BaseModel):
    """Family member document; fields besides externalId are passed through."""

    model_config = ConfigDict(extra="allow")

    externalId: str = Field(..., min_length=1, max_length=64)


class MemberMutationResponse(BaseModel):
    member: Optional[dict] = None
    total: int
    synced: bool
    sync_error: Optional[str] = None


class BulkUpdateResponse(BaseModel):
    message: str
    updated: int
    created: int
    synced: bool
    sync_error: Optional[str] = None


class RestoreResponse(BaseModel):
    filename: str
    restored: int
    synced: bool
    sync_error: Optional[str] = None


class MonarchsDuringLifetimeResponse(BaseModel):
    member_id: str
    monarchs: list[dict]
    count: int
    message: str
