"""
HTTP routes for the replication control API.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Query

from replication.backups import BackupError, BackupFormatError, BackupNotFoundError
from replication.dependencies import get_replication_service
from replication.reconciliation import ReconciliationInProgressError
from replication.records import DuplicateRecordError, RecordNotFoundError
from replication.schemas import (
    BackupContentResponse,
    BackupMetadataResponse,
    BulkUpdateResponse,
    ConnectionTestResponse,
    CreateBackupRequest,
    ListBackupsResponse,
    MemberMutationResponse,
    MemberPayload,
    MonarchsDuringLifetimeResponse,
    ReconciliationResponse,
    RestoreResponse,
    RetryResponse,
    SyncLogEntryResponse,
    SyncLogsResponse,
    SyncStatusResponse,
)
from replication.service import MutationResult, ReplicationService
from replication.versioned_store import VersionedStoreError

logger = logging.getLogger(__name__)

router = APIRouter()


def _mutation_response(result: MutationResult) -> MemberMutationResponse:
    return MemberMutationResponse(
        member=result.record,
        total=len(result.dataset),
        synced=result.sync.success,
        sync_error=result.sync.error,
    )


@router.get("/sync/status", response_model=SyncStatusResponse)
def sync_status(service: ReplicationService = Depends(get_replication_service)):
    return SyncStatusResponse(**service.get_status())


@router.post("/sync/test", response_model=ConnectionTestResponse)
def test_connection(service: ReplicationService = Depends(get_replication_service)):
    return ConnectionTestResponse(**service.test_connection())


@router.post("/sync/retry", response_model=RetryResponse)
def manual_retry(service: ReplicationService = Depends(get_replication_service)):
    outcome = service.manual_retry()
    return RetryResponse(success=outcome.success, message=outcome.message)


@router.get("/sync/logs", response_model=SyncLogsResponse)
def sync_logs(service: ReplicationService = Depends(get_replication_service)):
    return SyncLogsResponse(
        logs=[SyncLogEntryResponse(**entry.as_dict()) for entry in service.get_sync_logs()]
    )


@router.post("/reconciliation", response_model=ReconciliationResponse)
def run_reconciliation(
    dry_run: bool = Query(True),
    service: ReplicationService = Depends(get_replication_service),
):
    """
    Recompute monarch associations. Defaults to a dry run; pass
    `dry_run=false` to write the changes.
    """
    try:
        report = service.run_reconciliation(dry_run=dry_run)
    except ReconciliationInProgressError as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    return ReconciliationResponse(**report.as_dict())


@router.get("/backups", response_model=ListBackupsResponse)
def list_backups(service: ReplicationService = Depends(get_replication_service)):
    return ListBackupsResponse(
        backups=[BackupMetadataResponse(**b.as_dict()) for b in service.list_backups()]
    )


@router.post("/backups", response_model=BackupMetadataResponse, status_code=201)
def create_backup(
    payload: CreateBackupRequest,
    service: ReplicationService = Depends(get_replication_service),
):
    try:
        metadata = service.create_backup(payload.trigger)
    except BackupError as exc:
        raise HTTPException(status_code=502, detail=str(exc))
    return BackupMetadataResponse(**metadata.as_dict())


@router.get("/backups/{filename}", response_model=BackupContentResponse)
def get_backup_content(
    filename: str, service: ReplicationService = Depends(get_replication_service)
):
    try:
        records = service.get_backup_content(filename)
    except BackupNotFoundError:
        raise HTTPException(status_code=404, detail="Backup not found")
    except BackupFormatError as exc:
        raise HTTPException(status_code=422, detail=str(exc))
    except VersionedStoreError as exc:
        raise HTTPException(status_code=502, detail=str(exc))
    return BackupContentResponse(filename=filename, records=records, count=len(records))


@router.post("/backups/{filename}/restore", response_model=RestoreResponse)
def restore_backup(
    filename: str, service: ReplicationService = Depends(get_replication_service)
):
    try:
        result = service.restore_backup(filename)
    except BackupNotFoundError:
        raise HTTPException(status_code=404, detail="Backup not found")
    except BackupFormatError as exc:
        raise HTTPException(status_code=422, detail=str(exc))
    except (BackupError, VersionedStoreError) as exc:
        raise HTTPException(status_code=502, detail=str(exc))
    return RestoreResponse(
        filename=filename,
        restored=len(result.dataset),
        synced=result.sync.success,
        sync_error=result.sync.error,
    )


@router.delete("/backups/{filename}", status_code=204)
def delete_backup(
    filename: str, service: ReplicationService = Depends(get_replication_service)
):
    try:
        service.delete_backup(filename)
    except BackupNotFoundError:
        raise HTTPException(status_code=404, detail="Backup not found")
    except BackupError as exc:
        raise HTTPException(status_code=502, detail=str(exc))


@router.post("/members", response_model=MemberMutationResponse, status_code=201)
def create_member(
    payload: MemberPayload,
    service: ReplicationService = Depends(get_replication_service),
):
    try:
        result = service.create_record(payload.model_dump())
    except DuplicateRecordError:
        raise HTTPException(
            status_code=409,
            detail="Family member with this external ID already exists",
        )
    return _mutation_response(result)


@router.put("/members/{external_id}", response_model=MemberMutationResponse)
def update_member(
    external_id: str,
    patch: dict,
    service: ReplicationService = Depends(get_replication_service),
):
    try:
        result = service.update_record(external_id, patch)
    except RecordNotFoundError:
        raise HTTPException(status_code=404, detail="Family member not found")
    return _mutation_response(result)


@router.delete("/members/{external_id}", response_model=MemberMutationResponse)
def delete_member(
    external_id: str, service: ReplicationService = Depends(get_replication_service)
):
    try:
        result = service.delete_record(external_id)
    except RecordNotFoundError:
        raise HTTPException(status_code=404, detail="Family member not found")
    return _mutation_response(result)


@router.post("/members/bulk", response_model=BulkUpdateResponse)
def bulk_update_members(
    members: list[MemberPayload],
    service: ReplicationService = Depends(get_replication_service),
):
    result, updated, created = service.bulk_update_records(
        [member.model_dump() for member in members]
    )
    return BulkUpdateResponse(
        message="Bulk update completed",
        updated=updated,
        created=created,
        synced=result.sync.success,
        sync_error=result.sync.error,
    )


@router.get("/members/{external_id}/monarchs", response_model=MonarchsDuringLifetimeResponse)
def monarchs_during_lifetime(
    external_id: str, service: ReplicationService = Depends(get_replication_service)
):
    try:
        monarchs = service.get_monarchs_during_lifetime(external_id)
    except RecordNotFoundError:
        raise HTTPException(status_code=404, detail="Family member not found")
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    return MonarchsDuringLifetimeResponse(
        member_id=external_id,
        monarchs=monarchs,
        count=len(monarchs),
        message=f"Found {len(monarchs)} monarchs during {external_id}'s lifetime",
    )
