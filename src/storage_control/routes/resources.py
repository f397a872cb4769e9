"""Bucket and file provisioning API.

Exposes the caller surface of StorageService over HTTP:
  POST   /api/v1/buckets                          -> create bucket (runs workflow)
  GET    /api/v1/buckets                          -> list buckets (cache-or-fetch)
  POST   /api/v1/buckets/{bucket_id}/files        -> create file (runs workflow)
  GET    /api/v1/buckets/{bucket_id}/files        -> list files
  GET    /api/v1/files/{file_key}/content         -> download file content
  GET    /api/v1/resources/{kind}/{value}         -> re-check ledger + backend
  DELETE /api/v1/resources/{kind}/{value}         -> tear down
  GET    /api/v1/operations/{key}/progress        -> current progress
  POST   /api/v1/operations/{key}/cancel          -> cancel an in-flight run

Workflow routes run to completion by default and answer with the full
progress history. With ``?wait=false`` they answer 202 at once with the
operation key and the run continues in the background; poll its progress
and cancel it through the operations routes. Every workflow response
carries the key in ``operation_key`` and the ``X-Operation-Key`` header.

Failure contract: every workflow failure is returned as
``{'error': kind, 'detail': ..., 'recoverable': ..., 'phase': ..., 'result': ...}``
with a status code per kind (see ``FAILURE_STATUS``).
"""

from __future__ import annotations

from fastapi import APIRouter
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel, Field

from storage_control.errors import (
    BackendUnavailable,
    ConflictingOperation,
    WalletNotConnected,
    WorkflowFailure,
)
from storage_control.models import (
    PayloadReference,
    ResourceIdentity,
    ResourceIntent,
    ResourceKind,
    record_to_dict,
    view_to_dict,
)
from storage_control.service import StorageService
from storage_control.workflow.state_machine import WorkflowResult

FAILURE_STATUS: dict[str, int] = {
    'submission_rejected': 422,
    'onchain_rejected': 422,
    'conflicting_operation': 409,
    'cancelled': 499,
    'backend_unavailable': 503,
    'finality_timeout': 504,
    'backend_index_timeout': 504,
    'workflow_timeout': 504,
}

OPERATION_KEY_HEADER = 'X-Operation-Key'


# ── Request schemas ───────────────────────────────────────────────────


class CreateBucketRequest(BaseModel):
    name: str
    private: bool = False
    value_proposition_id: str | None = Field(
        default=None,
        description='Backend value proposition to bind the bucket to.',
    )


class CreateFileRequest(BaseModel):
    name: str
    location: str = Field(description='Where the payload currently lives.')
    fingerprint: str = Field(description='Content fingerprint (file root).')
    size: int = Field(default=0, ge=0)
    private: bool = False


# ── Response helpers ──────────────────────────────────────────────────


def _failure_response(
    failure: WorkflowFailure,
    result: WorkflowResult | None = None,
    *,
    operation_key: str | None = None,
) -> JSONResponse:
    content = failure.to_dict()
    if result is not None:
        content['result'] = result.to_dict()
    headers = None
    if operation_key is not None:
        content['operation_key'] = operation_key
        headers = {OPERATION_KEY_HEADER: operation_key}
    return JSONResponse(
        status_code=FAILURE_STATUS.get(failure.kind, 500),
        content=content,
        headers=headers,
    )


def _result_response(
    result: WorkflowResult,
    operation_key: str,
    *,
    success_status: int,
) -> JSONResponse:
    if result.failure is not None:
        return _failure_response(result.failure, result, operation_key=operation_key)
    content = result.to_dict()
    content['operation_key'] = operation_key
    return JSONResponse(
        status_code=success_status,
        content=content,
        headers={OPERATION_KEY_HEADER: operation_key},
    )


def _accepted_response(operation_key: str) -> JSONResponse:
    return JSONResponse(
        status_code=202,
        content={
            'operation_key': operation_key,
            'progress': f'/api/v1/operations/{operation_key}/progress',
            'cancel': f'/api/v1/operations/{operation_key}/cancel',
        },
        headers={OPERATION_KEY_HEADER: operation_key},
    )


def _wallet_required() -> JSONResponse:
    return JSONResponse(
        status_code=401,
        content={
            'error': 'wallet_not_connected',
            'detail': 'Connect a wallet before managing resources.',
        },
    )


def _parse_kind(kind: str) -> ResourceKind | None:
    try:
        return ResourceKind(kind)
    except ValueError:
        return None


def _unknown_kind(kind: str) -> JSONResponse:
    return JSONResponse(
        status_code=404,
        content={'error': 'unknown_resource_kind', 'detail': f'unknown kind {kind!r}'},
    )


# ── Route factory ─────────────────────────────────────────────────────


def create_resources_router(service: StorageService) -> APIRouter:
    """Create the bucket/file provisioning router."""
    router = APIRouter(prefix='/api/v1', tags=['resources'])

    async def run_creation(intent: ResourceIntent, wait: bool) -> JSONResponse:
        key = intent.lease_key
        if not wait:
            try:
                service.start_creation(intent)
            except ConflictingOperation as exc:
                return _failure_response(exc, operation_key=key)
            return _accepted_response(key)
        result = await service.create_resource(intent)
        return _result_response(result, key, success_status=201)

    @router.post('/buckets')
    async def create_bucket(body: CreateBucketRequest, wait: bool = True):
        try:
            intent = service.bucket_intent(
                body.name,
                private=body.private,
                value_proposition_id=body.value_proposition_id,
            )
        except WalletNotConnected:
            return _wallet_required()
        return await run_creation(intent, wait)

    @router.get('/buckets')
    async def list_buckets():
        try:
            views = await service.list_resources()
        except WalletNotConnected:
            return _wallet_required()
        except BackendUnavailable as exc:
            return _failure_response(exc)
        return {'buckets': [view_to_dict(v) for v in views]}

    @router.post('/buckets/{bucket_id}/files')
    async def create_file(bucket_id: str, body: CreateFileRequest, wait: bool = True):
        bucket = ResourceIdentity(ResourceKind.BUCKET, bucket_id)
        try:
            intent = service.file_intent(
                bucket,
                body.name,
                PayloadReference(
                    location=body.location,
                    fingerprint=body.fingerprint,
                    size=body.size,
                ),
                private=body.private,
            )
        except WalletNotConnected:
            return _wallet_required()
        return await run_creation(intent, wait)

    @router.get('/buckets/{bucket_id}/files')
    async def list_files(bucket_id: str):
        bucket = ResourceIdentity(ResourceKind.BUCKET, bucket_id)
        try:
            views = await service.list_files(bucket)
        except BackendUnavailable as exc:
            return _failure_response(exc)
        return {'bucket_id': bucket_id, 'files': [view_to_dict(v) for v in views]}

    @router.get('/files/{file_key}/content')
    async def download_file(file_key: str):
        identity = ResourceIdentity(ResourceKind.FILE, file_key)
        try:
            downloaded = await service.download_file(identity)
        except BackendUnavailable as exc:
            return _failure_response(exc)
        if downloaded is None:
            return JSONResponse(
                status_code=404,
                content={'error': 'file_not_found', 'detail': f'{identity} not found'},
            )
        headers = {}
        if downloaded.filename:
            headers['Content-Disposition'] = f'attachment; filename="{downloaded.filename}"'
        return Response(
            content=downloaded.content,
            media_type=downloaded.content_type,
            headers=headers,
        )

    @router.get('/resources/{kind}/{value}')
    async def inspect_resource(kind: str, value: str):
        resource_kind = _parse_kind(kind)
        if resource_kind is None:
            return _unknown_kind(kind)
        identity = ResourceIdentity(resource_kind, value)
        try:
            inspection = await service.inspect_resource(identity)
        except BackendUnavailable as exc:
            return _failure_response(exc)
        if inspection.record is None and inspection.view is None:
            return JSONResponse(
                status_code=404,
                content={'error': 'resource_not_found', 'detail': f'{identity} not found'},
            )
        return {
            'identity': str(identity),
            'onchain': record_to_dict(inspection.record) if inspection.record else None,
            'backend': view_to_dict(inspection.view) if inspection.view else None,
            'consistent': inspection.consistent,
        }

    @router.delete('/resources/{kind}/{value}')
    async def delete_resource(kind: str, value: str, wait: bool = True):
        resource_kind = _parse_kind(kind)
        if resource_kind is None:
            return _unknown_kind(kind)
        identity = ResourceIdentity(resource_kind, value)
        key = identity.lease_key
        if not wait:
            try:
                service.start_deletion(identity)
            except ConflictingOperation as exc:
                return _failure_response(exc, operation_key=key)
            return _accepted_response(key)
        result = await service.delete_resource(identity)
        return _result_response(result, key, success_status=200)

    @router.get('/operations/{key}/progress')
    async def get_progress(key: str):
        return {
            'operation': key,
            'running': key in service.running_operations(),
            'progress': service.progress(key).to_dict(),
        }

    @router.post('/operations/{key}/cancel')
    async def cancel_operation(key: str):
        if not service.cancel(key):
            return JSONResponse(
                status_code=404,
                content={'error': 'no_running_operation', 'detail': f'nothing running for {key!r}'},
            )
        return JSONResponse(status_code=202, content={'operation': key, 'cancelled': True})

    return router
