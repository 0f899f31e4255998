from __future__ import annotations

import json
import logging
import mimetypes
import traceback
from pathlib import Path
from typing import Any, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response, UploadFile
from fastapi.responses import FileResponse
from starlette.datastructures import UploadFile as StarletteUploadFile

from ridgelab.db.models import ProcessingRun, RunStatus
from ridgelab.errors import BlobNotFound, BlobStoreError, InvalidImage, http_status_for
from ridgelab.schemas import (
    ApplyTextureRequest,
    ApplyTextureResponse,
    ImageUploadResponse,
    OracleReport,
    ProcessingRunRead,
    PromptInfo,
    QualityMetricsRead,
)
from ridgelab.services.notifier import NotifierClient
from ridgelab.services.oracle import OracleClient
from ridgelab.services.pipeline import TextureRunner
from ridgelab.services.runs import RunStore, run_store
from ridgelab.services.storage import LocalBlobStore, blob_store, generate_forensic_key
from ridgelab.services.texture import decode_image
from ridgelab.settings import settings

router = APIRouter(prefix="/api", tags=["api"])
logger = logging.getLogger("ridgelab.api")

ALLOWED_SUFFIXES = {".png", ".jpg", ".jpeg", ".tif", ".tiff", ".bmp"}
ALLOWED_MIMES = {"image/png", "image/jpeg", "image/jpg", "image/tiff", "image/x-tiff", "image/bmp"}

_oracle_client = OracleClient() if settings.oracle_url else None
_notifier_client = NotifierClient() if settings.notify_url else None


def get_run_store() -> RunStore:
    return run_store


def get_blob_store() -> LocalBlobStore:
    return blob_store


def get_runner(
    store: RunStore = Depends(get_run_store),
    blobs: LocalBlobStore = Depends(get_blob_store),
) -> TextureRunner:
    return TextureRunner(store, blobs, _oracle_client, _notifier_client)


def _safe_json_loads(raw: Optional[str], fallback: Any) -> Any:
    if not raw:
        return fallback
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return fallback


def _run_to_schema(run: ProcessingRun) -> ProcessingRunRead:
    metrics_data = _safe_json_loads(run.quality_metrics_json, None)
    oracle_data = _safe_json_loads(run.oracle_report_json, None)
    return ProcessingRunRead(
        id=run.id,
        case_id=run.case_id,
        sample_id=run.sample_id,
        status=RunStatus(run.status).value,
        original_image_key=run.original_image_key,
        original_image_url=run.original_image_url,
        original_width=run.original_width,
        original_height=run.original_height,
        original_size_bytes=run.original_size_bytes,
        original_format=run.original_format,
        original_filename=run.original_filename,
        processed_image_url=run.processed_image_url,
        prompt_version=run.prompt_version,
        noise_seed=run.noise_seed,
        processing_time_ms=run.processing_time_ms,
        quality_metrics=QualityMetricsRead(**metrics_data) if isinstance(metrics_data, dict) else None,
        oracle_report=OracleReport(**oracle_data) if isinstance(oracle_data, dict) else None,
        error_code=run.error_code,
        error_message=run.error_message,
        created_at=run.created_at,
        completed_at=run.completed_at,
    )


def _form_text(value: Any) -> Optional[str]:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


@router.post("/images", response_model=ImageUploadResponse, status_code=201)
async def upload_image(
    request: Request,
    blobs: LocalBlobStore = Depends(get_blob_store),
) -> ImageUploadResponse:
    form = await request.form()
    upload: Optional[UploadFile] = None
    file_item = form.get("file")
    if isinstance(file_item, StarletteUploadFile):
        upload = file_item
    if upload is None:
        raise HTTPException(status_code=422, detail="The file field is empty.")

    suffix = Path(upload.filename or "").suffix.lower()
    has_image_mime = bool(upload.content_type and upload.content_type.lower() in ALLOWED_MIMES)
    if not has_image_mime and suffix not in ALLOWED_SUFFIXES:
        raise HTTPException(status_code=422, detail="Only image files can be uploaded.")

    raw = await upload.read()
    await upload.close()
    try:
        image = decode_image(raw)
    except InvalidImage as exc:
        raise HTTPException(status_code=422, detail=exc.to_dict()) from exc

    key = generate_forensic_key(
        "original",
        upload.filename or "fingerprint.png",
        _form_text(form.get("case_id")),
        _form_text(form.get("sample_id")),
    )
    try:
        ref = blobs.put(key, raw, upload.content_type or "application/octet-stream")
    except BlobStoreError as exc:
        logger.error("Upload could not be stored: %s", traceback.format_exc())
        raise HTTPException(status_code=500, detail=exc.to_dict()) from exc

    logger.info("Image uploaded: key=%s size=%s %sx%s", ref.key, len(raw), image.width, image.height)
    return ImageUploadResponse(
        key=ref.key,
        url=ref.url,
        width=image.width,
        height=image.height,
        size_bytes=len(raw),
        format=upload.content_type,
    )


@router.get("/blobs/{key:path}")
def get_blob(key: str, blobs: LocalBlobStore = Depends(get_blob_store)) -> FileResponse:
    try:
        blobs.get(key)
        file_path = blobs.resolve(key)
    except ValueError as exc:
        raise HTTPException(status_code=404, detail="File not found.") from exc
    except BlobNotFound as exc:
        raise HTTPException(status_code=404, detail=exc.to_dict()) from exc

    media_type = mimetypes.guess_type(file_path.name)[0] or "application/octet-stream"
    return FileResponse(path=file_path, media_type=media_type, filename=file_path.name)


@router.post("/runs", response_model=ApplyTextureResponse, status_code=201)
async def apply_texture(
    payload: ApplyTextureRequest,
    runner: TextureRunner = Depends(get_runner),
) -> ApplyTextureResponse:
    try:
        outcome = await runner.apply_texture(payload)
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc

    if outcome.error is not None:
        status_code = http_status_for(outcome.error)
        detail = outcome.error.to_dict()
        detail["run_id"] = outcome.run_id
        detail["processing_time_ms"] = outcome.processing_time_ms
        raise HTTPException(status_code=status_code, detail=detail)

    metrics = outcome.metrics.to_dict()
    return ApplyTextureResponse(
        run_id=outcome.run_id,
        persisted=outcome.persisted,
        status=outcome.status.value,
        processed_image_url=outcome.processed.url,
        processing_time_ms=outcome.processing_time_ms,
        prompt_version=settings.prompt_version,
        noise_seed=outcome.noise_seed,
        quality_metrics=QualityMetricsRead(**metrics),
        oracle_report=outcome.oracle_report,
        oracle_status=outcome.oracle_status,
        message="Texture applied with forensic precision",
    )


@router.get("/runs", response_model=list[ProcessingRunRead])
def list_runs(
    limit: int = Query(default=20, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    status: Optional[RunStatus] = Query(default=None),
    store: RunStore = Depends(get_run_store),
) -> list[ProcessingRunRead]:
    runs = store.list_runs(limit=limit, offset=offset, status=status)
    return [_run_to_schema(run) for run in runs]


@router.get("/runs/{run_id}", response_model=ProcessingRunRead)
def get_run(run_id: str, store: RunStore = Depends(get_run_store)) -> ProcessingRunRead:
    run = store.get(run_id)
    if run is None:
        raise HTTPException(status_code=404, detail="Processing run not found.")
    return _run_to_schema(run)


@router.delete("/runs/{run_id}", status_code=204, response_class=Response)
def delete_run(
    run_id: str,
    store: RunStore = Depends(get_run_store),
    blobs: LocalBlobStore = Depends(get_blob_store),
) -> Response:
    run = store.get(run_id)
    if run is None:
        raise HTTPException(status_code=404, detail="Processing run to delete was not found.")
    store.delete(run_id)

    if run.processed_image_key:
        try:
            blobs.delete(run.processed_image_key)
        except (OSError, ValueError):
            logger.error("Processed image cleanup failed after run delete: %s", traceback.format_exc())

    return Response(status_code=204)


@router.get("/prompt", response_model=PromptInfo)
def get_prompt_info() -> PromptInfo:
    return PromptInfo(version=settings.prompt_version, prompt=settings.prompt_text)
