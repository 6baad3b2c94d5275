import dataclasses
import uuid
from typing import Optional

from fastapi import FastAPI, File, Form, HTTPException, Query, Response, UploadFile
import uvicorn

from models.schemas import (
    BulkDeleteItem,
    BulkDeleteRequest,
    BulkDeleteResponse,
    ExtractionResponse,
    UploadResponse,
    ZipPreviewResponse,
)
from utils.errors import (
    ArchiveStructureError,
    AssetNotFoundError,
    IntakeError,
    PathTraversalError,
)
from utils.logger import get_logger
from workflows.creative_intake import CreativeIntakeWorkflow, default_policy

app = FastAPI(title="Creative Intake Service", version="1.0.0")
logger = get_logger(__name__)

# Initialize workflow
workflow = CreativeIntakeWorkflow()

ZIP_MIME = "application/zip"


def _http_error(exc: IntakeError) -> HTTPException:
    if isinstance(exc, ArchiveStructureError):
        return HTTPException(status_code=422, detail=str(exc))
    if isinstance(exc, PathTraversalError):
        return HTTPException(status_code=403, detail="Forbidden")
    if isinstance(exc, AssetNotFoundError):
        return HTTPException(status_code=404, detail="Not found")
    return HTTPException(status_code=500, detail=str(exc))


def _require_zip(file_data: bytes, file_name: Optional[str]) -> None:
    detected = workflow.mime_sniffing_service.detect(file_data, file_name)
    if detected.mime != ZIP_MIME:
        raise HTTPException(
            status_code=415,
            detail=f"Expected a ZIP archive, got {detected.mime}",
        )


@app.post("/zip/preview", response_model=ZipPreviewResponse)
async def preview_zip(
    file: UploadFile = File(...),
    max_entries: Optional[int] = Query(default=None, ge=1),
):
    """
    List the entries of a ZIP without extracting anything
    """
    file_data = await file.read()
    _require_zip(file_data, file.filename)

    preview = workflow.preview_archive(file_data, max_entries=max_entries)
    if preview is None:
        raise HTTPException(status_code=422, detail="ZIP central directory not found")
    return ZipPreviewResponse.model_validate(dataclasses.asdict(preview))


@app.post("/uploads", response_model=UploadResponse)
async def upload_file(file: UploadFile = File(...)):
    """
    Ingest a single creative file
    """
    try:
        file_data = await file.read()
        result = await workflow.ingest_file(file_data, file.filename or "file")

        if result["status"] == "rejected":
            status_code = 415 if result["reason"].startswith("disallowed-mime") else 422
            raise HTTPException(status_code=status_code, detail=result["reason"])

        payload = dict(result)
        payload["asset"] = dataclasses.asdict(result["asset"])
        return UploadResponse.model_validate(payload)

    except HTTPException:
        raise
    except IntakeError as e:
        raise _http_error(e) from e
    except Exception as e:
        logger.error(f"Upload failed: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=str(e))


@app.post("/uploads/zip", response_model=ExtractionResponse)
async def upload_zip(
    file: UploadFile = File(...),
    password: Optional[str] = Form(default=None),
    dedup: bool = Form(default=False),
    generate_previews: bool = Form(default=False),
):
    """
    Extract a (possibly encrypted) ZIP bundle and register its asset index
    """
    file_data = await file.read()
    _require_zip(file_data, file.filename)

    upload_id = str(uuid.uuid4())
    try:
        result = await workflow.ingest_archive(
            upload_id,
            file_data,
            password=password or None,
            policy=default_policy(dedup=dedup, generate_previews=generate_previews),
        )
    except IntakeError as e:
        raise _http_error(e) from e

    return ExtractionResponse.model_validate({"upload_id": upload_id, **dataclasses.asdict(result)})


@app.get("/uploads/{upload_id}/html/{asset_id}")
async def render_upload_html(upload_id: str, asset_id: str, base_url: Optional[str] = Query(default=None)):
    """
    Serve an extracted HTML file with its asset references rewritten
    """
    try:
        html = await workflow.render_html(upload_id, asset_id, base_url=base_url)
    except IntakeError as e:
        raise _http_error(e) from e
    return Response(content=html, media_type="text/html; charset=utf-8")


@app.delete("/uploads/{upload_id}", response_model=BulkDeleteResponse)
async def delete_upload(upload_id: str):
    if upload_id not in workflow.index_registry:
        raise HTTPException(status_code=404, detail=f"Unknown upload: {upload_id}")
    outcomes = await workflow.cleanup_upload(upload_id)
    return BulkDeleteResponse(results=[BulkDeleteItem(**dataclasses.asdict(o)) for o in outcomes])


@app.get("/api/files/{asset_id}/{file_path:path}")
async def serve_file(asset_id: str, file_path: str):
    """
    Serve a stored file; the resolved path must stay inside the store root
    """
    try:
        file_data = await workflow.content_store.read(asset_id, file_path)
    except IntakeError as e:
        raise _http_error(e) from e

    detected = workflow.mime_sniffing_service.detect(file_data, file_path)
    return Response(
        content=file_data,
        media_type=detected.mime,
        headers={"X-Content-Type-Options": "nosniff"},
    )


@app.delete("/api/files/{asset_id}", response_model=BulkDeleteItem)
async def delete_file(asset_id: str):
    try:
        workflow.content_store.dir(asset_id)
    except IntakeError as e:
        raise _http_error(e) from e

    outcome = (await workflow.content_store.bulk_delete([asset_id]))[0]
    if outcome.reason == "not-found":
        raise HTTPException(status_code=404, detail=f"Asset not found: {asset_id}")
    if not outcome.ok:
        raise HTTPException(status_code=500, detail=outcome.reason)
    return BulkDeleteItem(**dataclasses.asdict(outcome))


@app.post("/api/files/bulk-delete", response_model=BulkDeleteResponse)
async def bulk_delete_files(request: BulkDeleteRequest):
    outcomes = await workflow.content_store.bulk_delete(request.ids)
    return BulkDeleteResponse(results=[BulkDeleteItem(**dataclasses.asdict(o)) for o in outcomes])


@app.get("/health")
async def health_check():
    """
    Health check endpoint
    """
    return await workflow.health()


if __name__ == "__main__":
    uvicorn.run(app, host="0.0.0.0", port=8000)
