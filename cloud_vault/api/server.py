"""FastAPI-based gateway for external clients."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Optional
from urllib.parse import quote

from fastapi import Depends, FastAPI, File, Form, HTTPException, Request, UploadFile
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, Field
from starlette.background import BackgroundTask

from ..config import CloudVaultConfig
from ..errors import CloudVaultError
from ..models import VerificationOptions
from ..runtime import CloudVaultRuntime
from ..services.export_service import ExportHandle, ExportOptions

runtime = CloudVaultRuntime.bootstrap(CloudVaultConfig.from_env())
logging.getLogger("cloud_vault").setLevel(runtime.config.observability.log_level.upper())
logger = logging.getLogger(__name__)

VIRTUAL_ROOT = "root"


@asynccontextmanager
async def _lifespan(app: FastAPI):
    runtime.start_sweepers()
    logger.info("Registry sweepers started")
    try:
        yield
    finally:
        runtime.stop_sweepers()
        logger.info("Registry sweepers stopped")


app = FastAPI(title="Cloud Vault API", version="0.1.0", lifespan=_lifespan)


class AuthContext(BaseModel):
    user_id: str


async def get_auth_context(request: Request) -> AuthContext:
    """Development stand-in for the auth collaborator: trusts ``x-user-id``."""
    user_id = request.headers.get("x-user-id")
    if not user_id:
        raise HTTPException(status_code=401, detail="x-user-id header required")
    return AuthContext(user_id=user_id)


class ProjectCreateRequest(BaseModel):
    name: str = Field(min_length=1)


class FolderCreateRequest(BaseModel):
    name: str = Field(min_length=1)
    project_id: Optional[str] = None
    parent_id: Optional[str] = None


class VerifyRequest(BaseModel):
    check_files: bool = True
    check_storage: bool = True
    check_metadata: bool = True
    check_permissions: bool = True
    deep_scan: bool = False
    auto_repair: bool = False
    project_id: Optional[str] = None

    def to_options(self) -> VerificationOptions:
        return VerificationOptions(
            check_files=self.check_files,
            check_storage=self.check_storage,
            check_metadata=self.check_metadata,
            check_permissions=self.check_permissions,
            deep_scan=self.deep_scan,
            auto_repair=self.auto_repair,
            project_id=self.project_id,
        )


class BatchVerifyRequest(BaseModel):
    folder_ids: list[str] = Field(min_length=1)
    options: VerifyRequest = Field(default_factory=VerifyRequest)


class ExportFilesRequest(BaseModel):
    file_ids: list[str] = Field(min_length=1)
    archive_name: Optional[str] = None
    preserve_folder_structure: bool = True


# Tree -----------------------------------------------------------------------


@app.post("/v1/projects")
async def create_project(payload: ProjectCreateRequest, ctx: AuthContext = Depends(get_auth_context)):
    project = runtime.api_gateway.create_project(payload.name, ctx.user_id)
    return {"id": project.id, "name": project.name, "owner": project.owner}


@app.post("/v1/folders")
async def create_folder(payload: FolderCreateRequest, ctx: AuthContext = Depends(get_auth_context)):
    try:
        folder = runtime.api_gateway.create_folder(
            payload.name,
            ctx.user_id,
            project_id=payload.project_id,
            parent_id=payload.parent_id,
        )
    except KeyError as exc:
        raise HTTPException(status_code=404, detail=f"Not found: {exc}") from exc
    return _serialize_folder(folder)


@app.post("/v1/files")
async def upload_file(
    file: UploadFile = File(...),
    folder_id: Optional[str] = Form(default=None),
    project_id: Optional[str] = Form(default=None),
    ctx: AuthContext = Depends(get_auth_context),
):
    data = await file.read()
    try:
        entry = runtime.api_gateway.upload_file(
            file.filename or "upload.bin",
            ctx.user_id,
            data,
            folder_id=folder_id,
            project_id=project_id,
            content_type=file.content_type or "application/octet-stream",
        )
    except KeyError as exc:
        raise HTTPException(status_code=404, detail=f"Not found: {exc}") from exc
    except RuntimeError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    return _serialize_file(entry)


# Integrity ------------------------------------------------------------------


@app.post("/v1/folders/{folder_id}:verify")
def verify_folder(
    folder_id: str,
    payload: Optional[VerifyRequest] = None,
    background: bool = False,
    ctx: AuthContext = Depends(get_auth_context),
):
    options = (payload or VerifyRequest()).to_options()
    target = None if folder_id == VIRTUAL_ROOT else folder_id
    if background:
        verification_id = runtime.api_gateway.start_verification(target, ctx.user_id, options)
        return JSONResponse(status_code=202, content={"verificationId": verification_id, "status": "running"})
    try:
        report = runtime.api_gateway.verify_folder(target, ctx.user_id, options)
    except CloudVaultError as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.message) from exc
    return report.to_dict()


@app.post("/v1/verifications:batch")
def verify_batch(payload: BatchVerifyRequest, ctx: AuthContext = Depends(get_auth_context)):
    reports = runtime.api_gateway.verify_batch(payload.folder_ids, ctx.user_id, payload.options.to_options())
    return {"reports": [report.to_dict() for report in reports]}


@app.get("/v1/verifications/{verification_id}")
async def get_verification(verification_id: str, ctx: AuthContext = Depends(get_auth_context)):
    try:
        report = runtime.api_gateway.get_verification(verification_id, ctx.user_id)
    except KeyError as exc:
        raise HTTPException(status_code=404, detail=f"Verification {verification_id} not found") from exc
    return report.to_dict()


@app.get("/v1/projects/{project_id}/health")
def project_health(project_id: str, ctx: AuthContext = Depends(get_auth_context)):
    try:
        return runtime.api_gateway.project_health(project_id, ctx.user_id)
    except CloudVaultError as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.message) from exc


# Exports --------------------------------------------------------------------


@app.post("/v1/exports:files")
def export_files(payload: ExportFilesRequest, ctx: AuthContext = Depends(get_auth_context)):
    options = ExportOptions(
        archive_name=payload.archive_name,
        preserve_folder_structure=payload.preserve_folder_structure,
    )
    try:
        handle = runtime.api_gateway.export_files(payload.file_ids, ctx.user_id, options)
    except CloudVaultError as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.message) from exc
    return _archive_response(handle)


@app.get("/v1/folders/{folder_id}/download")
def export_folder(
    folder_id: str,
    preserve_folder_structure: bool = True,
    ctx: AuthContext = Depends(get_auth_context),
):
    try:
        handle = runtime.api_gateway.export_folder(
            folder_id, ctx.user_id, ExportOptions(preserve_folder_structure=preserve_folder_structure)
        )
    except CloudVaultError as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.message) from exc
    return _archive_response(handle)


@app.get("/v1/projects/{project_id}/download")
def export_project(
    project_id: str,
    archive_name: Optional[str] = None,
    preserve_folder_structure: bool = True,
    ctx: AuthContext = Depends(get_auth_context),
):
    options = ExportOptions(archive_name=archive_name, preserve_folder_structure=preserve_folder_structure)
    try:
        handle = runtime.api_gateway.export_project(project_id, ctx.user_id, options)
    except CloudVaultError as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.message) from exc
    return _archive_response(handle)


@app.get("/v1/downloads/{download_id}")
async def get_download(download_id: str, ctx: AuthContext = Depends(get_auth_context)):
    try:
        job = runtime.api_gateway.get_download(download_id, ctx.user_id)
    except KeyError as exc:
        raise HTTPException(status_code=404, detail=f"Download {download_id} not found") from exc
    return job.to_dict()


# Serializers ----------------------------------------------------------------


def _archive_response(handle: ExportHandle) -> StreamingResponse:
    fallback = handle.filename.encode("ascii", "replace").decode("ascii").replace('"', "_")
    headers = {
        "Content-Disposition": f"attachment; filename=\"{fallback}\"; filename*=UTF-8''{quote(handle.filename)}",
        "X-Download-Id": handle.download_id,
        "X-Total-Files": str(handle.total_files),
        "X-Estimated-Size": str(handle.estimated_size),
    }
    return StreamingResponse(
        handle.stream,
        media_type="application/zip",
        headers=headers,
        background=BackgroundTask(handle.stream.close),
    )


def _serialize_folder(folder) -> dict:
    return {
        "id": folder.id,
        "name": folder.name,
        "owner": folder.owner,
        "project": folder.project,
        "parent_folder": folder.parent_folder,
        "full_path": folder.full_path,
        "level": folder.level,
        "created_at": folder.created_at.isoformat(),
    }


def _serialize_file(entry) -> dict:
    return {
        "id": entry.id,
        "name": entry.name,
        "owner": entry.owner,
        "project": entry.project,
        "folder": entry.folder,
        "size": entry.size,
        "storage_key": entry.storage.key if entry.storage else None,
        "checksum": entry.checksum,
        "mime_type": entry.mime_type,
        "created_at": entry.created_at.isoformat(),
    }
