# services/upload_service/app/main.py
from fastapi import FastAPI, HTTPException, Request, Depends, Header, File, Form, UploadFile
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager
from pathlib import Path
from typing import List, Optional

from core.auth import get_current_user
from core.blobs import BytesBlob
from core.config import settings, logger as core_logger
from core.models import CommitState, CurrentUser, ImportRequest, RejectionReason, ServiceResponse
from core.storage import RecordNotFoundError, StorageError, SupabaseStorage
from core.supabase_client import clear_supabase_clients
from .session import SessionBusyError, SessionClosedError, SessionRegistry, UploadSession
from .traversal import DropPayload, payload_from_paths
from .upload_queue import QueueFrozenError

logger = core_logger.getChild("UploadService").getChild("Main")

REJECTION_MESSAGES = {
    RejectionReason.EMPTY_QUEUE: "Nothing to upload. Add some files first.",
    RejectionReason.NOT_AUTHENTICATED: "You need to be signed in to upload.",
    RejectionReason.QUOTA_EXCEEDED: "Would exceed your storage limit. Remove some files to continue.",
    RejectionReason.ALREADY_RUNNING: "An upload is already in progress.",
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Upload Service lifespan startup: Initializing storage and session registry.")
    app.state.storage = SupabaseStorage()
    app.state.sessions = SessionRegistry(app.state.storage)
    yield
    logger.info(f"Upload Service lifespan shutdown: Discarding {len(app.state.sessions)} open sessions.")
    app.state.sessions = None
    app.state.storage = None
    clear_supabase_clients()

app = FastAPI(
    title="Upload Service",
    description="Collects dropped files and folders into a queue and commits them to Supabase Storage.",
    version="1.0.0",
    lifespan=lifespan
)

# --- Dependencies ---

async def require_user(authorization: Optional[str] = Header(None)) -> CurrentUser:
    """Resolves the bearer token to a user; 401 when missing or invalid."""
    token = None
    if authorization and authorization.lower().startswith("bearer "):
        token = authorization[7:].strip()
    user = await get_current_user(token)
    if user is None:
        raise HTTPException(status_code=401, detail="Not signed in.")
    return user

def get_storage(request: Request) -> SupabaseStorage:
    storage = getattr(request.app.state, 'storage', None)
    if storage is None:
        logger.error("Storage dependency not met: not available in application state.")
        raise HTTPException(status_code=503, detail="Upload service not ready")
    return storage

def get_sessions(request: Request) -> SessionRegistry:
    sessions = getattr(request.app.state, 'sessions', None)
    if sessions is None:
        logger.error("Session registry dependency not met: not available in application state.")
        raise HTTPException(status_code=503, detail="Upload service not ready")
    return sessions

def find_session(session_id: str, user: CurrentUser, sessions: SessionRegistry) -> UploadSession:
    session = sessions.get(session_id, user.id)
    if session is None:
        raise HTTPException(status_code=404, detail="Upload session not found.")
    return session

async def current_usage(storage: SupabaseStorage, user: CurrentUser) -> int:
    try:
        return await storage.usage(user.id)
    except StorageError as e:
        logger.error(f"[{user.id}] Could not read storage usage: {e}")
        raise HTTPException(status_code=502, detail=f"Could not read storage usage: {e}")

def resolve_import_path(raw_path: str) -> Path:
    """Resolves raw_path under IMPORT_ROOT; 400 when it escapes the root or does not exist."""
    root = Path(settings.IMPORT_ROOT).resolve()
    target = (root / raw_path).resolve()
    if target != root and root not in target.parents:
        raise HTTPException(status_code=400, detail=f"'{raw_path}' is outside the import directory.")
    if not target.exists():
        raise HTTPException(status_code=400, detail=f"'{raw_path}' does not exist.")
    return target

# --- Health Check ---
@app.get("/health", response_model=ServiceResponse, tags=["Meta"])
async def health_check(request: Request):
    ready = getattr(request.app.state, 'sessions', None) is not None
    return ServiceResponse(status="success", message=f"Upload Service is running (ready: {ready})")

# --- Sessions ---

@app.post("/sessions", response_model=ServiceResponse, status_code=201, tags=["Sessions"])
async def open_session(
    user: CurrentUser = Depends(require_user),
    storage: SupabaseStorage = Depends(get_storage),
    sessions: SessionRegistry = Depends(get_sessions),
):
    session = sessions.open(user)
    usage = await current_usage(storage, user)
    return ServiceResponse(status="success", data=session.view(usage), message="Upload session opened.")

@app.get("/sessions/{session_id}", response_model=ServiceResponse, tags=["Sessions"])
async def get_session(
    session_id: str,
    user: CurrentUser = Depends(require_user),
    storage: SupabaseStorage = Depends(get_storage),
    sessions: SessionRegistry = Depends(get_sessions),
):
    session = find_session(session_id, user, sessions)
    usage = await current_usage(storage, user)
    return ServiceResponse(status="success", data=session.view(usage))

@app.post("/sessions/{session_id}/files", response_model=ServiceResponse, tags=["Sessions"])
async def add_files(
    session_id: str,
    files: List[UploadFile] = File(...),
    relative_paths: Optional[List[str]] = Form(None),
    user: CurrentUser = Depends(require_user),
    sessions: SessionRegistry = Depends(get_sessions),
):
    """Flat file / folder-picker upload. relative_paths, when given, pairs up with files by position."""
    session = find_session(session_id, user, sessions)
    if relative_paths is not None and len(relative_paths) != len(files):
        raise HTTPException(status_code=400, detail=f"Got {len(files)} files but {len(relative_paths)} relative paths.")

    blobs = []
    for position, upload in enumerate(files):
        content = await upload.read()
        hint = relative_paths[position] if relative_paths else ""
        blobs.append(BytesBlob(content, name=upload.filename or f"file-{position}", content_type=upload.content_type, relative_path=hint))

    try:
        added = await session.add(DropPayload(files=blobs))
    except QueueFrozenError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except SessionClosedError as e:
        sessions.discard(session_id)
        raise HTTPException(status_code=404, detail=str(e))
    logger.info(f"[{session_id}] Added {added} uploaded files.")
    return ServiceResponse(status="success", data={"added": added, "queued": len(session.queue)}, message=f"Added {added} files.")

@app.post("/sessions/{session_id}/imports", response_model=ServiceResponse, tags=["Sessions"])
async def import_folders(
    session_id: str,
    payload: ImportRequest,
    user: CurrentUser = Depends(require_user),
    sessions: SessionRegistry = Depends(get_sessions),
):
    """Walks server-side files/folders under IMPORT_ROOT into the queue, keeping folder structure."""
    session = find_session(session_id, user, sessions)
    if not settings.IMPORT_ROOT:
        raise HTTPException(status_code=403, detail="Folder imports are disabled on this server.")
    targets = [resolve_import_path(raw) for raw in payload.paths]

    try:
        added = await session.add(payload_from_paths(targets))
    except QueueFrozenError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except SessionClosedError as e:
        sessions.discard(session_id)
        raise HTTPException(status_code=404, detail=str(e))
    logger.info(f"[{session_id}] Imported {added} files from {len(targets)} paths.")
    return ServiceResponse(status="success", data={"added": added, "queued": len(session.queue)}, message=f"Added {added} files.")

@app.delete("/sessions/{session_id}/items/{index}", response_model=ServiceResponse, tags=["Sessions"])
async def remove_item(
    session_id: str,
    index: int,
    user: CurrentUser = Depends(require_user),
    sessions: SessionRegistry = Depends(get_sessions),
):
    session = find_session(session_id, user, sessions)
    removed = session.remove(index)
    message = "Item removed." if removed else "Nothing removed."
    return ServiceResponse(status="success", data={"removed": removed, "queued": len(session.queue)}, message=message)

@app.post("/sessions/{session_id}/commit", response_model=ServiceResponse, tags=["Sessions"])
async def commit_session(
    session_id: str,
    user: CurrentUser = Depends(require_user),
    storage: SupabaseStorage = Depends(get_storage),
    sessions: SessionRegistry = Depends(get_sessions),
):
    session = find_session(session_id, user, sessions)
    usage = await current_usage(storage, user)
    result = await session.commit(usage)

    if result.rejected:
        raise HTTPException(status_code=409, detail=REJECTION_MESSAGES[result.rejection_reason])
    if result.state == CommitState.FAILED:
        body = ServiceResponse(status="error", data=result.model_dump(mode="json"), message=result.error_message)
        return JSONResponse(status_code=502, content=body.model_dump(mode="json"))

    if session.closed:
        sessions.discard(session_id)
    return ServiceResponse(status="success", data=result, message=f"Uploaded {result.completed_count} files.")

@app.delete("/sessions/{session_id}", response_model=ServiceResponse, tags=["Sessions"])
async def close_session(
    session_id: str,
    user: CurrentUser = Depends(require_user),
    sessions: SessionRegistry = Depends(get_sessions),
):
    find_session(session_id, user, sessions)
    try:
        sessions.close(session_id)
    except SessionBusyError as e:
        raise HTTPException(status_code=409, detail=str(e))
    return ServiceResponse(status="success", message="Upload session closed.")

# --- Stored files ---

@app.get("/files", response_model=ServiceResponse, tags=["Files"])
async def list_files(
    user: CurrentUser = Depends(require_user),
    storage: SupabaseStorage = Depends(get_storage),
):
    try:
        records = await storage.list(user.id)
    except StorageError as e:
        raise HTTPException(status_code=502, detail=str(e))
    return ServiceResponse(status="success", data=records)

@app.delete("/files/{record_id}", response_model=ServiceResponse, tags=["Files"])
async def delete_file(
    record_id: str,
    user: CurrentUser = Depends(require_user),
    storage: SupabaseStorage = Depends(get_storage),
):
    try:
        await storage.remove(record_id, user.id)
    except RecordNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except StorageError as e:
        raise HTTPException(status_code=502, detail=str(e))
    return ServiceResponse(status="success", message="File deleted.")
