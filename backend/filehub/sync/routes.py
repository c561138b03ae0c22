"""Sync API routes for mobile clients: metadata, simple and chunked upload, download, change feed."""

import logging
from email.utils import format_datetime
from typing import Annotated, AsyncIterator, Optional

from fastapi import APIRouter, Depends, Header, Request
from fastapi.responses import JSONResponse, StreamingResponse

from filehub.auth.dependencies import get_current_user, get_hub
from filehub.db.session import as_utc
from filehub.errors import BadRequest, NotFound
from filehub.files.models import FileInfo
from filehub.files.quota import get_quota
from filehub.files.service import Resource
from filehub.hub import Hub
from filehub.limiter import CHUNK_RATE, SYNC_RATE, limiter
from filehub.repos.permissions import check_repo_access
from filehub.repos.service import resolve_for_principal
from filehub.sync.models import (
    AckResponse,
    BeginUploadResponse,
    ChangeInfo,
    ChangesResponse,
    FileInfoResponse,
    FinalizeUploadResponse,
    ListDirectoryResponse,
    SyncStatusResponse,
    UploadResponse,
    VersionResponse,
)
from filehub.sync.uploads import CHUNK_SIZE, MAX_SIMPLE_UPLOAD_SIZE
from filehub.sync.versions import get_current_version, list_changes
from filehub.users.models import QuotaResponse, User

router = APIRouter(prefix="/api/sync", tags=["sync"])
log = logging.getLogger(__name__)

TOO_LARGE_FOR_SIMPLE_UPLOAD = "file too large for simple upload, use chunked upload"

CurrentUser = Annotated[User, Depends(get_current_user)]
CurrentHub = Annotated[Hub, Depends(get_hub)]


async def _resource(hub: Hub, user: User, repo: Optional[str], path: Optional[str]) -> Resource:
    """Resolve the repo query parameter for user and pair it with path."""
    if not repo or not path:
        raise BadRequest("repo and path parameters are required")
    async with hub.db.session() as session:
        repository = await resolve_for_principal(session, repo, user)
    return Resource(repo=repository, path=path)


def _content_length(request: Request) -> Optional[int]:
    raw = request.headers.get("content-length")
    if raw is None:
        return None
    try:
        value = int(raw)
    except ValueError:
        raise BadRequest("Invalid Content-Length")
    if value < 0:
        raise BadRequest("Invalid Content-Length")
    return value


async def _limited_body(request: Request, limit: int, message: str) -> AsyncIterator[bytes]:
    """Request body blocks; raises BadRequest once more than limit bytes have arrived."""
    received = 0
    async for block in request.stream():
        received += len(block)
        if received > limit:
            raise BadRequest(message)
        if block:
            yield block


def _strip_etag(value: Optional[str]) -> Optional[str]:
    """If-None-Match may be quoted or weak; stored checksums are bare hex."""
    if not value:
        return None
    value = value.strip()
    if value.startswith("W/"):
        value = value[2:]
    return value.strip('"') or None


@router.get("/info", response_model=FileInfoResponse)
@limiter.limit(SYNC_RATE)
async def get_info(
    request: Request,
    current_user: CurrentUser,
    hub: CurrentHub,
    repo: Optional[str] = None,
    path: Optional[str] = None,
):
    """Metadata of one entry. Missing entries answer 404 with exists=false."""
    resource = await _resource(hub, current_user, repo, path)
    try:
        obj = await hub.files.get_info(current_user, resource)
    except NotFound as e:
        return JSONResponse(status_code=404, content={"exists": False, "error": e.message})
    return FileInfoResponse(exists=True, info=FileInfo.model_validate(obj))


@router.get("/list", response_model=ListDirectoryResponse)
@limiter.limit(SYNC_RATE)
async def list_directory(
    request: Request,
    current_user: CurrentUser,
    hub: CurrentHub,
    repo: Optional[str] = None,
    path: Optional[str] = None,
    offset: int = 0,
    limit: int = 100,
    recursive: bool = False,
) -> ListDirectoryResponse:
    """Children of a directory, ordered by name. recursive is accepted but not used."""
    resource = await _resource(hub, current_user, repo, path)
    page = await hub.files.list(current_user, resource, offset=offset, limit=limit)
    return ListDirectoryResponse(
        items=[FileInfo.model_validate(o) for o in page.items],
        total=page.total,
        offset=page.offset,
        limit=page.limit,
        has_more=page.has_more,
    )


@router.post("/mkdir", response_model=AckResponse)
@limiter.limit(SYNC_RATE)
async def mkdir(
    request: Request,
    current_user: CurrentUser,
    hub: CurrentHub,
    repo: Optional[str] = None,
    path: Optional[str] = None,
) -> AckResponse:
    resource = await _resource(hub, current_user, repo, path)
    _, version = await hub.files.create_dir(current_user, resource)
    return AckResponse(message="Directory created", version=version)


@router.delete("/delete", response_model=AckResponse)
@limiter.limit(SYNC_RATE)
async def delete(
    request: Request,
    current_user: CurrentUser,
    hub: CurrentHub,
    repo: Optional[str] = None,
    path: Optional[str] = None,
    recursive: bool = False,
) -> AckResponse:
    """Delete a file, or a directory (non-empty ones need recursive=true)."""
    resource = await _resource(hub, current_user, repo, path)
    version = await hub.files.delete(current_user, resource, recursive=recursive)
    return AckResponse(message="Deleted", version=version)


async def _transfer_resources(
    hub: Hub, user: User, repo: Optional[str], source: Optional[str], destination: Optional[str]
):
    if not source or not destination:
        raise BadRequest("source and destination parameters are required")
    src = await _resource(hub, user, repo, source)
    return src, Resource(repo=src.repo, path=destination)


@router.post("/move", response_model=AckResponse)
@limiter.limit(SYNC_RATE)
async def move(
    request: Request,
    current_user: CurrentUser,
    hub: CurrentHub,
    repo: Optional[str] = None,
    source: Optional[str] = None,
    destination: Optional[str] = None,
) -> AckResponse:
    src, dst = await _transfer_resources(hub, current_user, repo, source, destination)
    version = await hub.files.move(current_user, src, dst)
    return AckResponse(message="Moved", version=version)


@router.post("/copy", response_model=AckResponse)
@limiter.limit(SYNC_RATE)
async def copy(
    request: Request,
    current_user: CurrentUser,
    hub: CurrentHub,
    repo: Optional[str] = None,
    source: Optional[str] = None,
    destination: Optional[str] = None,
) -> AckResponse:
    src, dst = await _transfer_resources(hub, current_user, repo, source, destination)
    version = await hub.files.copy(current_user, src, dst)
    return AckResponse(message="Copied", version=version)


@router.post("/upload", response_model=UploadResponse)
@limiter.limit(SYNC_RATE)
async def upload(
    request: Request,
    current_user: CurrentUser,
    hub: CurrentHub,
    repo: Optional[str] = None,
    path: Optional[str] = None,
) -> UploadResponse:
    """Upload a whole file in the request body. Larger files must use the chunked upload."""
    resource = await _resource(hub, current_user, repo, path)
    length = _content_length(request)
    if length is not None and length > MAX_SIMPLE_UPLOAD_SIZE:
        log.warning(
            "Simple upload rejected user=%s path=%s size=%d", current_user.username, path, length
        )
        raise BadRequest(TOO_LARGE_FOR_SIMPLE_UPLOAD)
    result = await hub.files.put(
        current_user,
        resource,
        _limited_body(request, MAX_SIMPLE_UPLOAD_SIZE, TOO_LARGE_FOR_SIMPLE_UPLOAD),
        content_type=request.headers.get("content-type"),
        size_hint=length,
    )
    return UploadResponse(etag=result.checksum, version=result.version, size=result.size)


@router.get("/download")
@limiter.limit(SYNC_RATE)
async def download(
    request: Request,
    current_user: CurrentUser,
    hub: CurrentHub,
    repo: Optional[str] = None,
    path: Optional[str] = None,
    if_none_match: Annotated[Optional[str], Header()] = None,
) -> StreamingResponse:
    """Stream file content. 304 when If-None-Match equals the stored checksum."""
    resource = await _resource(hub, current_user, repo, path)
    obj, stream = await hub.files.open(current_user, resource, if_none_match=_strip_etag(if_none_match))
    headers = {
        "Content-Length": str(obj.size),
        "Last-Modified": format_datetime(as_utc(obj.mod_time), usegmt=True),
    }
    if obj.checksum:
        headers["ETag"] = obj.checksum
    return StreamingResponse(stream, media_type=obj.content_type, headers=headers)


@router.get("/version", response_model=VersionResponse)
@limiter.limit(SYNC_RATE)
async def version(
    request: Request,
    current_user: CurrentUser,
    hub: CurrentHub,
    repo: Optional[str] = None,
) -> VersionResponse:
    """Current version token of a repository."""
    resource = await _resource(hub, current_user, repo, "/")
    async with hub.db.session() as session:
        await check_repo_access(session, current_user, resource.repo)
        rv = await get_current_version(session, resource.repo.id)
    return VersionResponse(
        version=rv.current_version, vector=rv.version_vector, timestamp=as_utc(rv.updated_at)
    )


@router.get("/changes", response_model=ChangesResponse)
@limiter.limit(SYNC_RATE)
async def changes(
    request: Request,
    current_user: CurrentUser,
    hub: CurrentHub,
    repo: Optional[str] = None,
    since: Optional[str] = None,
    limit: int = 100,
) -> ChangesResponse:
    """Changes after since (all when empty) in recording order, plus the current version."""
    resource = await _resource(hub, current_user, repo, "/")
    async with hub.db.session() as session:
        await check_repo_access(session, current_user, resource.repo)
        rows = await list_changes(session, resource.repo.id, since=since, limit=limit)
        rv = await get_current_version(session, resource.repo.id)
    return ChangesResponse(
        version=rv.current_version,
        changes=[ChangeInfo.model_validate(r) for r in rows],
        changed=len(rows),
    )


@router.get("/status", response_model=SyncStatusResponse)
@limiter.limit(SYNC_RATE)
async def sync_status(
    request: Request,
    current_user: CurrentUser,
    hub: CurrentHub,
    repo: Optional[str] = None,
    path: Optional[str] = None,
    client_etag: Optional[str] = None,
) -> SyncStatusResponse:
    """Compare the client's etag with the server copy: new, modified or synced."""
    resource = await _resource(hub, current_user, repo, path)
    try:
        obj = await hub.files.get_info(current_user, resource)
    except NotFound:
        return SyncStatusResponse(status="new")
    if client_etag and client_etag == obj.checksum:
        state = "synced"
    else:
        state = "modified"
    return SyncStatusResponse(status=state, info=FileInfo.model_validate(obj))


@router.post("/upload/begin", response_model=BeginUploadResponse)
@limiter.limit(SYNC_RATE)
async def upload_begin(
    request: Request,
    current_user: CurrentUser,
    hub: CurrentHub,
    repo: Optional[str] = None,
    path: Optional[str] = None,
    total_size: Optional[int] = None,
) -> BeginUploadResponse:
    """Start or resume a chunked upload."""
    if total_size is None:
        raise BadRequest("total_size parameter is required")
    resource = await _resource(hub, current_user, repo, path)
    begun = await hub.uploads.begin(current_user, resource, total_size)
    return BeginUploadResponse(
        upload_id=begun.session.upload_id,
        total_chunks=begun.session.total_chunks,
        chunk_size=CHUNK_SIZE,
        uploaded_chunks=begun.uploaded_chunks,
    )


@router.post("/upload/chunk", response_model=AckResponse)
@limiter.limit(CHUNK_RATE)
async def upload_chunk(
    request: Request,
    current_user: CurrentUser,
    hub: CurrentHub,
    upload_id: Optional[str] = None,
    chunk_index: Optional[int] = None,
) -> AckResponse:
    """Body is the chunk's bytes. Re-sending an index replaces it."""
    if not upload_id or chunk_index is None:
        raise BadRequest("upload_id and chunk_index parameters are required")
    message = f"chunk larger than {CHUNK_SIZE} bytes"
    length = _content_length(request)
    if length is not None and length > CHUNK_SIZE:
        raise BadRequest(message)
    data = b"".join([block async for block in _limited_body(request, CHUNK_SIZE, message)])
    await hub.uploads.upload_chunk(current_user, upload_id, chunk_index, data)
    return AckResponse(message=f"Chunk {chunk_index} uploaded")


@router.post("/upload/finalize", response_model=FinalizeUploadResponse)
@limiter.limit(SYNC_RATE)
async def upload_finalize(
    request: Request,
    current_user: CurrentUser,
    hub: CurrentHub,
    upload_id: Optional[str] = None,
) -> FinalizeUploadResponse:
    """Assemble the staged chunks into the target file."""
    if not upload_id:
        raise BadRequest("upload_id parameter is required")
    result = await hub.uploads.finalize(current_user, upload_id)
    return FinalizeUploadResponse(etag=result.checksum, size=result.size)


@router.delete("/upload/cancel", response_model=AckResponse)
@limiter.limit(SYNC_RATE)
async def upload_cancel(
    request: Request,
    current_user: CurrentUser,
    hub: CurrentHub,
    upload_id: Optional[str] = None,
) -> AckResponse:
    if not upload_id:
        raise BadRequest("upload_id parameter is required")
    await hub.uploads.cancel(current_user, upload_id)
    return AckResponse(message="Upload cancelled")


@router.get("/quota", response_model=QuotaResponse)
@limiter.limit(SYNC_RATE)
async def quota(
    request: Request,
    current_user: CurrentUser,
    hub: CurrentHub,
) -> QuotaResponse:
    """Storage used and allowed for the current user."""
    async with hub.db.session() as session:
        row = await get_quota(session, current_user.id)
    if row is None:
        return QuotaResponse(used_bytes=0, total_bytes=None)
    return QuotaResponse(used_bytes=row.used_bytes, total_bytes=row.total_bytes)
