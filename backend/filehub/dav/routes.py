"""WebDAV (class 1) routes under /dav/<repo>/<path>."""

import logging
from typing import Annotated, Optional, Tuple
from urllib.parse import unquote, urlsplit

from fastapi import APIRouter, Depends, Request, Response
from fastapi.responses import StreamingResponse

from filehub.auth.dependencies import get_current_user, get_hub
from filehub.dav.multistatus import (
    XML_CONTENT_TYPE,
    add_response,
    format_etag,
    format_rfc1123,
    href_for,
    new_multistatus,
    parse_propfind,
    to_bytes,
)
from filehub.errors import (
    BadRequest,
    Conflict,
    Forbidden,
    MethodNotAllowed,
    NotFound,
    PreconditionFailed,
    Unsupported,
)
from filehub.files.paths import is_within
from filehub.files.service import Resource
from filehub.files.store import MAX_LIMIT
from filehub.hub import Hub
from filehub.repos.service import resolve_for_principal
from filehub.users.models import User

router = APIRouter(prefix="/dav", tags=["webdav"])
log = logging.getLogger(__name__)

ALLOW = "OPTIONS,GET,PUT,DELETE,COPY,MOVE,PROPFIND,MKCOL"
DAV_PREFIX = "/dav/"

CurrentUser = Annotated[User, Depends(get_current_user)]
CurrentHub = Annotated[Hub, Depends(get_hub)]


def _repo_path(path: Optional[str]) -> str:
    """URL remainder after the repository name -> repository path ("" and "/" are the root)."""
    trimmed = (path or "").strip("/")
    return f"/{trimmed}" if trimmed else "/"


async def _resource(hub: Hub, user: User, repo: str, path: Optional[str]) -> Resource:
    async with hub.db.session() as session:
        repository = await resolve_for_principal(session, repo, user)
    return Resource(repo=repository, path=_repo_path(path))


def parse_destination(header: Optional[str]) -> Tuple[str, str]:
    """Destination header (absolute URL or path) -> (repo name, repository path)."""
    if not header:
        raise BadRequest("Destination header is required")
    try:
        url_path = unquote(urlsplit(header).path)
    except ValueError as e:
        raise BadRequest(f"Invalid destination: {header}") from e
    if not url_path.startswith(DAV_PREFIX):
        raise BadRequest(f"Invalid destination: {header}")
    repo, _, rest = url_path[len(DAV_PREFIX):].partition("/")
    if not repo:
        raise BadRequest(f"Invalid destination: {header}")
    return repo, _repo_path(rest)


@router.options("")
@router.options("/{repo}")
@router.options("/{repo}/{path:path}")
async def options() -> Response:
    return Response(status_code=200, headers={"Allow": ALLOW})


async def _propfind(request: Request, hub: Hub, user: User, repo: str, path: Optional[str]) -> Response:
    depth = request.headers.get("Depth", "infinity").strip()
    if depth not in ("0", "1"):
        raise Forbidden(f"Depth {depth} is not supported")
    req = parse_propfind(await request.body())
    resource = await _resource(hub, user, repo, path)
    obj = await hub.files.get_info(user, resource)
    name = resource.repo.name
    multistatus = new_multistatus()
    add_response(multistatus, href_for(name, obj), obj, req)
    if depth == "1" and obj.is_dir:
        offset = 0
        while True:
            page = await hub.files.list(user, resource, offset=offset, limit=MAX_LIMIT)
            for child in page.items:
                add_response(multistatus, href_for(name, child), child, req)
            if not page.has_more:
                break
            offset += page.limit
    log.debug("PROPFIND repo=%s path=%s depth=%s", name, obj.path, depth)
    return Response(content=to_bytes(multistatus), status_code=207, media_type=XML_CONTENT_TYPE)


@router.api_route("/{repo}", methods=["PROPFIND"])
@router.api_route("/{repo}/{path:path}", methods=["PROPFIND"])
async def propfind(
    request: Request,
    current_user: CurrentUser,
    hub: CurrentHub,
    repo: str,
    path: Optional[str] = None,
) -> Response:
    """Properties of a resource, and of its children with Depth: 1."""
    return await _propfind(request, hub, current_user, repo, path)


@router.get("/{repo}")
@router.get("/{repo}/{path:path}")
async def get(
    current_user: CurrentUser,
    hub: CurrentHub,
    repo: str,
    path: Optional[str] = None,
) -> StreamingResponse:
    resource = await _resource(hub, current_user, repo, path)
    obj, stream = await hub.files.open(current_user, resource)
    headers = {
        "Content-Length": str(obj.size),
        "ETag": f'"{format_etag(obj)}"',
        "Last-Modified": format_rfc1123(obj),
    }
    return StreamingResponse(stream, media_type=obj.content_type, headers=headers)


@router.put("/{repo}/{path:path}")
async def put(
    request: Request,
    current_user: CurrentUser,
    hub: CurrentHub,
    repo: str,
    path: str,
) -> Response:
    """Store the request body. 201 when the file is new, 204 when it replaced one; 409 without a parent."""
    resource = await _resource(hub, current_user, repo, path)
    length = request.headers.get("content-length")
    try:
        result = await hub.files.put(
            current_user,
            resource,
            request.stream(),
            content_type=request.headers.get("content-type"),
            size_hint=int(length) if length and length.isdigit() else None,
        )
    except NotFound as e:
        raise Conflict(e.message) from e
    return Response(status_code=201 if result.created else 204)


@router.delete("/{repo}/{path:path}")
async def delete(
    current_user: CurrentUser,
    hub: CurrentHub,
    repo: str,
    path: str,
) -> Response:
    resource = await _resource(hub, current_user, repo, path)
    await hub.files.delete(current_user, resource, recursive=True)
    return Response(status_code=204)


@router.api_route("/{repo}/{path:path}", methods=["MKCOL"])
async def mkcol(
    request: Request,
    current_user: CurrentUser,
    hub: CurrentHub,
    repo: str,
    path: str,
) -> Response:
    """Create a collection. 405 if something exists there, 409 if the parent is missing."""
    if await request.body():
        raise Unsupported("MKCOL request bodies are not supported")
    resource = await _resource(hub, current_user, repo, path)
    try:
        await hub.files.create_dir(current_user, resource)
    except NotFound as e:
        raise Conflict(e.message) from e
    except Conflict as e:
        if e.message.startswith("Already exists"):
            raise MethodNotAllowed(e.message, headers={"Allow": ALLOW}) from e
        raise
    return Response(status_code=201)


async def _transfer(request: Request, hub: Hub, user: User, repo: str, path: str, move: bool) -> Response:
    overwrite = request.headers.get("Overwrite", "T").strip().upper()
    if overwrite not in ("T", "F"):
        raise BadRequest("Overwrite must be T or F")
    dst_repo, dst_path = parse_destination(request.headers.get("Destination"))
    src = await _resource(hub, user, repo, path)
    dst = await _resource(hub, user, dst_repo, dst_path)
    if src.repo.id != dst.repo.id:
        raise BadRequest("Source and destination must be in the same repository")
    await hub.files.get_info(user, src)
    if src.path == dst.path:
        raise Forbidden("Source and destination are the same")
    if is_within(dst.path, src.path):
        raise BadRequest("Destination lies inside the source")
    if is_within(src.path, dst.path):
        raise Conflict("Destination contains the source")
    existed = True
    try:
        await hub.files.get_info(user, dst)
    except NotFound:
        existed = False
    if existed:
        if overwrite == "F":
            raise PreconditionFailed(f"Destination exists: {dst.path}")
        await hub.files.delete(user, dst, recursive=True)
    if move:
        await hub.files.move(user, src, dst)
    else:
        await hub.files.copy(user, src, dst)
    return Response(status_code=204 if existed else 201)


@router.api_route("/{repo}/{path:path}", methods=["COPY"])
async def copy(
    request: Request,
    current_user: CurrentUser,
    hub: CurrentHub,
    repo: str,
    path: str,
) -> Response:
    return await _transfer(request, hub, current_user, repo, path, move=False)


@router.api_route("/{repo}/{path:path}", methods=["MOVE"])
async def move(
    request: Request,
    current_user: CurrentUser,
    hub: CurrentHub,
    repo: str,
    path: str,
) -> Response:
    return await _transfer(request, hub, current_user, repo, path, move=True)
