# Copyright (c) 2024, Crash Override, Inc.
#
# This file is part of the lifecycle acceptance harness
"""
In-memory subset of the Docker Registry HTTP API V2

Just enough of the distribution API for ``docker push`` and ``docker pull``
plus basic auth and per-image access privileges, so that tests can exercise
read-only and inaccessible images.
"""
import hashlib
import threading
import uuid
from dataclasses import dataclass, field
from typing import Optional

from fastapi import Depends, FastAPI, Request, Response
from fastapi.responses import JSONResponse

from ..auth import Credentials
from ..utils.log import get_logger


logger = get_logger()

API_HEADERS = {"Docker-Distribution-API-Version": "registry/2.0"}
REALM = "lifecycle-acceptance"


@dataclass(frozen=True)
class ImagePrivileges:
    readable: bool = True
    writable: bool = True


READ_WRITE = ImagePrivileges(readable=True, writable=True)
READ_ONLY = ImagePrivileges(readable=True, writable=False)
INACCESSIBLE = ImagePrivileges(readable=False, writable=False)


@dataclass(frozen=True)
class Manifest:
    content: bytes
    media_type: str

    @property
    def digest(self) -> str:
        return sha256_digest(self.content)


@dataclass
class RegistryStore:
    """
    Registry storage which can be shared by several registry servers
    """

    blobs: dict[str, bytes] = field(default_factory=dict)
    manifests: dict[str, dict[str, Manifest]] = field(default_factory=dict)
    uploads: dict[str, bytearray] = field(default_factory=dict)
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def start_upload(self) -> str:
        upload = str(uuid.uuid4())
        with self.lock:
            self.uploads[upload] = bytearray()
        return upload

    def append_upload(self, upload: str, data: bytes) -> int:
        with self.lock:
            buffer = self.uploads[upload]
            buffer.extend(data)
            return len(buffer)

    def finish_upload(self, upload: str, digest: str) -> bytes:
        with self.lock:
            blob = bytes(self.uploads.pop(upload))
        if sha256_digest(blob) != digest:
            raise RegistryError(400, "DIGEST_INVALID", f"digest mismatch for {digest}")
        with self.lock:
            self.blobs[digest] = blob
        return blob

    def put_manifest(self, name: str, reference: str, manifest: Manifest):
        with self.lock:
            refs = self.manifests.setdefault(name, {})
            refs[reference] = manifest
            refs[manifest.digest] = manifest

    def get_manifest(self, name: str, reference: str) -> Manifest:
        with self.lock:
            manifest = self.manifests.get(name, {}).get(reference)
        if manifest is None:
            raise RegistryError(404, "MANIFEST_UNKNOWN", f"{name}:{reference}")
        return manifest

    def delete_manifest(self, name: str, reference: str):
        with self.lock:
            refs = self.manifests.get(name, {})
            manifest = refs.get(reference)
            if manifest is None:
                raise RegistryError(404, "MANIFEST_UNKNOWN", f"{name}:{reference}")
            for ref in [k for k, v in refs.items() if v == manifest]:
                del refs[ref]

    def tags(self, name: str) -> list[str]:
        with self.lock:
            if name not in self.manifests:
                raise RegistryError(404, "NAME_UNKNOWN", name)
            return sorted(
                i for i in self.manifests[name] if not i.startswith("sha256:")
            )


class RegistryError(Exception):
    def __init__(
        self,
        status_code: int,
        code: str,
        message: str,
        headers: Optional[dict[str, str]] = None,
    ):
        self.status_code = status_code
        self.code = code
        self.message = message
        self.headers = headers or {}
        super().__init__(f"{code}: {message}")


def sha256_digest(data: bytes) -> str:
    return f"sha256:{hashlib.sha256(data).hexdigest()}"


def create_app(
    store: RegistryStore,
    credentials: Optional[Credentials] = None,
    privileges: Optional[dict[str, ImagePrivileges]] = None,
) -> FastAPI:
    """
    Registry API app

    When credentials are given, every request has to present them via
    basic auth. When privileges are given, they are looked up by image
    name on every request and missing names are readable and writable.
    """
    app = FastAPI(title="lifecycle acceptance registry")

    @app.exception_handler(RegistryError)
    async def registry_error(request: Request, e: RegistryError):
        logger.debug(
            "registry error",
            method=request.method,
            path=request.url.path,
            code=e.code,
            status_code=e.status_code,
        )
        return JSONResponse(
            {"errors": [{"code": e.code, "message": e.message}]},
            status_code=e.status_code,
            headers={**API_HEADERS, **e.headers},
        )

    def authenticate(request: Request):
        if credentials is None:
            return
        try:
            presented = Credentials.from_header(request.headers.get("authorization", ""))
        except ValueError:
            presented = None
        if presented != credentials:
            raise RegistryError(
                401,
                "UNAUTHORIZED",
                "authentication required",
                headers={"WWW-Authenticate": f'Basic realm="{REALM}"'},
            )

    def authorize(request: Request, name: str, _=Depends(authenticate)):
        if privileges is None:
            return
        allowed = privileges.get(name, READ_WRITE)
        if request.method in {"GET", "HEAD"}:
            permitted = allowed.readable
        else:
            permitted = allowed.writable
        if not permitted:
            raise RegistryError(403, "DENIED", f"{request.method} denied for {name}")

    @app.api_route("/v2/", methods=["GET", "HEAD"], dependencies=[Depends(authenticate)])
    async def base():
        return JSONResponse({}, headers=API_HEADERS)

    @app.post("/v2/{name:path}/blobs/uploads/", dependencies=[Depends(authorize)])
    async def start_upload(
        name: str,
        request: Request,
        digest: Optional[str] = None,
        mount: Optional[str] = None,
    ):
        if mount and mount in store.blobs:
            return blob_created(name, mount)
        upload = store.start_upload()
        if digest:
            store.append_upload(upload, await request.body())
            store.finish_upload(upload, digest)
            return blob_created(name, digest)
        return Response(
            status_code=202,
            headers={
                **API_HEADERS,
                "Location": f"/v2/{name}/blobs/uploads/{upload}",
                "Docker-Upload-UUID": upload,
                "Range": "0-0",
            },
        )

    @app.patch(
        "/v2/{name:path}/blobs/uploads/{upload}", dependencies=[Depends(authorize)]
    )
    async def patch_upload(name: str, upload: str, request: Request):
        size = append(upload, await request.body())
        return Response(
            status_code=202,
            headers={
                **API_HEADERS,
                "Location": f"/v2/{name}/blobs/uploads/{upload}",
                "Docker-Upload-UUID": upload,
                "Range": f"0-{max(size - 1, 0)}",
            },
        )

    @app.put(
        "/v2/{name:path}/blobs/uploads/{upload}", dependencies=[Depends(authorize)]
    )
    async def finish_upload(name: str, upload: str, digest: str, request: Request):
        append(upload, await request.body())
        store.finish_upload(upload, digest)
        return blob_created(name, digest)

    @app.api_route(
        "/v2/{name:path}/blobs/{digest}",
        methods=["GET", "HEAD"],
        dependencies=[Depends(authorize)],
    )
    async def get_blob(name: str, digest: str, request: Request):
        blob = store.blobs.get(digest)
        if blob is None:
            raise RegistryError(404, "BLOB_UNKNOWN", digest)
        return content(
            request,
            blob,
            media_type="application/octet-stream",
            digest=digest,
        )

    @app.api_route(
        "/v2/{name:path}/manifests/{reference}",
        methods=["GET", "HEAD"],
        dependencies=[Depends(authorize)],
    )
    async def get_manifest(name: str, reference: str, request: Request):
        manifest = store.get_manifest(name, reference)
        return content(
            request,
            manifest.content,
            media_type=manifest.media_type,
            digest=manifest.digest,
        )

    @app.put(
        "/v2/{name:path}/manifests/{reference}", dependencies=[Depends(authorize)]
    )
    async def put_manifest(name: str, reference: str, request: Request):
        manifest = Manifest(
            content=await request.body(),
            media_type=request.headers.get("content-type", ""),
        )
        store.put_manifest(name, reference, manifest)
        logger.info("manifest pushed", name=name, reference=reference)
        return Response(
            status_code=201,
            headers={
                **API_HEADERS,
                "Location": f"/v2/{name}/manifests/{manifest.digest}",
                "Docker-Content-Digest": manifest.digest,
            },
        )

    @app.delete(
        "/v2/{name:path}/manifests/{reference}", dependencies=[Depends(authorize)]
    )
    async def delete_manifest(name: str, reference: str):
        store.delete_manifest(name, reference)
        return Response(status_code=202, headers=API_HEADERS)

    @app.get("/v2/{name:path}/tags/list", dependencies=[Depends(authorize)])
    async def list_tags(name: str):
        return JSONResponse({"name": name, "tags": store.tags(name)}, headers=API_HEADERS)

    def append(upload: str, data: bytes) -> int:
        try:
            return store.append_upload(upload, data)
        except KeyError:
            raise RegistryError(404, "BLOB_UPLOAD_UNKNOWN", upload) from None

    return app


def blob_created(name: str, digest: str) -> Response:
    return Response(
        status_code=201,
        headers={
            **API_HEADERS,
            "Location": f"/v2/{name}/blobs/{digest}",
            "Docker-Content-Digest": digest,
        },
    )


def content(request: Request, data: bytes, *, media_type: str, digest: str) -> Response:
    headers = {
        **API_HEADERS,
        "Docker-Content-Digest": digest,
        "Content-Length": str(len(data)),
    }
    return Response(
        content=b"" if request.method == "HEAD" else data,
        media_type=media_type,
        headers=headers,
    )
