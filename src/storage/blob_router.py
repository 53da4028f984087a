"""Serves filesystem blobs behind HMAC-signed URLs."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query, Response

from src.staging.errors import StorageError
from src.storage.blob_store import BlobStore, FilesystemBlobStore, get_blob_store


router = APIRouter(prefix="/blobs", tags=["blobs"])

_CONTENT_TYPES = {
    "jpg": "image/jpeg",
    "jpeg": "image/jpeg",
    "png": "image/png",
    "webp": "image/webp",
}


@router.get("/{path:path}")
def read_blob(
    path: str,
    expires: int = Query(...),
    signature: str = Query(..., min_length=1),
    blob_store: BlobStore = Depends(get_blob_store),
) -> Response:
    if not isinstance(blob_store, FilesystemBlobStore):
        raise HTTPException(status_code=404, detail="Not found")
    if not blob_store.verify(path, expires=expires, signature=signature):
        raise HTTPException(status_code=403, detail="Invalid or expired signature")

    try:
        content = blob_store.read(path)
    except StorageError as exc:
        raise HTTPException(status_code=404, detail="Not found") from exc

    extension = path.rsplit(".", 1)[-1].lower() if "." in path else ""
    return Response(
        content=content,
        media_type=_CONTENT_TYPES.get(extension, "application/octet-stream"),
        headers={"Cache-Control": "private, max-age=300"},
    )
