"""
Object storage for uploaded documents and generated invoices.

Files live in a GridFS bucket on the application database, addressed by a key
such as ``uploads/<uuid>.pdf``. Upload extensions come from the verified MIME
type, never from the client's filename.
"""

import logging
import uuid
from typing import Optional

import gridfs
from gridfs.errors import NoFile
from fastapi import APIRouter, File, HTTPException, UploadFile

from database import require_db
from settings import ALLOWED_UPLOAD_TYPES, MAX_FILE_SIZE

logger = logging.getLogger(__name__)

BUCKET_NAME = "files"

MAGIC_BYTES = {
    "image/jpeg": [b"\xff\xd8\xff"],
    "image/png": [b"\x89PNG"],
    "application/pdf": [b"%PDF"],
}

MIME_ALIASES = {"image/jpg": "image/jpeg"}

MIME_TO_EXT = {
    "image/jpeg": "jpg",
    "image/png": "png",
    "application/pdf": "pdf",
}


def canonical_mime(declared: str) -> str:
    return MIME_ALIASES.get(declared, declared)


def matches_magic_bytes(data: bytes, declared: str) -> bool:
    signatures = MAGIC_BYTES.get(canonical_mime(declared))
    if not signatures:
        return False
    return any(data.startswith(sig) for sig in signatures)


def upload_key(mime_type: str) -> str:
    ext = MIME_TO_EXT.get(canonical_mime(mime_type), "bin")
    return f"uploads/{uuid.uuid4()}.{ext}"


def _bucket() -> gridfs.GridFSBucket:
    return gridfs.GridFSBucket(require_db(), bucket_name=BUCKET_NAME)


def put_object(key: str, data: bytes, content_type: str) -> str:
    _bucket().upload_from_stream(key, data, metadata={"content_type": content_type})
    return key


def get_object(key: str) -> Optional[bytes]:
    try:
        return _bucket().open_download_stream_by_name(key).read()
    except NoFile:
        return None


router = APIRouter(tags=["uploads"])


@router.post("/api/upload", status_code=201)
async def upload_file(file: UploadFile = File(...)):
    mime_type = file.content_type or ""
    if mime_type not in ALLOWED_UPLOAD_TYPES:
        raise HTTPException(status_code=400, detail="Only JPEG, PNG, and PDF files are allowed")

    data = await file.read(MAX_FILE_SIZE + 1)
    if len(data) > MAX_FILE_SIZE:
        raise HTTPException(status_code=400, detail="File must be under 5MB")
    if not matches_magic_bytes(data, mime_type):
        raise HTTPException(status_code=400, detail="File content does not match its declared type")

    key = upload_key(mime_type)
    put_object(key, data, canonical_mime(mime_type))
    logger.info("Stored upload %s (%d bytes)", key, len(data))
    return {
        "key": key,
        "file_name": file.filename,
        "file_size": len(data),
        "mime_type": canonical_mime(mime_type),
    }
