"""
Attachment sinks.

Two implementations share one interface (`save`, `delete`): GridFS for deployments with a
blob store, and inline base64 data URIs when none is configured. The sink is picked once at
startup from FILE_STORAGE.
"""
import base64
import logging
import os
from datetime import datetime
from typing import List, Optional

import gridfs
from bson import ObjectId
from fastapi import HTTPException, UploadFile

from common import get_db

logger = logging.getLogger(__name__)

MAX_FILE_SIZE = 5 * 1024 * 1024
MAX_FILES = 10
FILE_URL_PREFIX = "/api/files/"


class InlineStorage:
    """Keeps the bytes in the document itself as a data URI"""

    mode = "inline"

    def save(self, content: bytes, filename: str, content_type: str, prefix: str) -> str:
        encoded = base64.b64encode(content).decode()
        return f"data:{content_type};base64,{encoded}"

    def delete(self, url: Optional[str]) -> None:
        # nothing to free: the bytes go away with the field
        return None


class GridFSStorage:
    mode = "gridfs"

    def _fs(self):
        return gridfs.GridFS(get_db())

    def save(self, content: bytes, filename: str, content_type: str, prefix: str) -> str:
        key = f"{prefix}/{int(datetime.now().timestamp() * 1000)}_{filename}"
        try:
            fid = self._fs().put(content, filename=key, contentType=content_type)
        except Exception:
            logger.exception("GridFS upload failed for %s", key)
            raise HTTPException(status_code=500, detail="File upload failed")
        return f"{FILE_URL_PREFIX}{fid}"

    def delete(self, url: Optional[str]) -> None:
        if not url or not url.startswith(FILE_URL_PREFIX):
            return
        fid = url[len(FILE_URL_PREFIX):]
        if not ObjectId.is_valid(fid):
            return
        try:
            self._fs().delete(ObjectId(fid))
        except Exception as e:
            logger.warning("Could not delete old attachment %s: %s", url, e)

    def open(self, fid: str):
        if not ObjectId.is_valid(fid):
            raise HTTPException(status_code=404, detail="File not found")
        try:
            return self._fs().get(ObjectId(fid))
        except gridfs.errors.NoFile:
            raise HTTPException(status_code=404, detail="File not found")


def build_storage():
    if os.getenv("FILE_STORAGE", "inline").lower() == "gridfs":
        return GridFSStorage()
    return InlineStorage()


storage = build_storage()


# -------------------- Upload helpers --------------------

def check_upload_count(files: List[Optional[UploadFile]]) -> None:
    if len([f for f in files if f is not None]) > MAX_FILES:
        raise HTTPException(status_code=400, detail=f"Too many files. Maximum {MAX_FILES} files allowed")


async def read_image(file: UploadFile) -> bytes:
    if not (file.content_type or "").startswith("image/"):
        raise HTTPException(status_code=400, detail="Only image files are allowed!")
    content = await file.read()
    if len(content) > MAX_FILE_SIZE:
        raise HTTPException(status_code=400, detail="File too large. Maximum size is 5MB")
    return content


async def replace_attachment(file: Optional[UploadFile], old_url: Optional[str], prefix: str) -> Optional[str]:
    """Store `file` under `prefix`, removing the previous blob; None when no file was sent"""
    if file is None or not file.filename:
        return None
    content = await read_image(file)
    url = storage.save(content, file.filename, file.content_type, prefix)
    storage.delete(old_url)
    return url


async def save_attachments(files: dict, current: dict, prefix: str) -> dict:
    """Upload every present file in {field: UploadFile}; returns {field: url} for the ones stored"""
    check_upload_count(list(files.values()))
    stored = {}
    for field, upload in files.items():
        url = await replace_attachment(upload, current.get(field), prefix)
        if url:
            stored[field] = url
    return stored
