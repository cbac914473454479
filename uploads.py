"""Attachment upload pipeline: optional image downscaling, then Supabase Storage."""

from __future__ import annotations

import io
import logging
import os
import secrets
import time
import uuid
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, replace
from typing import Iterable, Optional

from PIL import Image, UnidentifiedImageError

from supabase_client import (
    SupabaseError,
    storage_list,
    storage_public_url,
    storage_remove,
    storage_upload,
)

logger = logging.getLogger(__name__)

STORAGE_BUCKET = os.getenv("STORAGE_BUCKET", "ticket-attachments")
COMPRESSION_THRESHOLD_BYTES = 1024 * 1024
MAX_IMAGE_DIMENSION = 1920
JPEG_QUALITY = 80
MAX_PARALLEL_UPLOADS = 4


class UploadError(RuntimeError):
    """Raised when any file of an upload batch could not be stored."""


@dataclass(frozen=True)
class PendingFile:
    name: str
    content_type: str
    data: bytes

    @property
    def size(self) -> int:
        return len(self.data)


@dataclass(frozen=True)
class UploadedFile:
    id: str
    name: str
    type: str
    url: str
    size: str
    path: str


def format_size_kb(num_bytes: int) -> str:
    return f"{int(num_bytes / 1024 + 0.5)}KB"


def scaled_dimensions(width: int, height: int, limit: int = MAX_IMAGE_DIMENSION) -> tuple[int, int]:
    """Shrink (width, height) so the longest side fits ``limit``, keeping the ratio."""

    if width > height:
        if width > limit:
            height = max(1, round(height * limit / width))
            width = limit
    elif height > limit:
        width = max(1, round(width * limit / height))
        height = limit
    return width, height


def compress_image(file: PendingFile) -> PendingFile:
    if not (file.content_type or "").startswith("image/"):
        return file
    if file.size < COMPRESSION_THRESHOLD_BYTES:
        return file

    try:
        with Image.open(io.BytesIO(file.data)) as image:
            image.load()
            size = scaled_dimensions(*image.size)
            if image.mode != "RGB":
                image = image.convert("RGB")
            if size != image.size:
                image = image.resize(size, Image.Resampling.LANCZOS)
            buffer = io.BytesIO()
            image.save(buffer, format="JPEG", quality=JPEG_QUALITY)
    except (UnidentifiedImageError, Image.DecompressionBombError, OSError, ValueError) as exc:
        logger.warning("Could not compress %s, uploading original: %s", file.name, exc)
        return file

    compressed = buffer.getvalue()
    if len(compressed) >= file.size:
        return file
    logger.info(
        "Compressed %s from %.2fMB to %.2fMB",
        file.name,
        file.size / 1024 / 1024,
        len(compressed) / 1024 / 1024,
    )
    return replace(file, content_type="image/jpeg", data=compressed)


def _storage_path(filename: str) -> str:
    ext = filename.rsplit(".", 1)[-1] if "." in filename else "bin"
    return f"{secrets.token_hex(6)}-{int(time.time() * 1000)}.{ext}"


def upload_file(
    original: PendingFile,
    bucket: str = STORAGE_BUCKET,
    access_token: Optional[str] = None,
) -> UploadedFile:
    file = compress_image(original)
    path = _storage_path(file.name)
    storage_upload(bucket, path, file.data, file.content_type, access_token=access_token)
    return UploadedFile(
        id=uuid.uuid4().hex[:9],
        name=original.name,
        type=file.content_type,
        url=storage_public_url(bucket, path),
        size=format_size_kb(file.size),
        path=path,
    )


def upload_files(
    files: Iterable[PendingFile],
    bucket: str = STORAGE_BUCKET,
    access_token: Optional[str] = None,
) -> list[UploadedFile]:
    """Upload a batch concurrently. A single failure fails the whole batch."""

    files = list(files)
    if not files:
        return []
    workers = min(MAX_PARALLEL_UPLOADS, len(files))
    with ThreadPoolExecutor(max_workers=workers) as executor:
        futures = [executor.submit(upload_file, f, bucket, access_token) for f in files]

    uploaded: list[UploadedFile] = []
    failure: Optional[Exception] = None
    for future in futures:
        try:
            uploaded.append(future.result())
        except (SupabaseError, OSError) as exc:
            failure = failure or exc
    if failure is None:
        return uploaded

    logger.error("Attachment upload failed: %s", failure)
    for item in uploaded:
        try:
            delete_file(item.path, bucket)
        except SupabaseError as exc:
            logger.warning("Could not remove %s after failed batch: %s", item.path, exc)
    raise UploadError("Error al subir archivos. Por favor intenta de nuevo.") from failure


def delete_file(path: str, bucket: str = STORAGE_BUCKET) -> None:
    storage_remove(bucket, [path])


def verify_bucket(bucket: str = STORAGE_BUCKET) -> bool:
    try:
        storage_list(bucket, limit=1)
    except SupabaseError as exc:
        logger.error("Storage bucket %s is not reachable: %s", bucket, exc)
        return False
    return True


def verify_upload(bucket: str = STORAGE_BUCKET) -> bool:
    """Upload and remove a small test file to check the bucket policies."""

    path = f"test-{int(time.time() * 1000)}.txt"
    try:
        storage_upload(bucket, path, b"Test file content", "text/plain")
        storage_remove(bucket, [path])
    except SupabaseError as exc:
        logger.error("Test upload to %s failed: %s", bucket, exc)
        return False
    return True
