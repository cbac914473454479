import io
import os
import sys
from pathlib import Path

import pytest
from PIL import Image

sys.path.append(str(Path(__file__).resolve().parents[1]))
import uploads  # noqa: E402
from supabase_client import SupabaseError  # noqa: E402
from uploads import PendingFile, UploadError  # noqa: E402


def noise_png(width, height):
    image = Image.frombytes("RGB", (width, height), os.urandom(width * height * 3))
    buffer = io.BytesIO()
    image.save(buffer, format="PNG")
    return buffer.getvalue()


class StorageRecorder:
    def __init__(self, fail_on=None):
        self.fail_on = fail_on
        self.uploads = []
        self.removed = []

    def upload(self, bucket, path, content, content_type, access_token=None, **kwargs):
        if self.fail_on and content == self.fail_on:
            raise SupabaseError("new row violates row-level security policy", status_code=403)
        self.uploads.append((bucket, path, content_type, len(content), access_token))
        return {"Key": f"{bucket}/{path}"}

    def public_url(self, bucket, path):
        return f"https://demo.supabase.co/storage/v1/object/public/{bucket}/{path}"

    def remove(self, bucket, paths):
        self.removed.append((bucket, list(paths)))
        return []


def install(monkeypatch, recorder):
    monkeypatch.setattr(uploads, "storage_upload", recorder.upload)
    monkeypatch.setattr(uploads, "storage_public_url", recorder.public_url)
    monkeypatch.setattr(uploads, "storage_remove", recorder.remove)


@pytest.mark.parametrize(
    "size, expected",
    [
        ((2000, 1000), (1920, 960)),
        ((1000, 3000), (640, 1920)),
        ((2500, 2500), (1920, 1920)),
        ((800, 600), (800, 600)),
    ],
)
def test_scaled_dimensions(size, expected):
    assert uploads.scaled_dimensions(*size) == expected


def test_format_size_kb_rounds():
    assert uploads.format_size_kb(1024) == "1KB"
    assert uploads.format_size_kb(1536) == "2KB"
    assert uploads.format_size_kb(100) == "0KB"


def test_large_image_is_downscaled_to_jpeg():
    data = noise_png(2000, 1000)
    assert len(data) > uploads.COMPRESSION_THRESHOLD_BYTES
    original = PendingFile(name="captura.png", content_type="image/png", data=data)

    compressed = uploads.compress_image(original)

    assert compressed.content_type == "image/jpeg"
    assert compressed.name == "captura.png"
    assert compressed.size < original.size
    with Image.open(io.BytesIO(compressed.data)) as image:
        assert image.size == (1920, 960)
        assert image.format == "JPEG"


def test_small_image_is_left_alone():
    original = PendingFile(name="icono.png", content_type="image/png", data=noise_png(32, 32))

    assert uploads.compress_image(original) is original


def test_non_image_is_left_alone():
    original = PendingFile(name="video.mp4", content_type="video/mp4", data=b"\x00" * (2 * 1024 * 1024))

    assert uploads.compress_image(original) is original


def test_undecodable_image_falls_back_to_original():
    original = PendingFile(name="rota.png", content_type="image/png", data=b"not-a-png" * 200_000)

    assert uploads.compress_image(original) is original


def test_oversized_pixel_count_falls_back_to_original(monkeypatch):
    data = noise_png(2000, 1000)
    monkeypatch.setattr(uploads.Image, "MAX_IMAGE_PIXELS", 1000)
    original = PendingFile(name="gigante.png", content_type="image/png", data=data)

    assert uploads.compress_image(original) is original


def test_upload_files_returns_attachment_records(monkeypatch):
    recorder = StorageRecorder()
    install(monkeypatch, recorder)
    files = [
        PendingFile(name="manual.pdf", content_type="application/pdf", data=b"%PDF" * 512),
        PendingFile(name="notas", content_type="text/plain", data=b"hola"),
    ]

    result = uploads.upload_files(files, bucket="ticket-attachments", access_token="tok")

    assert [r.name for r in result] == ["manual.pdf", "notas"]
    assert result[0].size == "2KB"
    assert result[0].path.endswith(".pdf")
    assert result[1].path.endswith(".bin")
    assert result[0].url == f"https://demo.supabase.co/storage/v1/object/public/ticket-attachments/{result[0].path}"
    assert len(result[0].id) == 9
    assert {u[4] for u in recorder.uploads} == {"tok"}
    assert len({r.path for r in result}) == 2


def test_one_failure_fails_the_batch(monkeypatch):
    recorder = StorageRecorder(fail_on=b"mala")
    install(monkeypatch, recorder)
    files = [
        PendingFile(name="ok.txt", content_type="text/plain", data=b"buena"),
        PendingFile(name="bad.txt", content_type="text/plain", data=b"mala"),
    ]

    with pytest.raises(UploadError, match="Error al subir archivos"):
        uploads.upload_files(files, bucket="ticket-attachments")

    stored_paths = [u[1] for u in recorder.uploads]
    assert len(stored_paths) == 1
    assert recorder.removed == [("ticket-attachments", stored_paths)]


def test_empty_batch_skips_storage(monkeypatch):
    recorder = StorageRecorder()
    install(monkeypatch, recorder)

    assert uploads.upload_files([]) == []
    assert recorder.uploads == []


def test_verify_upload_removes_test_object(monkeypatch):
    recorder = StorageRecorder()
    install(monkeypatch, recorder)

    assert uploads.verify_upload("ticket-attachments") is True
    test_path = recorder.uploads[0][1]
    assert test_path.startswith("test-") and test_path.endswith(".txt")
    assert recorder.removed == [("ticket-attachments", [test_path])]


def test_verify_bucket_reports_missing_bucket(monkeypatch):
    def missing(bucket, prefix="", limit=100):
        raise SupabaseError("Bucket not found", status_code=404)

    monkeypatch.setattr(uploads, "storage_list", missing)

    assert uploads.verify_bucket("ticket-attachments") is False
