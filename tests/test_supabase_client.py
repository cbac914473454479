import sys
from pathlib import Path

import pytest
import requests

sys.path.append(str(Path(__file__).resolve().parents[1]))
import supabase_client  # noqa: E402
from supabase_client import SupabaseError  # noqa: E402


class FakeResponse:
    def __init__(self, status_code=200, payload=None, text=""):
        self.status_code = status_code
        self._payload = payload
        self.text = text
        self.content = b"" if payload is None and not text else b"x"

    def json(self):
        if self._payload is None:
            raise ValueError("no json")
        return self._payload


class RequestRecorder:
    def __init__(self, response):
        self.response = response
        self.calls = []

    def __call__(self, method, url, headers=None, timeout=None, **kwargs):
        self.calls.append({"method": method, "url": url, "headers": headers, "timeout": timeout, **kwargs})
        if isinstance(self.response, Exception):
            raise self.response
        return self.response


@pytest.fixture
def configured(monkeypatch):
    monkeypatch.setattr(supabase_client, "SUPABASE_URL", "https://demo.supabase.co")
    monkeypatch.setattr(supabase_client, "SUPABASE_ANON_KEY", "anon-key")
    monkeypatch.setattr(supabase_client, "SUPABASE_SERVICE_ROLE_KEY", None)


def install(monkeypatch, response):
    recorder = RequestRecorder(response)
    monkeypatch.setattr(supabase_client.requests, "request", recorder)
    return recorder


def test_missing_configuration_raises(monkeypatch):
    monkeypatch.setattr(supabase_client, "SUPABASE_URL", "")
    monkeypatch.setattr(supabase_client, "SUPABASE_ANON_KEY", None)

    with pytest.raises(SupabaseError):
        supabase_client.sign_in_with_password("a@gmail.com", "secret")


def test_sign_in_posts_password_grant(configured, monkeypatch):
    session = {"access_token": "jwt", "refresh_token": "r", "user": {"id": "u-1"}}
    recorder = install(monkeypatch, FakeResponse(200, session))

    result = supabase_client.sign_in_with_password("a@gmail.com", "secret")

    call = recorder.calls[0]
    assert result == session
    assert call["method"] == "POST"
    assert call["url"] == "https://demo.supabase.co/auth/v1/token?grant_type=password"
    assert call["json"] == {"email": "a@gmail.com", "password": "secret"}
    assert call["headers"]["apikey"] == "anon-key"


def test_sign_in_error_carries_backend_message(configured, monkeypatch):
    install(monkeypatch, FakeResponse(400, {"error": "invalid_grant", "error_description": "Invalid login credentials"}))

    with pytest.raises(SupabaseError) as excinfo:
        supabase_client.sign_in_with_password("a@gmail.com", "bad")

    assert str(excinfo.value) == "Invalid login credentials"
    assert excinfo.value.status_code == 400


def test_sign_in_without_session_is_an_error(configured, monkeypatch):
    install(monkeypatch, FakeResponse(200, {"user": {"id": "u-1"}}))

    with pytest.raises(SupabaseError):
        supabase_client.sign_in_with_password("a@gmail.com", "secret")


def test_network_failure_becomes_supabase_error(configured, monkeypatch):
    install(monkeypatch, requests.ConnectionError("connection refused"))

    with pytest.raises(SupabaseError, match="Supabase request failed"):
        supabase_client.sign_out("jwt")


def test_sign_up_sends_metadata(configured, monkeypatch):
    recorder = install(monkeypatch, FakeResponse(200, {"id": "u-2"}))

    supabase_client.sign_up("b@gmail.com", "secret", {"name": "B", "role": "Ejecutivo", "area": "Soporte"})

    assert recorder.calls[0]["url"].endswith("/auth/v1/signup")
    assert recorder.calls[0]["json"]["data"] == {"name": "B", "role": "Ejecutivo", "area": "Soporte"}


def test_sign_out_uses_user_token(configured, monkeypatch):
    recorder = install(monkeypatch, FakeResponse(204))

    supabase_client.sign_out("jwt-user")

    assert recorder.calls[0]["url"].endswith("/auth/v1/logout")
    assert recorder.calls[0]["headers"]["Authorization"] == "Bearer jwt-user"


def test_storage_upload_sets_object_headers(configured, monkeypatch):
    recorder = install(monkeypatch, FakeResponse(200, {"Key": "ticket-attachments/a b.png"}))

    supabase_client.storage_upload("ticket-attachments", "a b.png", b"data", "image/png")

    call = recorder.calls[0]
    assert call["url"] == "https://demo.supabase.co/storage/v1/object/ticket-attachments/a%20b.png"
    assert call["headers"]["Content-Type"] == "image/png"
    assert call["headers"]["cache-control"] == "max-age=3600"
    assert call["headers"]["x-upsert"] == "false"
    assert call["data"] == b"data"


def test_service_key_is_preferred_for_storage(configured, monkeypatch):
    monkeypatch.setattr(supabase_client, "SUPABASE_SERVICE_ROLE_KEY", "service-key")
    recorder = install(monkeypatch, FakeResponse(200, []))

    supabase_client.storage_list("ticket-attachments", limit=1)

    headers = recorder.calls[0]["headers"]
    assert headers["apikey"] == "service-key"
    assert headers["Authorization"] == "Bearer service-key"
    assert recorder.calls[0]["json"] == {"prefix": "", "limit": 1, "offset": 0}


def test_public_url_format(configured):
    url = supabase_client.storage_public_url("ticket-attachments", "abc-1.jpg")

    assert url == "https://demo.supabase.co/storage/v1/object/public/ticket-attachments/abc-1.jpg"
