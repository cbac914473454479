"""Thin HTTP client for the hosted Supabase project (auth + storage)."""

from __future__ import annotations

import logging
import os
from typing import Optional
from urllib.parse import quote

import requests

logger = logging.getLogger(__name__)

SUPABASE_URL = (os.getenv("SUPABASE_URL") or "").rstrip("/")
SUPABASE_ANON_KEY = os.getenv("SUPABASE_ANON_KEY")
SUPABASE_SERVICE_ROLE_KEY = os.getenv("SUPABASE_SERVICE_ROLE_KEY")
DEFAULT_TIMEOUT = 15


class SupabaseError(RuntimeError):
    """Raised when the Supabase API rejects or cannot serve a request."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


def is_configured() -> bool:
    return bool(SUPABASE_URL and SUPABASE_ANON_KEY)


def _headers(access_token: Optional[str] = None, service: bool = False) -> dict[str, str]:
    if not is_configured():
        raise SupabaseError("SUPABASE_URL / SUPABASE_ANON_KEY are not configured.")
    api_key = SUPABASE_ANON_KEY
    bearer = access_token or api_key
    if service and SUPABASE_SERVICE_ROLE_KEY:
        api_key = SUPABASE_SERVICE_ROLE_KEY
        bearer = access_token or SUPABASE_SERVICE_ROLE_KEY
    return {"apikey": api_key, "Authorization": f"Bearer {bearer}"}


def _error_message(response: requests.Response) -> str:
    try:
        data = response.json()
    except ValueError:
        return response.text[:200] or f"HTTP {response.status_code}"
    if isinstance(data, dict):
        for key in ("error_description", "msg", "message", "error"):
            if data.get(key):
                return str(data[key])
    return f"HTTP {response.status_code}"


def _request(
    method: str,
    path: str,
    *,
    headers: dict[str, str],
    timeout: int = DEFAULT_TIMEOUT,
    **kwargs,
) -> requests.Response:
    url = f"{SUPABASE_URL}/{path.lstrip('/')}"
    try:
        response = requests.request(method, url, headers=headers, timeout=timeout, **kwargs)
    except requests.RequestException as exc:
        raise SupabaseError(f"Supabase request failed: {exc}") from exc
    if response.status_code >= 400:
        message = _error_message(response)
        logger.warning("Supabase %s %s returned %s: %s", method, path, response.status_code, message)
        raise SupabaseError(message, status_code=response.status_code)
    return response


def _json(response: requests.Response):
    if not response.content:
        return None
    try:
        return response.json()
    except ValueError as exc:
        raise SupabaseError("Supabase response was not valid JSON.") from exc


# --------------------------------------------------------------------------------------
# Auth
# --------------------------------------------------------------------------------------


def sign_in_with_password(email: str, password: str) -> dict:
    """Exchange credentials for a session (access_token, refresh_token, user)."""

    response = _request(
        "POST",
        "auth/v1/token?grant_type=password",
        headers=_headers(),
        json={"email": email, "password": password},
    )
    data = _json(response) or {}
    if not data.get("access_token") or not (data.get("user") or {}).get("id"):
        raise SupabaseError("Supabase sign-in response did not include a session.")
    return data


def sign_up(email: str, password: str, metadata: Optional[dict] = None) -> dict:
    response = _request(
        "POST",
        "auth/v1/signup",
        headers=_headers(),
        json={"email": email, "password": password, "data": metadata or {}},
    )
    return _json(response) or {}


def sign_out(access_token: str) -> None:
    _request("POST", "auth/v1/logout", headers=_headers(access_token))


# --------------------------------------------------------------------------------------
# Storage
# --------------------------------------------------------------------------------------


def storage_upload(
    bucket: str,
    path: str,
    content: bytes,
    content_type: str,
    *,
    access_token: Optional[str] = None,
    cache_control: str = "3600",
    upsert: bool = False,
) -> dict:
    headers = _headers(access_token, service=True)
    headers.update(
        {
            "Content-Type": content_type or "application/octet-stream",
            "cache-control": f"max-age={cache_control}",
            "x-upsert": "true" if upsert else "false",
        }
    )
    response = _request(
        "POST",
        f"storage/v1/object/{bucket}/{quote(path)}",
        headers=headers,
        data=content,
        timeout=60,
    )
    return _json(response) or {}


def storage_public_url(bucket: str, path: str) -> str:
    return f"{SUPABASE_URL}/storage/v1/object/public/{bucket}/{quote(path)}"


def storage_list(bucket: str, prefix: str = "", limit: int = 100) -> list[dict]:
    response = _request(
        "POST",
        f"storage/v1/object/list/{bucket}",
        headers=_headers(service=True),
        json={"prefix": prefix, "limit": limit, "offset": 0},
    )
    return _json(response) or []


def storage_remove(bucket: str, paths: list[str]) -> list[dict]:
    response = _request(
        "DELETE",
        f"storage/v1/object/{bucket}",
        headers=_headers(service=True),
        json={"prefixes": list(paths)},
    )
    return _json(response) or []
