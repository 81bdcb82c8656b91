import asyncio
import hashlib
import json
import logging
import secrets
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Protocol

import aiohttp

import crud
from errors import BackendError

logger = logging.getLogger(__name__)


@dataclass
class User:
    id: str
    email: str = ""
    identities: List[Dict[str, Any]] = field(default_factory=list)


@dataclass
class AuthSession:
    access_token: str
    user: User


# --- Контракти зовнішніх сервісів ---

class AuthClient(Protocol):
    async def get_current_user(self) -> Optional[User]: ...

    async def sign_up(self, email: str, password: str, redirect_to: Optional[str] = None) -> User: ...

    async def sign_in(self, email: str, password: str) -> AuthSession: ...


class StorageClient(Protocol):
    async def upload(self, bucket: str, key: str, data: bytes, content_type: str = "application/octet-stream") -> str: ...

    def get_public_url(self, bucket: str, key: str) -> str: ...


class RecordStore(Protocol):
    async def insert(self, table: str, record: Dict[str, Any]) -> Dict[str, Any]: ...

    async def upsert(self, table: str, record: Dict[str, Any], on_conflict: str) -> Dict[str, Any]: ...

    async def select(self, table: str, filters: Optional[Mapping[str, Any]] = None, columns: str = "*") -> List[Dict[str, Any]]: ...


def _error_message(body: Any, default: str) -> str:
    if isinstance(body, dict):
        for key in ("message", "msg", "error_description", "error"):
            if body.get(key):
                return str(body[key])
    if isinstance(body, str) and body:
        return body
    return default


def _user_from_json(data: Dict[str, Any]) -> User:
    return User(
        id=str(data.get("id", "")),
        email=data.get("email") or "",
        identities=list(data.get("identities") or []),
    )


class SupabaseClient:
    """
    Клієнт Supabase через REST API (auth, storage, PostgREST).
    Сесія aiohttp передається ззовні; access_token прив'язує клієнт до користувача.
    """

    def __init__(self, url: str, key: str, session: aiohttp.ClientSession, access_token: Optional[str] = None, timeout: int = 30):
        if not url or not key:
            raise ValueError("SUPABASE_URL та SUPABASE_ANON_KEY мають бути задані")
        self.url = url.rstrip("/")
        self.key = key
        self.session = session
        self.access_token = access_token
        self.timeout = timeout

    def with_token(self, access_token: Optional[str]) -> "SupabaseClient":
        return SupabaseClient(self.url, self.key, self.session, access_token, self.timeout)

    def _headers(self, extra: Optional[Dict[str, str]] = None) -> Dict[str, str]:
        headers = {
            "apikey": self.key,
            "Authorization": f"Bearer {self.access_token or self.key}",
        }
        if extra:
            headers.update(extra)
        return headers

    async def _request(self, method: str, path: str, *, params=None, json_body=None, data=None, headers=None) -> Any:
        url = f"{self.url}{path}"
        try:
            async with self.session.request(
                method,
                url,
                params=params,
                json=json_body,
                data=data,
                headers=self._headers(headers),
                timeout=aiohttp.ClientTimeout(total=self.timeout),
            ) as response:
                text = await response.text()
                try:
                    body = json.loads(text) if text else None
                except ValueError:
                    body = text
                if response.status >= 400:
                    message = _error_message(body, response.reason or f"HTTP {response.status}")
                    logger.warning(f"Supabase {method} {path} -> {response.status}: {message}")
                    raise BackendError(message, response.status)
                return body
        except aiohttp.ClientError as e:
            raise BackendError(f"Network error: {e}") from e
        except asyncio.TimeoutError as e:
            raise BackendError(f"Request to {path} timed out after {self.timeout}s", 504) from e

    # --- Auth ---

    async def get_current_user(self) -> Optional[User]:
        if not self.access_token:
            return None
        try:
            body = await self._request("GET", "/auth/v1/user")
        except BackendError as e:
            if e.status in (401, 403):
                return None
            raise
        return _user_from_json(body or {})

    async def sign_up(self, email: str, password: str, redirect_to: Optional[str] = None) -> User:
        params = {"redirect_to": redirect_to} if redirect_to else None
        body = await self._request("POST", "/auth/v1/signup", params=params, json_body={"email": email, "password": password})
        # Якщо підтвердження пошти вимкнене, Supabase повертає сесію з вкладеним user
        data = body.get("user", body) if isinstance(body, dict) else {}
        return _user_from_json(data or {})

    async def sign_in(self, email: str, password: str) -> AuthSession:
        body = await self._request(
            "POST",
            "/auth/v1/token",
            params={"grant_type": "password"},
            json_body={"email": email, "password": password},
        )
        return AuthSession(access_token=body["access_token"], user=_user_from_json(body.get("user") or {}))

    # --- Storage ---

    async def upload(self, bucket: str, key: str, data: bytes, content_type: str = "application/octet-stream") -> str:
        await self._request(
            "POST",
            f"/storage/v1/object/{bucket}/{key}",
            data=data,
            headers={"Content-Type": content_type, "x-upsert": "false"},
        )
        return key

    def get_public_url(self, bucket: str, key: str) -> str:
        return f"{self.url}/storage/v1/object/public/{bucket}/{key}"

    # --- Records (PostgREST) ---

    async def insert(self, table: str, record: Dict[str, Any]) -> Dict[str, Any]:
        rows = await self._request(
            "POST",
            f"/rest/v1/{table}",
            json_body=[record],
            headers={"Prefer": "return=representation"},
        )
        return rows[0] if rows else record

    async def upsert(self, table: str, record: Dict[str, Any], on_conflict: str) -> Dict[str, Any]:
        rows = await self._request(
            "POST",
            f"/rest/v1/{table}",
            params={"on_conflict": on_conflict},
            json_body=[record],
            headers={"Prefer": "resolution=merge-duplicates,return=representation"},
        )
        return rows[0] if rows else record

    async def select(self, table: str, filters: Optional[Mapping[str, Any]] = None, columns: str = "*") -> List[Dict[str, Any]]:
        return await self._request("GET", f"/rest/v1/{table}", params=postgrest_params(filters, columns)) or []


def postgrest_params(filters: Optional[Mapping[str, Any]], columns: str = "*") -> Dict[str, str]:
    """
    {"username": "bob", "user_id": ("neq", "42")} -> {"select": "*", "username": "eq.bob", "user_id": "neq.42"}
    """
    params = {"select": columns}
    for name, value in (filters or {}).items():
        op = "eq"
        if isinstance(value, tuple):
            op, value = value
        params[name] = f"{op}.{value}"
    return params


# --- Локальний бекенд (SQLite + папка з файлами) ---

def hash_password(password: str, salt: Optional[str] = None) -> str:
    salt = salt or secrets.token_hex(8)
    digest = hashlib.pbkdf2_hmac("sha256", password.encode(), salt.encode(), 100_000).hex()
    return f"{salt}${digest}"


def check_password(password: str, stored: str) -> bool:
    salt, _, _ = stored.partition("$")
    return secrets.compare_digest(hash_password(password, salt), stored)


class LocalAuth:
    """Auth на таблиці users у SQLite. Токен сесії видається при створенні користувача."""

    def __init__(self, db_path: str = crud.DB_PATH, access_token: Optional[str] = None):
        self.db_path = db_path
        self.access_token = access_token

    def with_token(self, access_token: Optional[str]) -> "LocalAuth":
        return LocalAuth(self.db_path, access_token)

    async def get_current_user(self) -> Optional[User]:
        if not self.access_token:
            return None
        row = await asyncio.to_thread(crud.get_user_by_token, self.access_token, db_path=self.db_path)
        return User(id=row["id"], email=row["email"]) if row else None

    async def sign_up(self, email: str, password: str, redirect_to: Optional[str] = None) -> User:
        if await asyncio.to_thread(crud.get_user_by_email, email, db_path=self.db_path):
            # Так само поводиться Supabase: користувач без identities означає, що email зайнятий
            return User(id="", email=email, identities=[])
        password_hash = await asyncio.to_thread(hash_password, password)
        user_id = await asyncio.to_thread(crud.create_user, email, password_hash, db_path=self.db_path)
        return User(id=user_id, email=email, identities=[{"provider": "email"}])

    async def sign_in(self, email: str, password: str) -> AuthSession:
        row = await asyncio.to_thread(crud.get_user_by_email, email, db_path=self.db_path)
        if not row or not await asyncio.to_thread(check_password, password, row["password_hash"]):
            raise BackendError("Invalid login credentials", 400)
        return AuthSession(access_token=row["token"], user=User(id=row["id"], email=row["email"]))


class LocalStorage:
    """Сховище об'єктів у локальній папці. Публічний URL = base_url/bucket/key."""

    def __init__(self, root: str, base_url: str):
        self.root = Path(root)
        self.base_url = base_url.rstrip("/")

    async def upload(self, bucket: str, key: str, data: bytes, content_type: str = "application/octet-stream") -> str:
        return await asyncio.to_thread(self._write, bucket, key, data)

    def _write(self, bucket: str, key: str, data: bytes) -> str:
        path = (self.root / bucket / key).resolve()
        if self.root.resolve() not in path.parents:
            raise BackendError(f"Invalid object key: {key}", 400)
        if path.exists():
            raise BackendError("The resource already exists", 409)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)
        logger.info(f"Stored {len(data)} bytes at {path}")
        return key

    def get_public_url(self, bucket: str, key: str) -> str:
        return f"{self.base_url}/{bucket}/{key}"


class Backend:
    """Набір колабораторів, які отримує майстер: auth, storage, records."""

    def __init__(self, auth, storage, records):
        self.auth = auth
        self.storage = storage
        self.records = records

    def for_token(self, access_token: Optional[str]) -> "Backend":
        """Копія, прив'язана до сесії конкретного користувача."""
        def bind(client):
            return client.with_token(access_token) if hasattr(client, "with_token") else client

        return Backend(bind(self.auth), bind(self.storage), bind(self.records))


def build_backend(settings, http_session: Optional[aiohttp.ClientSession] = None) -> Backend:
    if settings.backend == "local":
        logger.info(f"Using local backend: db={settings.db_path}, media={settings.media_dir}")
        return Backend(
            LocalAuth(settings.db_path),
            LocalStorage(settings.media_dir, settings.media_base_url),
            crud.SQLiteRecordStore(settings.db_path),
        )

    if http_session is None:
        raise ValueError("Supabase backend потребує aiohttp.ClientSession")
    client = SupabaseClient(settings.supabase_url, settings.supabase_key, http_session, timeout=settings.request_timeout)
    logger.info(f"Using Supabase backend at {client.url}")
    return Backend(client, client, client)
