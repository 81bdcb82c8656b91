import asyncio
import sqlite3
import json
import secrets
from typing import List, Dict, Any, Mapping, Optional
from database import DB_PATH
from errors import BackendError

# Колонки, які в SQLite зберігаються як JSON-масиви або 0/1
JSON_COLUMNS = {"tags", "images"}
BOOL_COLUMNS = {"is_digital", "is_free"}
OPERATORS = {"eq": "=", "neq": "!="}

def _connect(db_path: str) -> sqlite3.Connection:
    conn = sqlite3.connect(db_path)
    conn.row_factory = sqlite3.Row
    return conn

def _table_columns(conn: sqlite3.Connection, table: str) -> List[str]:
    """Повертає список колонок таблиці. Невідома таблиця дає помилку."""
    columns = [row["name"] for row in conn.execute(f"PRAGMA table_info({table})")] if table.isidentifier() else []
    if not columns:
        raise BackendError(f"Unknown table: {table}", 404)
    return columns

def _encode(record: Mapping[str, Any], columns: List[str]) -> Dict[str, Any]:
    unknown = [k for k in record if k not in columns]
    if unknown:
        raise BackendError(f"Unknown column(s): {', '.join(unknown)}", 400)
    encoded = {}
    for key, value in record.items():
        if key in JSON_COLUMNS:
            value = json.dumps(list(value or []), ensure_ascii=False)
        elif key in BOOL_COLUMNS:
            value = int(bool(value))
        encoded[key] = value
    return encoded

def _decode(row: sqlite3.Row) -> Dict[str, Any]:
    data = dict(row)
    for key in JSON_COLUMNS & data.keys():
        data[key] = json.loads(data[key] or "[]")
    for key in BOOL_COLUMNS & data.keys():
        data[key] = bool(data[key])
    return data

def create_user(email: str, password_hash: str, db_path: str = DB_PATH) -> str:
    """Створює користувача та повертає його id (рядком, як у Supabase)."""
    conn = _connect(db_path)
    try:
        cursor = conn.execute(
            "INSERT INTO users (email, password_hash, token) VALUES (?, ?, ?)",
            (email, password_hash, secrets.token_urlsafe(24))
        )
        conn.commit()
        return str(cursor.lastrowid)
    except sqlite3.IntegrityError as e:
        raise BackendError(f"User already registered: {e}", 422) from e
    finally:
        conn.close()

def _get_user(where: str, value: Any, db_path: str) -> Optional[Dict[str, Any]]:
    conn = _connect(db_path)
    row = conn.execute(f"SELECT id, email, password_hash, token FROM users WHERE {where} = ?", (value,)).fetchone()
    conn.close()
    if not row:
        return None
    data = dict(row)
    data["id"] = str(data["id"])
    return data

def get_user_by_email(email: str, db_path: str = DB_PATH) -> Optional[Dict[str, Any]]:
    return _get_user("email", email, db_path)

def get_user_by_token(token: str, db_path: str = DB_PATH) -> Optional[Dict[str, Any]]:
    return _get_user("token", token, db_path)

def insert_record(table: str, record: Mapping[str, Any], db_path: str = DB_PATH) -> Dict[str, Any]:
    """Вставляє запис і повертає його у вигляді, як він зберігся (з id)."""
    conn = _connect(db_path)
    try:
        data = _encode(record, _table_columns(conn, table))
        placeholders = ", ".join("?" for _ in data)
        cursor = conn.execute(
            f"INSERT INTO {table} ({', '.join(data)}) VALUES ({placeholders})",
            tuple(data.values())
        )
        conn.commit()
        row = conn.execute(f"SELECT * FROM {table} WHERE id = ?", (cursor.lastrowid,)).fetchone()
        return _decode(row)
    except sqlite3.IntegrityError as e:
        conn.rollback()
        raise BackendError(f"Failed to insert into {table}: {e}", 409) from e
    finally:
        conn.close()

def upsert_record(table: str, record: Mapping[str, Any], conflict_key: str, db_path: str = DB_PATH) -> Dict[str, Any]:
    """INSERT ... ON CONFLICT(conflict_key) DO UPDATE, оновлює всі передані колонки."""
    if conflict_key not in record:
        raise BackendError(f"Upsert record must contain '{conflict_key}'", 400)
    conn = _connect(db_path)
    try:
        columns = _table_columns(conn, table)
        if conflict_key not in columns:
            raise BackendError(f"Unknown column(s): {conflict_key}", 400)
        data = _encode(record, columns)
        placeholders = ", ".join("?" for _ in data)
        updates = ", ".join(f"{k} = excluded.{k}" for k in data if k != conflict_key)
        conn.execute(
            f"INSERT INTO {table} ({', '.join(data)}) VALUES ({placeholders}) "
            f"ON CONFLICT({conflict_key}) DO UPDATE SET {updates}",
            tuple(data.values())
        )
        conn.commit()
        row = conn.execute(f"SELECT * FROM {table} WHERE {conflict_key} = ?", (data[conflict_key],)).fetchone()
        return _decode(row)
    except sqlite3.IntegrityError as e:
        conn.rollback()
        raise BackendError(f"Failed to upsert into {table}: {e}", 409) from e
    finally:
        conn.close()

def select_records(table: str, filters: Optional[Mapping[str, Any]] = None, columns: str = "*", db_path: str = DB_PATH) -> List[Dict[str, Any]]:
    """
    Вибірка з фільтрами: {"username": "bob"} — рівність, {"user_id": ("neq", "1")} — нерівність.
    """
    conn = _connect(db_path)
    try:
        known = _table_columns(conn, table)
        wanted = known if columns.strip() == "*" else [c.strip() for c in columns.split(",")]
        if any(c not in known for c in wanted):
            raise BackendError(f"Unknown column(s) in select: {columns}", 400)

        clauses, params = [], []
        for name, value in (filters or {}).items():
            op = "eq"
            if isinstance(value, tuple):
                op, value = value
            if name not in known or op not in OPERATORS:
                raise BackendError(f"Unsupported filter: {name} {op}", 400)
            clauses.append(f"{name} {OPERATORS[op]} ?")
            params.append(value)

        sql = f"SELECT {', '.join(wanted)} FROM {table}"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY id"
        return [_decode(row) for row in conn.execute(sql, params).fetchall()]
    finally:
        conn.close()

class SQLiteRecordStore:
    """Асинхронна обгортка над функціями вище з тим самим контрактом, що й у Supabase. SQLite працює в окремому потоці."""

    def __init__(self, db_path: str = DB_PATH):
        self.db_path = db_path

    async def insert(self, table: str, record: Dict[str, Any]) -> Dict[str, Any]:
        return await asyncio.to_thread(insert_record, table, record, db_path=self.db_path)

    async def upsert(self, table: str, record: Dict[str, Any], on_conflict: str) -> Dict[str, Any]:
        return await asyncio.to_thread(upsert_record, table, record, on_conflict, db_path=self.db_path)

    async def select(self, table: str, filters: Optional[Mapping[str, Any]] = None, columns: str = "*") -> List[Dict[str, Any]]:
        return await asyncio.to_thread(select_records, table, filters, columns, db_path=self.db_path)
