# app/services/database.py
"""
sqlite persistence for published resources and issued licenses.

Each operation opens its own connection, so a Database instance can be
shared by concurrent requests running in the threadpool.
"""
import logging
import sqlite3
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator, Optional

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Resource:
    id: str
    owner_address: str
    price: str
    title: str
    content_locator: str
    preview_locator: str
    wrapped_key: str
    description: Optional[str] = None
    mime_type: str = "image/jpeg"
    width: Optional[int] = None
    height: Optional[int] = None
    created_at: Optional[str] = None


@dataclass(frozen=True)
class License:
    id: str
    resource_id: str
    buyer_address: str
    payee_address: str
    price: str
    transaction_ref: str
    issued_at: str


SCHEMA = """
CREATE TABLE IF NOT EXISTS resources (
    id TEXT PRIMARY KEY,
    owner_address TEXT NOT NULL,
    price TEXT NOT NULL,
    title TEXT NOT NULL,
    description TEXT,
    content_locator TEXT NOT NULL,
    preview_locator TEXT NOT NULL,
    wrapped_key TEXT NOT NULL,
    mime_type TEXT NOT NULL DEFAULT 'image/jpeg',
    width INTEGER,
    height INTEGER,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS licenses (
    id TEXT PRIMARY KEY,
    resource_id TEXT NOT NULL REFERENCES resources(id),
    buyer_address TEXT NOT NULL,
    payee_address TEXT NOT NULL,
    price TEXT NOT NULL,
    transaction_ref TEXT NOT NULL,
    issued_at TEXT NOT NULL,
    UNIQUE (resource_id, buyer_address)
);

CREATE INDEX IF NOT EXISTS license_buyer_idx ON licenses (buyer_address);
CREATE INDEX IF NOT EXISTS license_payee_idx ON licenses (payee_address);
"""


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


class Database:
    """Owns the sqlite file and the resource table."""

    def __init__(self, path: str):
        self.path = path
        if path != ":memory:":
            Path(path).parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    @contextmanager
    def connect(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self.path, timeout=5.0)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        try:
            with conn:
                yield conn
        finally:
            conn.close()

    def _init_db(self) -> None:
        with self.connect() as conn:
            conn.executescript(SCHEMA)
        logger.info(f"Database ready at {self.path}")

    def get_resource(self, resource_id: str) -> Optional[Resource]:
        with self.connect() as conn:
            row = conn.execute(
                "SELECT * FROM resources WHERE id = ?", (resource_id,)
            ).fetchone()
        if row is None:
            return None
        return Resource(**dict(row))

    def insert_resource(
        self,
        *,
        owner_address: str,
        price: str,
        title: str,
        content_locator: str,
        preview_locator: str,
        wrapped_key: str,
        description: Optional[str] = None,
        mime_type: str = "image/jpeg",
        width: Optional[int] = None,
        height: Optional[int] = None,
        resource_id: Optional[str] = None,
    ) -> Resource:
        resource = Resource(
            id=resource_id or str(uuid.uuid4()),
            owner_address=owner_address,
            price=price,
            title=title,
            description=description,
            content_locator=content_locator,
            preview_locator=preview_locator,
            wrapped_key=wrapped_key,
            mime_type=mime_type,
            width=width,
            height=height,
            created_at=utc_now(),
        )
        with self.connect() as conn:
            conn.execute(
                """
                INSERT INTO resources
                (id, owner_address, price, title, description, content_locator,
                 preview_locator, wrapped_key, mime_type, width, height, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (resource.id, resource.owner_address, resource.price, resource.title,
                 resource.description, resource.content_locator, resource.preview_locator,
                 resource.wrapped_key, resource.mime_type, resource.width, resource.height,
                 resource.created_at),
            )
        logger.info(f"Inserted resource {resource.id} owned by {owner_address}")
        return resource
