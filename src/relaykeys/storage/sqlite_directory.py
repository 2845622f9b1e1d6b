"""SQLite-backed key directory."""

import logging
import os
import sqlite3
from datetime import datetime
from typing import Optional

from ..models import KeyRequest, KeyRequestStatus, WrappedKey
from .key_directory import KeyDirectory

logger = logging.getLogger("relaykeys.storage")

_REQUEST_COLUMNS = (
    "id, resource_id, requester_public_id, requester_display_name, target_public_id, "
    "status, created_at, fulfilled_at, fulfilled_by"
)


class SQLiteKeyDirectory(KeyDirectory):
    """
    KeyDirectory on a SQLite database.

    Uniqueness is enforced by the schema: wrapped keys have a primary key on
    (resource_id, recipient_public_id, key_version) and key requests are
    UNIQUE on (resource_id, requester_public_id). Version bumps and status
    changes are conditional UPDATEs, so racing writers converge without
    explicit locks.
    """

    def __init__(self, path: str = ":memory:") -> None:
        if path != ":memory:":
            os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
        self.db = sqlite3.connect(path, check_same_thread=False)
        self._write_count = 0
        self._init()

    def _init(self) -> None:
        with self.db:
            self.db.execute("""CREATE TABLE IF NOT EXISTS members(
                resource_id TEXT NOT NULL,
                public_id TEXT NOT NULL,
                PRIMARY KEY (resource_id, public_id)
            )""")
            self.db.execute("""CREATE TABLE IF NOT EXISTS principals(
                public_id TEXT PRIMARY KEY,
                display_name TEXT
            )""")
            self.db.execute("""CREATE TABLE IF NOT EXISTS resources(
                resource_id TEXT PRIMARY KEY,
                version INTEGER NOT NULL DEFAULT 0,
                encrypted INTEGER NOT NULL DEFAULT 0
            )""")
            self.db.execute("""CREATE TABLE IF NOT EXISTS wrapped_keys(
                resource_id TEXT NOT NULL,
                recipient_public_id TEXT NOT NULL,
                key_version INTEGER NOT NULL,
                record TEXT NOT NULL,
                PRIMARY KEY (resource_id, recipient_public_id, key_version)
            )""")
            self.db.execute("""CREATE TABLE IF NOT EXISTS invite_keys(
                code_hash TEXT PRIMARY KEY,
                resource_id TEXT NOT NULL,
                recipient_public_id TEXT NOT NULL,
                key_version INTEGER NOT NULL,
                record TEXT NOT NULL
            )""")
            self.db.execute("""CREATE TABLE IF NOT EXISTS key_requests(
                id TEXT PRIMARY KEY,
                resource_id TEXT NOT NULL,
                requester_public_id TEXT NOT NULL,
                requester_display_name TEXT,
                target_public_id TEXT,
                status TEXT NOT NULL,
                created_at TEXT NOT NULL,
                fulfilled_at TEXT,
                fulfilled_by TEXT,
                UNIQUE (resource_id, requester_public_id)
            )""")

    @property
    def write_count(self) -> int:
        """Wrapped keys written so far."""
        return self._write_count

    def close(self) -> None:
        self.db.close()

    # Membership

    async def authorize(
        self,
        resource_id: str,
        public_id: str,
        display_name: Optional[str] = None,
    ) -> None:
        with self.db:
            self.db.execute(
                "INSERT OR IGNORE INTO members(resource_id, public_id) VALUES(?, ?)",
                (resource_id, public_id),
            )
            if display_name is not None:
                self.db.execute(
                    "INSERT INTO principals(public_id, display_name) VALUES(?, ?) "
                    "ON CONFLICT(public_id) DO UPDATE SET display_name=excluded.display_name",
                    (public_id, display_name),
                )

    async def revoke(self, resource_id: str, public_id: str) -> None:
        with self.db:
            self.db.execute(
                "DELETE FROM members WHERE resource_id=? AND public_id=?",
                (resource_id, public_id),
            )

    async def authorized(self, resource_id: str) -> list[str]:
        cur = self.db.execute(
            "SELECT public_id FROM members WHERE resource_id=? ORDER BY rowid",
            (resource_id,),
        )
        return [row[0] for row in cur.fetchall()]

    async def display_name(self, public_id: str) -> Optional[str]:
        row = self.db.execute(
            "SELECT display_name FROM principals WHERE public_id=?", (public_id,)
        ).fetchone()
        return row[0] if row else None

    # Resources

    async def current_version(self, resource_id: str) -> int:
        row = self.db.execute(
            "SELECT version FROM resources WHERE resource_id=?", (resource_id,)
        ).fetchone()
        return row[0] if row else 0

    async def advance_version(self, resource_id: str, expected: int) -> bool:
        with self.db:
            self.db.execute(
                "INSERT OR IGNORE INTO resources(resource_id, version) VALUES(?, 0)",
                (resource_id,),
            )
            cur = self.db.execute(
                "UPDATE resources SET version=? WHERE resource_id=? AND version=?",
                (expected + 1, resource_id, expected),
            )
        return cur.rowcount == 1

    async def mark_encrypted(self, resource_id: str) -> None:
        with self.db:
            self.db.execute(
                "INSERT INTO resources(resource_id, encrypted) VALUES(?, 1) "
                "ON CONFLICT(resource_id) DO UPDATE SET encrypted=1",
                (resource_id,),
            )

    async def encrypted_resources(self) -> list[str]:
        cur = self.db.execute("SELECT resource_id FROM resources WHERE encrypted=1 ORDER BY rowid")
        return [row[0] for row in cur.fetchall()]

    # Wrapped keys

    async def put_wrapped_key(self, wrapped: WrappedKey, replace: bool = False) -> bool:
        params = (
            wrapped.resource_id,
            wrapped.recipient_public_id,
            wrapped.key_version,
            wrapped.to_record(),
        )
        with self.db:
            if replace:
                cur = self.db.execute(
                    "INSERT INTO wrapped_keys(resource_id, recipient_public_id, key_version, record) "
                    "VALUES(?, ?, ?, ?) "
                    "ON CONFLICT(resource_id, recipient_public_id, key_version) "
                    "DO UPDATE SET record=excluded.record",
                    params,
                )
            else:
                cur = self.db.execute(
                    "INSERT OR IGNORE INTO wrapped_keys"
                    "(resource_id, recipient_public_id, key_version, record) VALUES(?, ?, ?, ?)",
                    params,
                )
        written = cur.rowcount == 1
        if written:
            self._write_count += 1
        return written

    async def get_wrapped_key(
        self,
        resource_id: str,
        recipient_public_id: str,
        version: Optional[int] = None,
    ) -> Optional[WrappedKey]:
        if version is None:
            row = self.db.execute(
                "SELECT key_version, record FROM wrapped_keys "
                "WHERE resource_id=? AND recipient_public_id=? "
                "ORDER BY key_version DESC LIMIT 1",
                (resource_id, recipient_public_id),
            ).fetchone()
        else:
            row = self.db.execute(
                "SELECT key_version, record FROM wrapped_keys "
                "WHERE resource_id=? AND recipient_public_id=? AND key_version=?",
                (resource_id, recipient_public_id, version),
            ).fetchone()
        if not row:
            return None
        return WrappedKey.from_record(resource_id, recipient_public_id, row[0], row[1])

    async def recipients_with_key(self, resource_id: str, version: int) -> set[str]:
        cur = self.db.execute(
            "SELECT recipient_public_id FROM wrapped_keys WHERE resource_id=? AND key_version=?",
            (resource_id, version),
        )
        return {row[0] for row in cur.fetchall()}

    async def wrapped_keys(
        self,
        resource_id: str,
        version: Optional[int] = None,
    ) -> list[WrappedKey]:
        sql = (
            "SELECT recipient_public_id, key_version, record FROM wrapped_keys "
            "WHERE resource_id=?"
        )
        params: tuple = (resource_id,)
        if version is not None:
            sql += " AND key_version=?"
            params += (version,)
        cur = self.db.execute(sql + " ORDER BY key_version, rowid", params)
        return [
            WrappedKey.from_record(resource_id, recipient, key_version, record)
            for recipient, key_version, record in cur.fetchall()
        ]

    # Invite keys

    async def put_invite_key(self, code_hash: str, wrapped: WrappedKey) -> bool:
        with self.db:
            cur = self.db.execute(
                "INSERT OR IGNORE INTO invite_keys"
                "(code_hash, resource_id, recipient_public_id, key_version, record) "
                "VALUES(?, ?, ?, ?, ?)",
                (
                    code_hash,
                    wrapped.resource_id,
                    wrapped.recipient_public_id,
                    wrapped.key_version,
                    wrapped.to_record(),
                ),
            )
        return cur.rowcount == 1

    async def get_invite_key(self, code_hash: str) -> Optional[WrappedKey]:
        row = self.db.execute(
            "SELECT resource_id, recipient_public_id, key_version, record "
            "FROM invite_keys WHERE code_hash=?",
            (code_hash,),
        ).fetchone()
        return WrappedKey.from_record(*row) if row else None

    async def delete_invite_key(self, code_hash: str) -> bool:
        with self.db:
            cur = self.db.execute("DELETE FROM invite_keys WHERE code_hash=?", (code_hash,))
        return cur.rowcount == 1

    # Key requests

    async def add_key_request(
        self,
        request: KeyRequest,
        reopen: bool = False,
    ) -> tuple[KeyRequest, bool]:
        with self.db:
            cur = self.db.execute(
                f"INSERT OR IGNORE INTO key_requests({_REQUEST_COLUMNS}) "
                "VALUES(?, ?, ?, ?, ?, ?, ?, ?, ?)",
                _request_row(request),
            )
        if cur.rowcount == 1:
            return request, True

        existing = self._find_request(request.resource_id, request.requester_public_id)
        if existing is None:
            raise sqlite3.IntegrityError(f"Key request {request.id} collides with another id")
        if existing.is_pending or not reopen:
            return existing, False

        with self.db:
            cur = self.db.execute(
                "UPDATE key_requests SET status=?, created_at=?, fulfilled_at=NULL, "
                "fulfilled_by=NULL, target_public_id=? WHERE id=? AND status!=?",
                (
                    KeyRequestStatus.PENDING.value,
                    datetime.now().isoformat(),
                    request.target_public_id,
                    existing.id,
                    KeyRequestStatus.PENDING.value,
                ),
            )
        reopened = cur.rowcount == 1
        return await self.get_key_request(existing.id), reopened

    async def transition_key_request(
        self,
        request_id: str,
        from_status: KeyRequestStatus,
        to_status: KeyRequestStatus,
        by: Optional[str] = None,
    ) -> bool:
        with self.db:
            if to_status == KeyRequestStatus.FULFILLED:
                cur = self.db.execute(
                    "UPDATE key_requests SET status=?, fulfilled_at=?, fulfilled_by=? "
                    "WHERE id=? AND status=?",
                    (to_status.value, datetime.now().isoformat(), by, request_id, from_status.value),
                )
            else:
                cur = self.db.execute(
                    "UPDATE key_requests SET status=? WHERE id=? AND status=?",
                    (to_status.value, request_id, from_status.value),
                )
        return cur.rowcount == 1

    async def get_key_request(self, request_id: str) -> Optional[KeyRequest]:
        row = self.db.execute(
            f"SELECT {_REQUEST_COLUMNS} FROM key_requests WHERE id=?", (request_id,)
        ).fetchone()
        return _request_from_row(row) if row else None

    async def list_key_requests(
        self,
        resource_id: Optional[str] = None,
        status: Optional[KeyRequestStatus] = None,
        requester_public_id: Optional[str] = None,
    ) -> list[KeyRequest]:
        clauses = []
        params: list = []
        if resource_id is not None:
            clauses.append("resource_id=?")
            params.append(resource_id)
        if status is not None:
            clauses.append("status=?")
            params.append(status.value)
        if requester_public_id is not None:
            clauses.append("requester_public_id=?")
            params.append(requester_public_id)

        sql = f"SELECT {_REQUEST_COLUMNS} FROM key_requests"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        cur = self.db.execute(sql + " ORDER BY created_at, rowid", tuple(params))
        return [_request_from_row(row) for row in cur.fetchall()]

    def _find_request(self, resource_id: str, requester_public_id: str) -> Optional[KeyRequest]:
        row = self.db.execute(
            f"SELECT {_REQUEST_COLUMNS} FROM key_requests "
            "WHERE resource_id=? AND requester_public_id=?",
            (resource_id, requester_public_id),
        ).fetchone()
        return _request_from_row(row) if row else None


def _request_row(request: KeyRequest) -> tuple:
    return (
        request.id,
        request.resource_id,
        request.requester_public_id,
        request.requester_display_name,
        request.target_public_id,
        request.status.value,
        request.created_at.isoformat(),
        request.fulfilled_at.isoformat() if request.fulfilled_at else None,
        request.fulfilled_by,
    )


def _request_from_row(row: tuple) -> KeyRequest:
    return KeyRequest(
        id=row[0],
        resource_id=row[1],
        requester_public_id=row[2],
        requester_display_name=row[3],
        target_public_id=row[4],
        status=KeyRequestStatus(row[5]),
        created_at=datetime.fromisoformat(row[6]),
        fulfilled_at=datetime.fromisoformat(row[7]) if row[7] else None,
        fulfilled_by=row[8],
    )
