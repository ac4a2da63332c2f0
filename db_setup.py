import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Iterator, List, Optional

from db_models import Contact, LinkPrecedence
from errors import StoreError

logger = logging.getLogger(__name__)

SCHEMA = '''
    CREATE TABLE IF NOT EXISTS Contact (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        phoneNumber TEXT,
        email TEXT,
        linkedId INTEGER,
        linkPrecedence TEXT NOT NULL CHECK(linkPrecedence IN ('secondary', 'primary')),
        createdAt TEXT NOT NULL,
        updatedAt TEXT NOT NULL,
        deletedAt TEXT,
        FOREIGN KEY (linkedId) REFERENCES Contact (id),
        CHECK (email IS NOT NULL OR phoneNumber IS NOT NULL),
        CHECK (
            (linkPrecedence = 'primary' AND linkedId IS NULL)
            OR (linkPrecedence = 'secondary' AND linkedId IS NOT NULL)
        )
    );
    CREATE INDEX IF NOT EXISTS ix_contact_email ON Contact (email);
    CREATE INDEX IF NOT EXISTS ix_contact_phone ON Contact (phoneNumber);
    CREATE INDEX IF NOT EXISTS ix_contact_linked ON Contact (linkedId);
'''

# ties on createdAt fall back to insertion order
ORDER_BY_CREATED = "ORDER BY createdAt ASC, id ASC"

UPDATABLE_COLUMNS = {"linkedId", "linkPrecedence", "deletedAt"}


def utcnow() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="microseconds")


def get_db_connection(db_path: str, timeout: float = 5.0) -> sqlite3.Connection:
    try:
        # transactions are issued explicitly by ContactStore.transaction()
        conn = sqlite3.connect(
            db_path, timeout=timeout, isolation_level=None, check_same_thread=False
        )
        conn.execute("PRAGMA foreign_keys = ON")
    except sqlite3.Error as exc:
        raise StoreError(f"cannot open contact store: {exc}") from exc
    conn.row_factory = sqlite3.Row
    return conn


def init_db(db_path: str) -> None:
    conn = get_db_connection(db_path)
    try:
        conn.executescript(SCHEMA)
    finally:
        conn.close()
    logger.info("Contact schema ready at %s", db_path)


class ContactStore:
    """Query interface over the Contact table.

    Every method runs on the single connection it was built with, so calls
    made inside ``transaction()`` share one atomic unit of work.
    """

    def __init__(self, connection: sqlite3.Connection):
        self.connection = connection

    def _execute(self, query, params=()):
        try:
            return self.connection.execute(query, params)
        except sqlite3.Error as exc:
            raise StoreError(str(exc)) from exc

    def _fetch(self, query, params=()) -> List[Contact]:
        rows = self._execute(query, params).fetchall()
        return [Contact(**dict(row)) for row in rows]

    @contextmanager
    def transaction(self) -> Iterator["ContactStore"]:
        # IMMEDIATE takes the write lock up front so concurrent
        # resolutions queue behind each other instead of interleaving
        self._execute("BEGIN IMMEDIATE")
        try:
            yield self
            self._execute("COMMIT")
        except BaseException:
            if self.connection.in_transaction:
                self.connection.execute("ROLLBACK")
            raise

    def create_contact(
        self,
        email: Optional[str] = None,
        phone: Optional[str] = None,
        linked_id: Optional[int] = None,
        precedence: LinkPrecedence = LinkPrecedence.PRIMARY,
    ) -> Contact:
        now = utcnow()
        cursor = self._execute(
            """
            INSERT INTO Contact (phoneNumber, email, linkedId, linkPrecedence, createdAt, updatedAt)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (phone, email, linked_id, LinkPrecedence(precedence).value, now, now),
        )
        return self.get_contact(cursor.lastrowid)

    def update_contact(self, contact_id: int, **fields) -> Contact:
        unknown = set(fields) - UPDATABLE_COLUMNS
        if unknown:
            raise ValueError(f"cannot update columns: {sorted(unknown)}")

        values = {
            key: value.value if isinstance(value, LinkPrecedence) else value
            for key, value in fields.items()
        }
        values["updatedAt"] = utcnow()
        assignments = ", ".join(f"{column} = ?" for column in values)
        cursor = self._execute(
            f"UPDATE Contact SET {assignments} WHERE id = ?",
            (*values.values(), contact_id),
        )
        if cursor.rowcount != 1:
            raise StoreError(f"contact {contact_id} not found for update")
        return self.get_contact(contact_id)

    def get_contact(self, contact_id: int) -> Optional[Contact]:
        """Fetch by id, soft-deleted rows included."""
        contacts = self._fetch("SELECT * FROM Contact WHERE id = ?", (contact_id,))
        return contacts[0] if contacts else None

    def find_matching(self, email: Optional[str] = None, phone: Optional[str] = None) -> List[Contact]:
        clauses, params = [], []
        if email is not None:
            clauses.append("email = ?")
            params.append(email)
        if phone is not None:
            clauses.append("phoneNumber = ?")
            params.append(phone)
        if not clauses:
            return []

        return self._fetch(
            f"""
            SELECT * FROM Contact
            WHERE deletedAt IS NULL
            AND ({" OR ".join(clauses)})
            {ORDER_BY_CREATED}
            """,
            params,
        )

    def find_by_linked_id(self, linked_id: int, include_deleted: bool = False) -> List[Contact]:
        deleted_filter = "" if include_deleted else "AND deletedAt IS NULL"
        return self._fetch(
            f"""
            SELECT * FROM Contact
            WHERE linkedId = ? {deleted_filter}
            {ORDER_BY_CREATED}
            """,
            (linked_id,),
        )

    def find_cluster(self, primary_id: int) -> List[Contact]:
        return self._fetch(
            f"""
            SELECT * FROM Contact
            WHERE (id = ? OR linkedId = ?) AND deletedAt IS NULL
            {ORDER_BY_CREATED}
            """,
            (primary_id, primary_id),
        )

    def all_contacts(self) -> List[Contact]:
        return self._fetch("SELECT * FROM Contact ORDER BY id ASC")
