import logging
import sqlite3
import threading
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

logger = logging.getLogger(__name__)

# Fixed-width UTC format so that string comparison in SQL is chronological.
_TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S.%f+00:00"

BOOK_COLUMNS = (
    "id", "title", "author", "genre", "isbn", "published_year",
    "total_copies", "available_copies", "description", "cover_image",
    "is_active", "created_at", "updated_at",
)

RENTAL_COLUMNS = (
    "id", "book_id", "renter_name", "renter_email", "renter_phone",
    "rental_date", "due_date", "return_date", "status", "late_fee", "notes",
    "created_at", "updated_at",
)

_TABLE_COLUMNS = {"books": BOOK_COLUMNS, "rentals": RENTAL_COLUMNS}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC and convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_db_timestamp(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return to_utc(value).strftime(_TIMESTAMP_FORMAT)


def from_db_timestamp(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return to_utc(datetime.fromisoformat(value))


class Database:
    """Document-style storage over a single SQLite connection.

    The handle is created once by the caller (API lifespan, CLI command or a
    test fixture) and passed to the components that need it. Each primitive
    is one statement committed on its own; there is no transaction spanning
    a book write and a rental write.
    """

    def __init__(self, db_file: str) -> None:
        self.db_file = db_file
        self._lock = threading.RLock()
        self.conn = sqlite3.connect(db_file, check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        if db_file != ":memory:":
            # WAL gives better concurrent read access for file databases
            self.conn.execute("PRAGMA journal_mode=WAL;")
            self.conn.execute("PRAGMA synchronous=NORMAL;")
        self.conn.execute("PRAGMA foreign_keys=ON;")
        create_tables(self.conn)
        logger.debug("Opened database %s", db_file)

    # ------------------------- Primitives ------------------------- #
    def insert(self, table: str, doc: Dict[str, Any]) -> None:
        columns = self._columns(table, doc)
        placeholders = ", ".join("?" for _ in columns)
        sql = f"INSERT INTO {table} ({', '.join(columns)}) VALUES ({placeholders})"
        self._execute(sql, [doc[c] for c in columns])

    def get(self, table: str, doc_id: str) -> Optional[Dict[str, Any]]:
        rows = self.find(table, "id = ?", (doc_id,), limit=1)
        return rows[0] if rows else None

    def update(self, table: str, doc_id: str, fields: Dict[str, Any],
               expected: Optional[Dict[str, Any]] = None) -> int:
        """Update a row by id and return the number of rows changed.

        ``expected`` adds equality conditions on the current column values,
        which turns the write into a compare-and-swap.
        """
        columns = self._columns(table, fields)
        assignments = ", ".join(f"{c} = ?" for c in columns)
        params: List[Any] = [fields[c] for c in columns]
        where = "id = ?"
        params.append(doc_id)
        for column, value in (expected or {}).items():
            self._columns(table, {column: value})
            where += f" AND {column} = ?"
            params.append(value)
        cursor = self._execute(f"UPDATE {table} SET {assignments} WHERE {where}", params)
        return cursor.rowcount

    def delete(self, table: str, doc_id: str) -> int:
        cursor = self._execute(f"DELETE FROM {table} WHERE id = ?", (doc_id,))
        return cursor.rowcount

    def find(self, table: str, where: str = "1 = 1", params: Iterable[Any] = (),
             order_by: Optional[str] = None, limit: Optional[int] = None,
             offset: int = 0) -> List[Dict[str, Any]]:
        sql = f"SELECT * FROM {table} WHERE {where}"
        params = list(params)
        if order_by:
            sql += f" ORDER BY {order_by}"
        if limit is not None:
            sql += " LIMIT ? OFFSET ?"
            params.extend([limit, offset])
        return self.query(sql, params)

    def count(self, table: str, where: str = "1 = 1", params: Iterable[Any] = ()) -> int:
        rows = self.query(f"SELECT COUNT(*) AS n FROM {table} WHERE {where}", params)
        return rows[0]["n"]

    def query(self, sql: str, params: Iterable[Any] = ()) -> List[Dict[str, Any]]:
        with self._lock:
            cursor = self.conn.execute(sql, list(params))
            return [dict(row) for row in cursor.fetchall()]

    def close(self) -> None:
        with self._lock:
            self.conn.close()
        logger.debug("Closed database %s", self.db_file)

    # ------------------------- Helpers ------------------------- #
    def _execute(self, sql: str, params: Iterable[Any]) -> sqlite3.Cursor:
        with self._lock:
            try:
                cursor = self.conn.execute(sql, list(params))
                self.conn.commit()
                return cursor
            except sqlite3.Error:
                self.conn.rollback()
                raise

    @staticmethod
    def _columns(table: str, doc: Dict[str, Any]) -> List[str]:
        allowed = _TABLE_COLUMNS[table]
        unknown = [c for c in doc if c not in allowed]
        if unknown:
            raise KeyError(f"Unknown column(s) for {table}: {', '.join(unknown)}")
        return list(doc)


def create_tables(conn: sqlite3.Connection) -> None:
    """Create the tables and indexes if they do not exist yet."""
    conn.execute("""
        CREATE TABLE IF NOT EXISTS books (
            id TEXT PRIMARY KEY,
            title TEXT NOT NULL,
            author TEXT NOT NULL,
            genre TEXT NOT NULL,
            isbn TEXT,
            published_year INTEGER,
            total_copies INTEGER NOT NULL CHECK(total_copies >= 1),
            available_copies INTEGER NOT NULL CHECK(available_copies >= 0),
            description TEXT,
            cover_image TEXT,
            is_active INTEGER NOT NULL DEFAULT 1,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
    """)
    conn.execute("""
        CREATE TABLE IF NOT EXISTS rentals (
            id TEXT PRIMARY KEY,
            book_id TEXT NOT NULL,
            renter_name TEXT NOT NULL,
            renter_email TEXT NOT NULL,
            renter_phone TEXT,
            rental_date TEXT NOT NULL,
            due_date TEXT NOT NULL,
            return_date TEXT,
            status TEXT NOT NULL DEFAULT 'active',
            late_fee REAL NOT NULL DEFAULT 0 CHECK(late_fee >= 0),
            notes TEXT,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            FOREIGN KEY (book_id) REFERENCES books(id)
        )
    """)

    # Sparse uniqueness: many books may have no ISBN
    conn.execute("CREATE UNIQUE INDEX IF NOT EXISTS idx_books_isbn ON books(isbn) WHERE isbn IS NOT NULL")
    conn.execute("CREATE INDEX IF NOT EXISTS idx_books_genre ON books(genre)")
    conn.execute("CREATE INDEX IF NOT EXISTS idx_books_is_active ON books(is_active)")
    conn.execute("CREATE INDEX IF NOT EXISTS idx_books_available ON books(available_copies)")
    conn.execute("CREATE INDEX IF NOT EXISTS idx_books_title ON books(title)")

    conn.execute("CREATE INDEX IF NOT EXISTS idx_rentals_book ON rentals(book_id)")
    conn.execute("CREATE INDEX IF NOT EXISTS idx_rentals_email ON rentals(renter_email)")
    conn.execute("CREATE INDEX IF NOT EXISTS idx_rentals_status ON rentals(status)")
    conn.execute("CREATE INDEX IF NOT EXISTS idx_rentals_rental_date ON rentals(rental_date DESC)")
    conn.execute("CREATE INDEX IF NOT EXISTS idx_rentals_due_date ON rentals(due_date)")
    conn.execute("CREATE INDEX IF NOT EXISTS idx_rentals_book_status ON rentals(book_id, status)")
    conn.commit()
