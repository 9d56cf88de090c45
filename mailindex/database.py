"""SQLite index of email messages, threads and full-text search."""

import re
import sqlite3
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Iterable, List, Optional, Set

from mailindex.errors import QueryCompileError, StoreOpenError
from mailindex.query import ParsedQuery, compile_query

INDEX_DIRNAME = ".mailindex"
INDEX_FILENAME = "index.db"

# Bump when the schema changes; older or newer indexes are refused
SCHEMA_VERSION = 1


class DatabaseMode(Enum):
    """How an index is opened."""
    READ_ONLY = "ro"
    READ_WRITE = "rw"


class IndexDatabase:
    """SQLite index of email messages.

    Schema:
    - metadata: key/value store (schema version, last thread id)
    - messages: one row per Message-ID, with its thread_id
    - message_files: filenames (relative to the mail root) per message
    - message_references: Message-IDs named in In-Reply-To/References
    - message_recipients: normalized recipient addresses
    - message_tags: tags per message
    - messages_fts: FTS5 virtual table for full-text search

    Use IndexDatabase.open() or IndexDatabase.create(); both return a
    handle that is also a context manager and is closed on exit.
    """

    def __init__(self, path: Path, conn: sqlite3.Connection, mode: DatabaseMode):
        self.path = path
        self.db_path = self.index_path(path)
        self.mode = mode
        self._conn: Optional[sqlite3.Connection] = conn

    @staticmethod
    def index_path(path: Path) -> Path:
        """Return the index file location for a mail root directory."""
        return path / INDEX_DIRNAME / INDEX_FILENAME

    @classmethod
    def open(cls, path: Path, mode: DatabaseMode = DatabaseMode.READ_ONLY) -> "IndexDatabase":
        """Open an existing index.

        Args:
            path: Mail root directory holding the .mailindex directory
            mode: READ_ONLY opens the SQLite file with mode=ro

        Raises:
            StoreOpenError: If the index is missing, unreadable, corrupt,
                or has a different schema version
        """
        path = Path(path)
        if not path.is_dir():
            raise StoreOpenError(f"Database path does not exist: {path}")

        db_path = cls.index_path(path)
        if not db_path.is_file():
            raise StoreOpenError(f"No index found at {db_path}. Run 'mailindex index' first.")

        if mode == DatabaseMode.READ_ONLY:
            uri = f"{db_path.resolve().as_uri()}?mode=ro"
        else:
            uri = f"{db_path.resolve().as_uri()}?mode=rw"

        try:
            conn = sqlite3.connect(uri, uri=True)
        except sqlite3.Error as e:
            raise StoreOpenError(f"Cannot open index {db_path}: {e}") from e

        db = cls(path, conn, mode)
        try:
            db._check_schema()
        except StoreOpenError:
            db.close()
            raise
        return db

    @classmethod
    def create(cls, path: Path) -> "IndexDatabase":
        """Create a new, empty index and open it read-write.

        Raises:
            StoreOpenError: If an index already exists or cannot be created
        """
        path = Path(path)
        db_path = cls.index_path(path)
        if db_path.exists():
            raise StoreOpenError(f"Index already exists: {db_path}")

        try:
            db_path.parent.mkdir(parents=True, exist_ok=True)
            conn = sqlite3.connect(db_path)
        except (OSError, sqlite3.Error) as e:
            raise StoreOpenError(f"Cannot create index {db_path}: {e}") from e

        db = cls(path, conn, DatabaseMode.READ_WRITE)
        db._init_db()
        return db

    # -------------------------------------------------------------------------
    # Connection lifetime
    # -------------------------------------------------------------------------

    @property
    def conn(self) -> sqlite3.Connection:
        if self._conn is None:
            raise RuntimeError("Database is closed")
        return self._conn

    @property
    def is_open(self) -> bool:
        return self._conn is not None

    def close(self) -> None:
        """Close the connection. Further calls are no-ops."""
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    def commit(self) -> None:
        self.conn.commit()

    def __enter__(self) -> "IndexDatabase":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if self._conn is not None and self.mode == DatabaseMode.READ_WRITE:
            if exc_type is None:
                self._conn.commit()
            else:
                self._conn.rollback()
        self.close()

    def _require_writable(self) -> None:
        if self.mode != DatabaseMode.READ_WRITE:
            raise RuntimeError("Database is opened read-only")

    # -------------------------------------------------------------------------
    # Schema
    # -------------------------------------------------------------------------

    def _init_db(self) -> None:
        """Initialize the database schema."""
        conn = self.conn

        conn.execute("""
            CREATE TABLE metadata (
                key TEXT PRIMARY KEY,
                value TEXT
            )
        """)

        conn.execute("""
            CREATE TABLE messages (
                message_id TEXT NOT NULL UNIQUE,
                thread_id TEXT NOT NULL,
                subject TEXT,
                sender TEXT,
                sender_email TEXT,
                recipients TEXT,
                date TEXT,
                has_attachments INTEGER DEFAULT 0,
                indexed_at TEXT
            )
        """)

        # A message may be stored in several files (copies in different folders)
        conn.execute("""
            CREATE TABLE message_files (
                filename TEXT PRIMARY KEY,
                message_rowid INTEGER
            )
        """)

        # Kept even when the referenced message is not indexed yet, so a
        # parent arriving later joins its replies' thread
        conn.execute("""
            CREATE TABLE message_references (
                message_rowid INTEGER,
                referenced_id TEXT,
                PRIMARY KEY (message_rowid, referenced_id)
            )
        """)
        conn.execute("CREATE INDEX idx_references_referenced ON message_references(referenced_id)")

        conn.execute("""
            CREATE TABLE message_recipients (
                message_rowid INTEGER,
                address TEXT,
                PRIMARY KEY (message_rowid, address)
            )
        """)
        conn.execute("CREATE INDEX idx_recipients_address ON message_recipients(address)")

        conn.execute("""
            CREATE TABLE message_tags (
                message_rowid INTEGER,
                tag TEXT,
                PRIMARY KEY (message_rowid, tag)
            )
        """)
        conn.execute("CREATE INDEX idx_tags_tag ON message_tags(tag)")

        conn.execute("CREATE INDEX idx_messages_thread ON messages(thread_id)")
        conn.execute("CREATE INDEX idx_messages_sender_email ON messages(sender_email)")
        conn.execute("CREATE INDEX idx_messages_date ON messages(date)")

        # Contentless FTS5: rowid matches messages.rowid
        conn.execute("""
            CREATE VIRTUAL TABLE messages_fts USING fts5(
                subject,
                sender,
                recipients,
                body,
                attachments,
                content='',
                tokenize='porter unicode61'
            )
        """)

        conn.executemany(
            "INSERT INTO metadata (key, value) VALUES (?, ?)",
            [("version", str(SCHEMA_VERSION)), ("last_thread_id", "0")],
        )
        conn.commit()

    def _check_schema(self) -> None:
        """Verify that the file is a mailindex database of our schema version."""
        try:
            row = self.conn.execute(
                "SELECT value FROM metadata WHERE key = 'version'"
            ).fetchone()
        except sqlite3.DatabaseError as e:
            raise StoreOpenError(f"Not a mailindex database: {self.db_path} ({e})") from e

        if row is None:
            raise StoreOpenError(f"Index {self.db_path} has no schema version")

        try:
            version = int(row[0])
        except (TypeError, ValueError) as e:
            raise StoreOpenError(f"Index {self.db_path} has an invalid schema version: {row[0]!r}") from e

        if version != SCHEMA_VERSION:
            raise StoreOpenError(
                f"Index {self.db_path} has schema version {version}, "
                f"this mailindex supports version {SCHEMA_VERSION}. Rebuild the index."
            )

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def create_query(self, query_string: str) -> "Query":
        """Compile a search query against this database.

        Args:
            query_string: Search query; empty string matches every message

        Raises:
            QueryCompileError: If the query cannot be parsed
        """
        if not self.is_open:
            raise RuntimeError("Database is closed")
        return Query(self, query_string, compile_query(query_string))

    def _count(self, sql: str, params: list) -> int:
        try:
            return self.conn.execute(sql, params).fetchone()[0]
        except sqlite3.OperationalError as e:
            error_str = str(e).lower()
            if "fts5" in error_str or "match" in error_str or "syntax" in error_str:
                raise QueryCompileError(f"Invalid search query: {e}") from e
            raise StoreOpenError(f"Cannot read index {self.db_path}: {e}") from e
        except sqlite3.DatabaseError as e:
            raise StoreOpenError(f"Cannot read index {self.db_path}: {e}") from e

    def count_messages(self, parsed: ParsedQuery) -> int:
        """Count messages matching a compiled query."""
        return self._count(
            f"SELECT COUNT(*) FROM messages m WHERE {parsed.where_sql}",
            parsed.params,
        )

    def count_threads(self, parsed: ParsedQuery) -> int:
        """Count threads with at least one message matching a compiled query."""
        return self._count(
            f"SELECT COUNT(DISTINCT m.thread_id) FROM messages m WHERE {parsed.where_sql}",
            parsed.params,
        )

    # -------------------------------------------------------------------------
    # Email address parsing helpers
    # -------------------------------------------------------------------------

    @staticmethod
    def _extract_email(sender_str: str) -> Optional[str]:
        """Extract email from 'Name <email>' or just 'email'."""
        if not sender_str:
            return None
        match = re.search(r'<([^>]+)>', sender_str)
        if match:
            return match.group(1).lower().strip()
        if '@' in sender_str:
            return sender_str.lower().strip()
        return None

    @staticmethod
    def _normalize_recipients(recipients_str: str) -> List[str]:
        """Convert 'a@b.com, Name <c@d.com>' to ['a@b.com', 'c@d.com']."""
        if not recipients_str:
            return []
        emails = []
        for part in recipients_str.split(','):
            email = IndexDatabase._extract_email(part.strip())
            if email and email not in emails:
                emails.append(email)
        return emails

    # -------------------------------------------------------------------------
    # Indexing
    # -------------------------------------------------------------------------

    def get_indexed_filenames(self) -> Set[str]:
        """Return every filename already recorded in the index."""
        rows = self.conn.execute("SELECT filename FROM message_files").fetchall()
        return {row[0] for row in rows}

    def find_thread_id(self, message_id: str) -> Optional[str]:
        """Return the thread of an indexed message, or None."""
        row = self.conn.execute(
            "SELECT thread_id FROM messages WHERE message_id = ?", (message_id,)
        ).fetchone()
        return row[0] if row else None

    def _new_thread_id(self) -> str:
        row = self.conn.execute(
            "SELECT value FROM metadata WHERE key = 'last_thread_id'"
        ).fetchone()
        next_id = int(row[0]) + 1 if row else 1
        self.conn.execute(
            "INSERT OR REPLACE INTO metadata (key, value) VALUES ('last_thread_id', ?)",
            (str(next_id),),
        )
        return f"{next_id:016x}"

    def _resolve_thread(self, message_id: str, references: List[str]) -> str:
        """Pick the thread for a new message, merging threads it connects.

        A message joins the threads of:
        - indexed messages it references (its ancestors)
        - indexed messages that reference it (replies indexed before it)
        - indexed messages that reference the same ancestors
        """
        conn = self.conn
        thread_ids = set()

        if references:
            placeholders = ",".join("?" * len(references))
            rows = conn.execute(
                f"SELECT thread_id FROM messages WHERE message_id IN ({placeholders})",
                references,
            ).fetchall()
            thread_ids.update(row[0] for row in rows)

        linked = [message_id] + references
        placeholders = ",".join("?" * len(linked))
        rows = conn.execute(
            f"""
            SELECT DISTINCT m.thread_id
            FROM message_references r
            JOIN messages m ON m.rowid = r.message_rowid
            WHERE r.referenced_id IN ({placeholders})
            """,
            linked,
        ).fetchall()
        thread_ids.update(row[0] for row in rows)

        if not thread_ids:
            return self._new_thread_id()

        # Keep the oldest thread id, fold the others into it
        ordered = sorted(thread_ids)
        thread_id = ordered[0]
        if len(ordered) > 1:
            placeholders = ",".join("?" * (len(ordered) - 1))
            conn.execute(
                f"UPDATE messages SET thread_id = ? WHERE thread_id IN ({placeholders})",
                [thread_id] + ordered[1:],
            )
        return thread_id

    def add_message(self, filename: str, parsed: dict, tags: Iterable[str] = ()) -> bool:
        """Add a parsed message to the index.

        Args:
            filename: Path of the message file relative to the mail root
            parsed: Output of EmailParser.parse_file()
            tags: Tags to attach to a newly added message

        Returns:
            True if a new message was added, False if its Message-ID was
            already indexed (the file is recorded as another copy)
        """
        self._require_writable()
        conn = self.conn
        message_id = parsed["message_id"]

        row = conn.execute(
            "SELECT rowid FROM messages WHERE message_id = ?", (message_id,)
        ).fetchone()
        if row:
            conn.execute(
                "INSERT OR IGNORE INTO message_files (filename, message_rowid) VALUES (?, ?)",
                (filename, row[0]),
            )
            return False

        references = []
        for ref in list(parsed.get("references") or []) + list(parsed.get("in_reply_to") or []):
            if ref and ref != message_id and ref not in references:
                references.append(ref)

        thread_id = self._resolve_thread(message_id, references)

        subject = parsed.get("subject", "")
        sender = parsed.get("sender", "")
        recipients = parsed.get("recipients", "")
        attachments = parsed.get("attachments", "")
        has_attachments = 1 if attachments and attachments.strip() else 0

        cursor = conn.execute(
            """
            INSERT INTO messages
                (message_id, thread_id, subject, sender, sender_email,
                 recipients, date, has_attachments, indexed_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                message_id,
                thread_id,
                subject,
                sender,
                self._extract_email(sender),
                recipients,
                parsed.get("date"),
                has_attachments,
                datetime.now().isoformat(),
            ),
        )
        rowid = cursor.lastrowid

        conn.execute(
            "INSERT INTO message_files (filename, message_rowid) VALUES (?, ?)",
            (filename, rowid),
        )
        conn.executemany(
            "INSERT OR IGNORE INTO message_references (message_rowid, referenced_id) VALUES (?, ?)",
            [(rowid, ref) for ref in references],
        )
        conn.executemany(
            "INSERT OR IGNORE INTO message_recipients (message_rowid, address) VALUES (?, ?)",
            [(rowid, address) for address in self._normalize_recipients(recipients)],
        )
        conn.executemany(
            "INSERT OR IGNORE INTO message_tags (message_rowid, tag) VALUES (?, ?)",
            [(rowid, tag) for tag in tags if tag],
        )
        conn.execute(
            "INSERT INTO messages_fts(rowid, subject, sender, recipients, body, attachments) "
            "VALUES (?, ?, ?, ?, ?, ?)",
            (rowid, subject, sender, recipients, parsed.get("body", ""), attachments),
        )
        return True


class Query:
    """A search query compiled against an open IndexDatabase.

    Valid only while its database is open. Release it with destroy(), or
    use it as a context manager.
    """

    def __init__(self, db: IndexDatabase, query_string: str, parsed: ParsedQuery):
        self._db: Optional[IndexDatabase] = db
        self.query_string = query_string
        self.parsed = parsed

    @property
    def db(self) -> IndexDatabase:
        if self._db is None:
            raise RuntimeError("Query has been destroyed")
        return self._db

    def count_messages(self) -> int:
        """Number of messages matching the query."""
        return self.db.count_messages(self.parsed)

    def count_threads(self) -> int:
        """Number of distinct threads with at least one matching message."""
        return self.db.count_threads(self.parsed)

    def destroy(self) -> None:
        self._db = None

    def __enter__(self) -> "Query":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.destroy()
