#!/usr/bin/env python3
"""
Database models and operations for the Feed Reader.

The only persisted state is the per-feed read watermark: one row per feed
URL holding the metadata of the last fully consumed fetch. All access goes
through DatabaseQueue, which owns a single sqlite connection inside one
worker coroutine.
"""

from os import path, access, R_OK
from time import time
import json
from sqlite3 import connect, Row
from asyncio import Queue, create_task, wait_for, TimeoutError, CancelledError, Event
from uuid import uuid4
from typing import Dict, List, Optional, Any

from config import config, get_logger
from telemetry import trace_span

logger = get_logger("models")


def initialize_database(conn) -> None:
    """Create the watermark table if it does not exist yet."""
    cursor = conn.cursor()
    try:
        cursor.execute("SELECT name FROM sqlite_master WHERE type='table' AND name='feed_reads'")
        if cursor.fetchone() is None:
            logger.info("Database is new or empty. Initializing schema.")
            cursor.executescript(_read_schema_file())
            conn.commit()
            logger.info("Database schema initialized successfully")
        else:
            logger.debug("Database already exists with proper schema")
    finally:
        cursor.close()


def _read_schema_file() -> str:
    """Read the schema from the SQL file."""
    schema_path = config.SCHEMA_FILE_PATH

    if not path.isfile(schema_path):
        raise FileNotFoundError(f"Schema file not found at {schema_path}")
    if not access(schema_path, R_OK):
        raise PermissionError(f"No read permission for schema file at {schema_path}")
    file_size = path.getsize(schema_path)
    max_size = config.SCHEMA_FILE_SIZE_LIMIT_MB * 1024 * 1024
    if file_size > max_size:
        raise ValueError(f"Schema file too large: {file_size} bytes (limit: {max_size} bytes)")

    with open(schema_path, 'r') as f:
        return f.read()


class DatabaseQueue:
    """A queue for database operations so a single coroutine owns the connection."""

    def __init__(self, db_path: str):
        self.db_path = db_path
        self.queue = Queue()
        self.results: Dict[str, Dict] = {}
        self.events: Dict[str, Event] = {}
        self.conn = None
        self.running = False
        self.worker_task = None

    async def start(self) -> None:
        """Start the database worker."""
        if self.running:
            return

        self.running = True
        self.worker_task = create_task(self._worker())
        logger.info("Database worker started")

    async def stop(self) -> None:
        """Stop the database worker."""
        if not self.running:
            return

        self.running = False
        if self.worker_task:
            self.worker_task.cancel()
            try:
                await self.worker_task
            except CancelledError:
                pass

        if self.conn:
            self.conn.close()
            self.conn = None

        self._release_waiters()

        logger.info("Database worker stopped")

    async def _worker(self) -> None:
        """Worker coroutine processing database operations."""
        if not path.isfile(self.db_path):
            logger.info(f"Database file {self.db_path} does not exist. A new database will be created.")
        else:
            logger.debug(f"Using existing database at {self.db_path}")

        try:
            self.conn = connect(self.db_path)
            self.conn.row_factory = Row
            initialize_database(self.conn)
        except Exception as e:
            logger.error(f"Database worker could not open {self.db_path}: {e}")
            if self.conn:
                self.conn.close()
                self.conn = None
            self.running = False
            self._release_waiters()
            return

        while self.running:
            try:
                try:
                    operation_id, operation_name, params = await wait_for(self.queue.get(), timeout=1.0)
                except TimeoutError:
                    continue

                try:
                    method = getattr(self, operation_name, None)
                    if operation_name.startswith('_') or not callable(method):
                        self.results[operation_id] = {"error": f"Unknown operation: {operation_name}"}
                    else:
                        self.results[operation_id] = {"result": method(**params)}
                except Exception as e:
                    logger.error(f"Database operation error in {operation_name}: {e}")
                    self.results[operation_id] = {"error": str(e)}
                finally:
                    if operation_id in self.events:
                        self.events[operation_id].set()
                    self.queue.task_done()

            except CancelledError:
                logger.debug("Database worker cancelled")
                raise
            except Exception as e:
                logger.error(f"Unexpected error in database worker: {e}")

    def _release_waiters(self) -> None:
        """Wake every pending execute() so none waits on a dead worker."""
        for event in self.events.values():
            event.set()
        self.events.clear()
        self.results.clear()

    @trace_span(
        "db.execute",
        tracer_name="db",
        static_attrs={"db.system": "sqlite"},
        attr_from_args=lambda self, operation_name, **params: {
            "db.operation": operation_name,
        },
    )
    async def execute(self, operation_name: str, **params) -> Any:
        """Execute a database operation on the worker and return its result."""
        if not self.running:
            raise RuntimeError("Database worker is not running")

        operation_id = str(uuid4())
        event = Event()
        self.events[operation_id] = event

        try:
            await self.queue.put((operation_id, operation_name, params))
            await event.wait()

            result = self.results.pop(operation_id, None)
            if result is None:
                raise RuntimeError(f"Database stopped before {operation_name} completed")
            if "error" in result:
                raise RuntimeError(result["error"])
            return result["result"]
        finally:
            self.events.pop(operation_id, None)

    # Watermark operations (run on the worker)
    def _row_to_feed_read(self, row: Row) -> Dict[str, Any]:
        meta = None
        if row["meta"]:
            try:
                meta = json.loads(row["meta"])
            except json.JSONDecodeError:
                logger.warning(f"Discarding unreadable meta for {row['url']}")
        return {
            "url": row["url"],
            "meta": meta,
            "meta_date": row["meta_date"],
            "created_at": row["created_at"],
            "updated_at": row["updated_at"],
        }

    def get_feed_read(self, url: str) -> Optional[Dict[str, Any]]:
        """Get the watermark record for a feed URL, or None."""
        cursor = self.conn.cursor()
        cursor.execute(
            "SELECT url, meta, meta_date, created_at, updated_at FROM feed_reads WHERE url = ?",
            (url,),
        )
        row = cursor.fetchone()
        return self._row_to_feed_read(row) if row else None

    def save_feed_read(self, url: str, meta: Optional[Dict[str, Any]], meta_date: Optional[int]) -> bool:
        """Insert or update the watermark for a feed URL.

        The stored meta blob is always replaced. meta_date only moves forward.
        """
        now = int(time())
        cursor = self.conn.cursor()
        cursor.execute(
            """
            INSERT INTO feed_reads (url, meta, meta_date, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(url) DO UPDATE SET
                meta = excluded.meta,
                meta_date = CASE
                    WHEN feed_reads.meta_date IS NULL THEN excluded.meta_date
                    WHEN excluded.meta_date IS NULL THEN feed_reads.meta_date
                    ELSE MAX(feed_reads.meta_date, excluded.meta_date)
                END,
                updated_at = excluded.updated_at
            """,
            (url, json.dumps(meta) if meta is not None else None, meta_date, now, now),
        )
        self.conn.commit()
        return True

    def list_feed_reads(self) -> List[Dict[str, Any]]:
        """List all watermark records, most recently updated first."""
        cursor = self.conn.cursor()
        cursor.execute(
            "SELECT url, meta, meta_date, created_at, updated_at FROM feed_reads ORDER BY updated_at DESC, url"
        )
        return [self._row_to_feed_read(row) for row in cursor.fetchall()]

    def delete_feed_read(self, url: str) -> int:
        """Forget the watermark for a feed URL so its next fetch dispatches everything."""
        cursor = self.conn.cursor()
        cursor.execute("DELETE FROM feed_reads WHERE url = ?", (url,))
        self.conn.commit()
        return cursor.rowcount
