"""
Result Store

Persists reviewed detection results. Two interchangeable backends:
- JsonFileResultStore: a single flat JSON document {results, lastUpdated}
- SqliteResultStore: one row per result in a SQLite database

Both reject a result whose imageName matches an existing one
(case-insensitive) with ConflictError and leave the store unchanged.
"""

import json
import logging
import os
import random
import sqlite3
import string
import threading
import time
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, Sequence, Union

from .errors import ConflictError

logger = logging.getLogger(__name__)

_ID_ALPHABET = string.digits + string.ascii_lowercase


def generate_result_id() -> str:
    """result_<epoch ms>_<9 base36 chars>"""
    suffix = ''.join(random.choices(_ID_ALPHABET, k=9))
    return f"result_{int(time.time() * 1000)}_{suffix}"


def utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat(timespec='milliseconds').replace('+00:00', 'Z')


def _name_key(name: str) -> str:
    return (name or '').lower()


class ResultStore(ABC):
    """Storage contract shared by the persistence API and local clients."""

    @abstractmethod
    def list_results(self) -> Dict[str, Any]:
        """Return {"results": [...], "lastUpdated": str, "filePath": str}."""

    @abstractmethod
    def save(self, record: Dict[str, Any]) -> Dict[str, Any]:
        """Store a new record, assigning id and timestamp. Raises ConflictError."""

    @abstractmethod
    def delete_all(self) -> int:
        """Remove every record and return how many were removed."""

    @abstractmethod
    def delete_ids(self, ids: Iterable[str]) -> int:
        """Remove the listed records and return how many were removed."""

    def count(self) -> int:
        return len(self.list_results()['results'])

    def _stamp(self, record: Dict[str, Any]) -> Dict[str, Any]:
        saved = dict(record)
        saved['id'] = generate_result_id()
        saved['timestamp'] = utc_timestamp()
        return saved


def resolve_results_path(primary: Union[str, Path],
                         fallback_dirs: Sequence[Union[str, Path]] = ()) -> Path:
    """
    Pick where the results file lives.

    The primary path wins when its directory exists (or can be created) and
    is writable; otherwise each fallback directory is tried in order with the
    primary file name. Raises OSError when no candidate is usable.
    """
    primary = Path(primary)
    candidates = [primary] + [Path(d) / primary.name for d in fallback_dirs]

    for candidate in candidates:
        directory = candidate.parent
        try:
            directory.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            logger.warning(f"Results directory {directory} unavailable: {e}")
            continue
        if candidate.exists() and not os.access(candidate, os.W_OK):
            logger.warning(f"Results file {candidate} is not writable")
            continue
        if os.access(directory, os.W_OK):
            if candidate != primary:
                logger.info(f"📂 Using fallback results file: {candidate}")
            return candidate

    raise OSError(f"No writable location for results file among {[str(c) for c in candidates]}")


class JsonFileResultStore(ResultStore):
    """Results kept in one JSON file, rewritten on every change."""

    def __init__(self, file_path: Union[str, Path], fallback_dirs: Sequence[Union[str, Path]] = ()):
        self.file_path = resolve_results_path(file_path, fallback_dirs)
        self._lock = threading.Lock()
        logger.info(f"JSON result store initialized: {self.file_path}")

    def _empty(self, last_updated: str = '') -> Dict[str, Any]:
        return {'results': [], 'lastUpdated': last_updated}

    def _write(self, data: Dict[str, Any]):
        tmp_path = self.file_path.with_suffix(self.file_path.suffix + '.tmp')
        with open(tmp_path, 'w', encoding='utf-8') as f:
            json.dump(data, f, indent=2, ensure_ascii=False)
        os.replace(tmp_path, self.file_path)

    def _read(self) -> Dict[str, Any]:
        """Read the file, recreating it when missing, empty or unparsable."""
        if not self.file_path.exists():
            data = self._empty()
            self._write(data)
            return data

        content = self.file_path.read_text(encoding='utf-8').strip()
        if not content:
            data = self._empty()
            self._write(data)
            return data

        try:
            data = json.loads(content)
        except json.JSONDecodeError as e:
            logger.error(f"Error reading result file, creating new one: {e}")
            data = self._empty()
            self._write(data)
            return data

        if not isinstance(data, dict) or not isinstance(data.get('results'), list):
            last_updated = data.get('lastUpdated', '') if isinstance(data, dict) else ''
            return self._empty(last_updated)

        return data

    def list_results(self) -> Dict[str, Any]:
        with self._lock:
            data = self._read()
        return {
            'results': data['results'],
            'lastUpdated': data.get('lastUpdated', ''),
            'filePath': str(self.file_path.resolve()),
        }

    def save(self, record: Dict[str, Any]) -> Dict[str, Any]:
        with self._lock:
            data = self._read()
            key = _name_key(record.get('imageName'))
            if any(_name_key(r.get('imageName')) == key for r in data['results']):
                raise ConflictError(record.get('imageName', ''))

            saved = self._stamp(record)
            data['results'].append(saved)
            data['lastUpdated'] = utc_timestamp()
            self._write(data)
            total = len(data['results'])

        logger.info(f"💾 Saved result {saved['id']} for {saved.get('imageName')} (total {total})")
        return {'savedResult': saved, 'totalResults': total}

    def delete_all(self) -> int:
        with self._lock:
            removed = len(self._read()['results'])
            self._write(self._empty(utc_timestamp()))
        logger.info(f"🗑️ Cleared {removed} results")
        return removed

    def delete_ids(self, ids: Iterable[str]) -> int:
        doomed = set(ids)
        with self._lock:
            data = self._read()
            kept = [r for r in data['results'] if r.get('id') not in doomed]
            removed = len(data['results']) - len(kept)
            if removed:
                data['results'] = kept
                data['lastUpdated'] = utc_timestamp()
                self._write(data)
        logger.info(f"🗑️ Deleted {removed} results")
        return removed


class SqliteResultStore(ResultStore):
    """Results kept as JSON documents in a SQLite table."""

    def __init__(self, db_path: Union[str, Path]):
        self.db_path = Path(db_path)
        self._lock = threading.Lock()
        self._create_schema()
        logger.info(f"SQLite result store initialized: {self.db_path}")

    def _connect(self) -> sqlite3.Connection:
        return sqlite3.connect(str(self.db_path))

    def _create_schema(self):
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        with self._connect() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS results (
                    id TEXT PRIMARY KEY,
                    image_name TEXT,
                    image_name_key TEXT UNIQUE,
                    record TEXT,
                    timestamp TEXT
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS store_meta (
                    key TEXT PRIMARY KEY,
                    value TEXT
                )
            """)

    def _touch(self, conn: sqlite3.Connection):
        conn.execute(
            "INSERT OR REPLACE INTO store_meta (key, value) VALUES ('lastUpdated', ?)",
            (utc_timestamp(),)
        )

    def _last_updated(self, conn: sqlite3.Connection) -> str:
        row = conn.execute("SELECT value FROM store_meta WHERE key = 'lastUpdated'").fetchone()
        return row[0] if row else ''

    def list_results(self) -> Dict[str, Any]:
        with self._connect() as conn:
            rows = conn.execute("SELECT record FROM results ORDER BY rowid").fetchall()
            last_updated = self._last_updated(conn)
        return {
            'results': [json.loads(row[0]) for row in rows],
            'lastUpdated': last_updated,
            'filePath': str(self.db_path.resolve()),
        }

    def count(self) -> int:
        with self._connect() as conn:
            return conn.execute("SELECT COUNT(*) FROM results").fetchone()[0]

    def save(self, record: Dict[str, Any]) -> Dict[str, Any]:
        image_name = record.get('imageName', '')
        with self._lock:
            with self._connect() as conn:
                existing = conn.execute(
                    "SELECT COUNT(*) FROM results WHERE image_name_key = ?",
                    (_name_key(image_name),)
                ).fetchone()[0]
                if existing:
                    raise ConflictError(image_name)

                saved = self._stamp(record)
                conn.execute("""
                    INSERT INTO results (id, image_name, image_name_key, record, timestamp)
                    VALUES (?, ?, ?, ?, ?)
                """, (
                    saved['id'], image_name, _name_key(image_name),
                    json.dumps(saved, ensure_ascii=False), saved['timestamp']
                ))
                self._touch(conn)
                total = conn.execute("SELECT COUNT(*) FROM results").fetchone()[0]

        logger.info(f"💾 Saved result {saved['id']} for {image_name} (total {total})")
        return {'savedResult': saved, 'totalResults': total}

    def delete_all(self) -> int:
        with self._lock:
            with self._connect() as conn:
                removed = conn.execute("DELETE FROM results").rowcount
                self._touch(conn)
        logger.info(f"🗑️ Cleared {removed} results")
        return removed

    def delete_ids(self, ids: Iterable[str]) -> int:
        ids = list(ids)
        if not ids:
            return 0
        placeholders = ','.join('?' for _ in ids)
        with self._lock:
            with self._connect() as conn:
                removed = conn.execute(
                    f"DELETE FROM results WHERE id IN ({placeholders})", ids
                ).rowcount
                if removed:
                    self._touch(conn)
        logger.info(f"🗑️ Deleted {removed} results")
        return removed


def create_result_store(config: Dict[str, Any]) -> ResultStore:
    """Build the store selected by config['storage']['backend']."""
    storage = config['storage']
    if storage['backend'] == 'sqlite':
        return SqliteResultStore(storage['database_path'])
    return JsonFileResultStore(storage['results_file'], storage.get('fallback_dirs') or ())
