"""
SQLite persistence for preset selections and framing geometry.

Two tables hold the persisted state::

    ptz(cam, ptz)                        current physical preset per camera
    vptz(cam, ptz, vptz, x, y, zoom)     geometry per (camera, preset, framing)

All database work runs in worker threads via :func:`asyncio.to_thread` so the
event loop never blocks on disk I/O.  Every public operation runs inside a
transaction; operations issued from within :meth:`FramingStore.transaction`
join the surrounding transaction instead of opening their own.
"""

from __future__ import annotations

import asyncio
import contextvars
import logging
import random
import sqlite3
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar, Union

from .config import ControlConfig
from .errors import StoreBusyError, StoreError
from .geometry import NEUTRAL, Geometry

LOG = logging.getLogger(__name__)

T = TypeVar("T")

MEMORY_PATH = ":memory:"

RETRY_ATTEMPTS = 10
RETRY_FACTOR = 1.5
RETRY_MIN_DELAY = 0.1
RETRY_MAX_DELAY = 2.0

SCHEMA = (
    "CREATE TABLE IF NOT EXISTS ptz ("
    " cam TEXT NOT NULL PRIMARY KEY,"
    " ptz TEXT NOT NULL)",
    "CREATE TABLE IF NOT EXISTS vptz ("
    " cam TEXT NOT NULL,"
    " ptz TEXT NOT NULL,"
    " vptz TEXT NOT NULL,"
    " x REAL NOT NULL,"
    " y REAL NOT NULL,"
    " zoom REAL NOT NULL,"
    " PRIMARY KEY (cam, ptz, vptz))",
)

_ACTIVE_TRANSACTION: contextvars.ContextVar[Optional["FramingStore"]] = contextvars.ContextVar(
    "vptz_store_transaction", default=None
)


def _is_busy(exc: sqlite3.Error) -> bool:
    message = str(exc).lower()
    return "locked" in message or "busy" in message


def retry_delay(attempt: int) -> float:
    """Jittered exponential back-off for the ``attempt``-th retry (0-based)."""

    delay = random.uniform(1.0, 2.0) * RETRY_MIN_DELAY * (RETRY_FACTOR ** attempt)
    return min(delay, RETRY_MAX_DELAY)


class FramingStore:
    """Persisted presets and framing geometry backed by one SQLite database."""

    def __init__(
        self,
        config: ControlConfig,
        path: Optional[Union[str, Path]] = None,
        *,
        retries: int = RETRY_ATTEMPTS,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.config = config
        self.path = str(path) if path is not None else str(config.database_path)
        self.retries = max(0, int(retries))
        self._sleep = sleep
        self._db: Optional[sqlite3.Connection] = None
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------------ lifecycle

    @property
    def is_open(self) -> bool:
        return self._db is not None

    async def open(self) -> None:
        if self._db is not None:
            return
        self._db = await asyncio.to_thread(self._connect)
        await self.transaction(self._seed)
        LOG.info("Framing store opened at %s", self.path)

    async def close(self) -> None:
        db = self._db
        self._db = None
        if db is not None:
            await asyncio.to_thread(db.close)
            LOG.info("Framing store closed")

    def _connect(self) -> sqlite3.Connection:
        if self.path != MEMORY_PATH:
            Path(self.path).parent.mkdir(parents=True, exist_ok=True)
        try:
            db = sqlite3.connect(self.path, timeout=1.0, isolation_level=None, check_same_thread=False)
            if self.path != MEMORY_PATH:
                db.execute("PRAGMA journal_mode=WAL")
            for statement in SCHEMA:
                db.execute(statement)
        except sqlite3.Error as exc:
            raise StoreError(f"cannot open framing store {self.path}: {exc}") from exc
        return db

    async def _seed(self) -> None:
        first = self.config.presets[0]
        presets = [(cam, first) for cam in self.config.cameras]
        geometry = [
            (cam, preset, framing, NEUTRAL.x, NEUTRAL.y, NEUTRAL.zoom)
            for cam in self.config.cameras
            for preset in self.config.presets
            for framing in self.config.framings
        ]

        def seed(db: sqlite3.Connection) -> None:
            db.executemany("INSERT OR IGNORE INTO ptz (cam, ptz) VALUES (?, ?)", presets)
            db.executemany(
                "INSERT OR IGNORE INTO vptz (cam, ptz, vptz, x, y, zoom) VALUES (?, ?, ?, ?, ?, ?)",
                geometry,
            )

        await self._call(seed)

    # ------------------------------------------------------------------ transactions

    async def transaction(self, callback: Callable[[], Awaitable[T]]) -> T:
        """
        Run ``callback`` inside one transaction.

        Nested calls join the outer transaction.  Busy or locked database
        errors roll the unit back and retry it with jittered exponential
        back-off; :class:`StoreBusyError` is raised once the retries are
        exhausted.
        """

        if _ACTIVE_TRANSACTION.get() is self:
            return await callback()

        async with self._lock:
            attempt = 0
            while True:
                token = _ACTIVE_TRANSACTION.set(self)
                try:
                    await self._call(lambda db: db.execute("BEGIN IMMEDIATE"))
                    result = await callback()
                    await self._call(lambda db: db.execute("COMMIT"))
                    return result
                except StoreBusyError as exc:
                    await self._rollback()
                    if attempt >= self.retries:
                        raise StoreBusyError(f"framing store busy after {attempt + 1} attempt(s)") from exc
                    delay = retry_delay(attempt)
                    attempt += 1
                    LOG.warning("Framing store busy (%s); retry %d/%d in %.0fms", exc, attempt, self.retries, delay * 1000)
                    await self._sleep(delay)
                except BaseException:
                    await self._rollback()
                    raise
                finally:
                    _ACTIVE_TRANSACTION.reset(token)

    async def _rollback(self) -> None:
        db = self._db
        if db is None or not db.in_transaction:
            return
        try:
            await asyncio.to_thread(db.rollback)
        except sqlite3.Error:
            LOG.exception("Framing store rollback failed")

    async def _call(self, fn: Callable[[sqlite3.Connection], T]) -> T:
        db = self._db
        if db is None:
            raise StoreError("framing store is not open")
        try:
            return await asyncio.to_thread(fn, db)
        except sqlite3.OperationalError as exc:
            if _is_busy(exc):
                raise StoreBusyError(str(exc)) from exc
            raise StoreError(str(exc)) from exc
        except sqlite3.Error as exc:
            raise StoreError(str(exc)) from exc

    async def _run(self, fn: Callable[[sqlite3.Connection], T]) -> T:
        async def unit() -> T:
            return await self._call(fn)

        return await self.transaction(unit)

    # ------------------------------------------------------------------ presets

    async def get_preset(self, cam: str) -> str:
        def query(db: sqlite3.Connection) -> Optional[str]:
            row = db.execute("SELECT ptz FROM ptz WHERE cam = ?", (cam,)).fetchone()
            return row[0] if row else None

        preset = await self._run(query)
        return preset if preset is not None else self.config.presets[0]

    async def set_preset(self, cam: str, preset: str) -> None:
        await self._run(
            lambda db: db.execute(
                "INSERT INTO ptz (cam, ptz) VALUES (?, ?) "
                "ON CONFLICT(cam) DO UPDATE SET ptz = excluded.ptz",
                (cam, preset),
            )
        )

    # ------------------------------------------------------------------ geometry

    async def get_geometry(self, cam: str, preset: str, framing: str) -> Geometry:
        def query(db: sqlite3.Connection) -> Optional[tuple]:
            return db.execute(
                "SELECT x, y, zoom FROM vptz WHERE cam = ? AND ptz = ? AND vptz = ?",
                (cam, preset, framing),
            ).fetchone()

        row = await self._run(query)
        if row is None:
            return NEUTRAL
        return Geometry(float(row[0]), float(row[1]), float(row[2]))

    async def get_geometry_all(self, cam: str, preset: str) -> Dict[str, Geometry]:
        def query(db: sqlite3.Connection) -> list:
            return db.execute(
                "SELECT vptz, x, y, zoom FROM vptz WHERE cam = ? AND ptz = ?",
                (cam, preset),
            ).fetchall()

        rows = {row[0]: Geometry(float(row[1]), float(row[2]), float(row[3])) for row in await self._run(query)}
        return {framing: rows.get(framing, NEUTRAL) for framing in self.config.framings}

    async def set_geometry(self, cam: str, preset: str, framing: str, geometry: Geometry) -> None:
        await self._run(
            lambda db: db.execute(
                "INSERT INTO vptz (cam, ptz, vptz, x, y, zoom) VALUES (?, ?, ?, ?, ?, ?) "
                "ON CONFLICT(cam, ptz, vptz) DO UPDATE SET "
                "x = excluded.x, y = excluded.y, zoom = excluded.zoom",
                (cam, preset, framing, float(geometry.x), float(geometry.y), float(geometry.zoom)),
            )
        )
