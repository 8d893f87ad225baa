# x402gate/protocol/replay.py
"""
Replay guard: exactly-once crediting of settlement signatures.

A signature is reserved by inserting it under a uniqueness constraint; the
storage layer decides which of several concurrent attempts wins. There is no
read-then-write window in which two callers could both see "unused".

The guard is an explicit handle owned by the application lifespan and
passed to the middleware and routes; nothing here is module-global.
"""
import asyncio
import logging
import sqlite3
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Optional

from x402gate.protocol import audit
from x402gate.protocol.errors import ReplayDetected
from x402gate.protocol.types import ConsumedSignature

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Reservation:
    reserved: bool
    record: ConsumedSignature


class ReplayGuard(ABC):
    """Persistent set of consumed settlement signatures."""

    @abstractmethod
    async def reserve(
        self,
        signature: str,
        *,
        payer: Optional[str] = None,
        amount: Optional[int] = None,
        recipient: Optional[str] = None,
        resource: Optional[str] = None,
        network: Optional[str] = None,
    ) -> Reservation:
        """
        Atomically reserve ``signature``.

        Returns:
            Reservation with ``reserved=True`` for exactly one caller per
            signature; every other caller gets ``reserved=False`` and the
            original record
        """

    @abstractmethod
    async def lookup(self, signature: str) -> Optional[ConsumedSignature]:
        """Return the original record for a consumed signature."""

    async def claim(self, signature: str, **details) -> ConsumedSignature:
        """
        Reserve ``signature`` or fail.

        Raises:
            ReplayDetected: The signature was already consumed
        """
        reservation = await self.reserve(signature, **details)
        if not reservation.reserved:
            logger.warning(f"x402: Replay of signature {signature} rejected")
            audit.log_replay_detected(signature, reservation.record.model_dump(mode="json"))
            raise ReplayDetected(signature, reservation.record)
        return reservation.record

    async def close(self) -> None:
        pass


def _new_record(signature: str, **details) -> ConsumedSignature:
    return ConsumedSignature(signature=signature, created_at=datetime.now(timezone.utc), **details)


class InMemoryReplayGuard(ReplayGuard):
    """Process-local guard for tests and development."""

    def __init__(self):
        self._records: Dict[str, ConsumedSignature] = {}
        self._lock = threading.Lock()

    async def reserve(self, signature: str, **details) -> Reservation:
        candidate = _new_record(signature, **details)
        with self._lock:
            record = self._records.setdefault(signature, candidate)
        return Reservation(reserved=record is candidate, record=record)

    async def lookup(self, signature: str) -> Optional[ConsumedSignature]:
        return self._records.get(signature)


class SQLiteReplayGuard(ReplayGuard):
    """
    SQLite-backed guard.

    The signature is the table's primary key and reservations use
    INSERT ... ON CONFLICT DO NOTHING, so the database arbitrates races.
    Blocking calls run in worker threads.
    """

    _SCHEMA = """
        CREATE TABLE IF NOT EXISTS consumed_signatures (
            signature TEXT PRIMARY KEY,
            payer TEXT,
            amount INTEGER,
            recipient TEXT,
            resource TEXT,
            network TEXT,
            created_at TEXT NOT NULL
        )
    """
    _COLUMNS = ("signature", "payer", "amount", "recipient", "resource", "network", "created_at")

    def __init__(self, dsn: str = "sqlite:///:memory:"):
        self.path = parse_sqlite_dsn(dsn)
        if self.path != ":memory:":
            Path(self.path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(self.path, check_same_thread=False, isolation_level=None)
        self._lock = threading.Lock()
        with self._lock:
            self._conn.execute(self._SCHEMA)
        logger.info(f"Replay guard store opened at {self.path}")

    def _row_to_record(self, row) -> ConsumedSignature:
        data = dict(zip(self._COLUMNS, row))
        data["created_at"] = datetime.fromisoformat(data["created_at"])
        return ConsumedSignature(**data)

    def _lookup_sync(self, signature: str) -> Optional[ConsumedSignature]:
        with self._lock:
            row = self._conn.execute(
                f"SELECT {', '.join(self._COLUMNS)} FROM consumed_signatures WHERE signature = ?",
                (signature,),
            ).fetchone()
        return self._row_to_record(row) if row else None

    def _reserve_sync(self, signature: str, details: Dict) -> Reservation:
        record = _new_record(signature, **details)
        with self._lock:
            cursor = self._conn.execute(
                "INSERT INTO consumed_signatures "
                "(signature, payer, amount, recipient, resource, network, created_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?) ON CONFLICT(signature) DO NOTHING",
                (
                    record.signature,
                    record.payer,
                    record.amount,
                    record.recipient,
                    record.resource,
                    record.network,
                    record.created_at.isoformat(),
                ),
            )
            inserted = cursor.rowcount == 1
        if inserted:
            return Reservation(reserved=True, record=record)
        return Reservation(reserved=False, record=self._lookup_sync(signature))

    async def reserve(self, signature: str, **details) -> Reservation:
        return await asyncio.to_thread(self._reserve_sync, signature, details)

    async def lookup(self, signature: str) -> Optional[ConsumedSignature]:
        return await asyncio.to_thread(self._lookup_sync, signature)

    async def close(self) -> None:
        with self._lock:
            self._conn.close()


def parse_sqlite_dsn(dsn: str) -> str:
    """Turn ``sqlite:///path`` into a filesystem path (or ``:memory:``)."""
    prefix = "sqlite:///"
    if not dsn.startswith(prefix):
        raise ValueError(f"Unsupported replay store DSN {dsn!r}; expected sqlite:///<path>")
    return dsn[len(prefix):] or ":memory:"


def create_replay_guard(dsn: str) -> ReplayGuard:
    if dsn in ("memory://", "memory"):
        return InMemoryReplayGuard()
    return SQLiteReplayGuard(dsn)
