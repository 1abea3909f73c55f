"""
Execution Ledger

Append-only audit trail of planning, task execution, capability calls and
errors. Records link to each other through ``parent_id`` so a whole request
can be reconstructed as a tree.
"""

from __future__ import annotations

import asyncio
import json
import time
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any

import aiofiles
import structlog

from .exceptions import LedgerError

if TYPE_CHECKING:
    from .config import LedgerConfig

logger = structlog.get_logger()


class RecordKind(str, Enum):
    """Kinds of ledger records."""

    PLANNING = "planning"
    SUBTASK_EXECUTION = "subtask_execution"
    FUNCTION_CALL = "function_call"
    ERROR = "error"
    AGENT_EXECUTION = "agent_execution"
    LLM_CALL = "llm_call"


def new_record_id(kind: RecordKind) -> str:
    return f"{kind.value}_{time.time_ns()}_{uuid.uuid4().hex[:6]}"


@dataclass
class LedgerRecord:
    """A single ledger entry."""

    id: str
    kind: RecordKind
    payload: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=datetime.now)

    @property
    def parent_id(self) -> str:
        return self.payload.get("parent_id", "") or ""

    @property
    def session_id(self) -> str:
        return self.payload.get("session_id", "") or ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "kind": self.kind.value,
            "timestamp": self.timestamp.isoformat(),
            "payload": self.payload,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> LedgerRecord:
        return cls(
            id=data["id"],
            kind=RecordKind(data["kind"]),
            payload=dict(data.get("payload") or {}),
            timestamp=datetime.fromisoformat(data["timestamp"]),
        )


class ExecutionLedger(ABC):
    """Append-only record sink. Implementations must be safe for concurrent appends."""

    @abstractmethod
    async def append(self, kind: RecordKind, payload: dict[str, Any]) -> str:
        """Store a record and return its id.

        Raises:
            LedgerError: If the record cannot be stored
        """

    async def close(self) -> None:
        """Release any resources held by the ledger."""


class InMemoryLedger(ExecutionLedger):
    """Ledger that keeps records in a list. Used by tests and the default config."""

    def __init__(self) -> None:
        self.records: list[LedgerRecord] = []

    async def append(self, kind: RecordKind, payload: dict[str, Any]) -> str:
        record = LedgerRecord(id=new_record_id(kind), kind=RecordKind(kind), payload=dict(payload))
        self.records.append(record)
        return record.id

    def get(self, record_id: str) -> LedgerRecord | None:
        for record in self.records:
            if record.id == record_id:
                return record
        return None

    def by_kind(self, kind: RecordKind) -> list[LedgerRecord]:
        return [r for r in self.records if r.kind == kind]

    def children_of(self, parent_id: str) -> list[LedgerRecord]:
        return [r for r in self.records if r.parent_id == parent_id]

    def __len__(self) -> int:
        return len(self.records)


class JSONLLedger(ExecutionLedger):
    """
    Ledger writing one JSON line per record to ``<base_dir>/<session_id>.jsonl``.

    Appends are serialised with a lock so concurrent tasks never interleave
    partial lines.
    """

    def __init__(self, base_dir: str | Path, session_id: str) -> None:
        if not session_id:
            raise LedgerError("JSONL ledger requires a session id", error_code="NO_SESSION")
        self.base_dir = Path(base_dir)
        self.session_id = session_id
        self._lock = asyncio.Lock()

    @property
    def path(self) -> Path:
        return self.base_dir / f"{self.session_id}.jsonl"

    async def append(self, kind: RecordKind, payload: dict[str, Any]) -> str:
        record = LedgerRecord(id=new_record_id(kind), kind=RecordKind(kind), payload=dict(payload))
        try:
            line = json.dumps(record.to_dict(), ensure_ascii=False, default=str)
        except (TypeError, ValueError) as e:
            raise LedgerError(f"Record is not serialisable: {e}", error_code="ENCODE") from e

        async with self._lock:
            try:
                self.base_dir.mkdir(parents=True, exist_ok=True)
                async with aiofiles.open(self.path, "a", encoding="utf-8") as f:
                    await f.write(line + "\n")
            except OSError as e:
                raise LedgerError(f"Failed to write {self.path}: {e}", error_code="IO") from e

        return record.id

    async def session_records(self) -> list[LedgerRecord]:
        """Read back every record of this session, in append order."""
        if not self.path.exists():
            return []

        records = []
        async with self._lock:
            async with aiofiles.open(self.path, "r", encoding="utf-8") as f:
                async for line in f:
                    line = line.strip()
                    if not line:
                        continue
                    try:
                        records.append(LedgerRecord.from_dict(json.loads(line)))
                    except (ValueError, KeyError) as e:
                        logger.warning("ledger_line_skipped", path=str(self.path), error=str(e))
        return records

    async def get_record(self, record_id: str) -> LedgerRecord | None:
        for record in await self.session_records():
            if record.id == record_id:
                return record
        return None


async def safe_append(ledger: ExecutionLedger, kind: RecordKind, payload: dict[str, Any]) -> str:
    """Append a record, logging instead of raising on failure.

    Returns the record id, or an empty string when the write failed.
    """
    try:
        return await ledger.append(kind, payload)
    except Exception as e:
        logger.warning("ledger_append_failed", kind=RecordKind(kind).value, error=str(e))
        return ""


def create_ledger(config: LedgerConfig, session_id: str = "") -> ExecutionLedger:
    """Build the ledger backend named in the configuration."""
    if config.backend == "jsonl":
        return JSONLLedger(config.base_dir, session_id or uuid.uuid4().hex)
    return InMemoryLedger()
