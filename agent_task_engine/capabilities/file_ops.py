"""
File capability.

Read, write, append, list, existence checks, deletion and CSV/JSON parsing
confined to a root directory.
"""

from __future__ import annotations

import csv
import io
import json
from pathlib import Path
from typing import Any, Dict, Union

import aiofiles

from ..exceptions import CapabilityExecutionError
from . import Capability, CapabilitySchema


class PathEscapeError(CapabilityExecutionError):
    """Raised when a path resolves outside the capability root."""
    pass


class FileCapability(Capability):
    """File operations under a sandbox root."""

    OPERATIONS = ["read", "write", "append", "list", "exists", "delete", "parse_csv", "parse_json"]

    def __init__(
        self,
        root: Union[str, Path] = "./workspace",
        max_file_size: int = 10 * 1024 * 1024,
    ):
        super().__init__(
            name="file",
            description="Read, write, list, delete and parse (CSV, JSON) files inside the workspace",
        )
        self.root = Path(root)
        self.max_file_size = max_file_size

    def get_schema(self) -> CapabilitySchema:
        return CapabilitySchema(
            name=self.name,
            description=self.description,
            parameters={
                "operation": {
                    "type": "string",
                    "enum": self.OPERATIONS,
                    "description": "File operation to perform",
                },
                "path": {"type": "string", "description": "Path relative to the workspace root"},
                "content": {"type": "string", "description": "Content for write/append"},
                "pattern": {"type": "string", "description": "Glob pattern for list (default *)"},
            },
            required=["operation", "path"],
        )

    def _resolve(self, path: str) -> Path:
        root = self.root.resolve()
        resolved = (root / path).resolve()
        try:
            resolved.relative_to(root)
        except ValueError:
            raise PathEscapeError(f"Path escapes workspace root: {path}") from None
        return resolved

    async def execute(self, **kwargs: Any) -> Dict[str, Any]:
        operation = kwargs["operation"]
        path = self._resolve(kwargs["path"])

        if operation == "read":
            return await self._read(path)
        if operation in ("write", "append"):
            return await self._write(path, str(kwargs.get("content", "")), append=operation == "append")
        if operation == "list":
            return self._list(path, str(kwargs.get("pattern") or "*"))
        if operation == "exists":
            return {"path": str(path), "exists": path.exists()}
        if operation == "delete":
            return self._delete(path)
        if operation == "parse_csv":
            return await self._parse_csv(path)
        if operation == "parse_json":
            return await self._parse_json(path)
        raise CapabilityExecutionError(f"Unsupported file operation: {operation}")

    async def _read_text(self, path: Path) -> str:
        if not path.is_file():
            raise CapabilityExecutionError(f"File not found: {path}")
        if path.stat().st_size > self.max_file_size:
            raise CapabilityExecutionError(f"File too large: {path}")

        async with aiofiles.open(path, "r", encoding="utf-8") as f:
            return await f.read()

    async def _read(self, path: Path) -> Dict[str, Any]:
        content = await self._read_text(path)
        return {"path": str(path), "content": content, "size": len(content)}

    async def _write(self, path: Path, content: str, append: bool) -> Dict[str, Any]:
        path.parent.mkdir(parents=True, exist_ok=True)
        async with aiofiles.open(path, "a" if append else "w", encoding="utf-8") as f:
            await f.write(content)
        return {"path": str(path), "bytes_written": len(content.encode("utf-8"))}

    def _list(self, path: Path, pattern: str) -> Dict[str, Any]:
        if not path.is_dir():
            raise CapabilityExecutionError(f"Not a directory: {path}")
        if ".." in Path(pattern).parts or Path(pattern).is_absolute():
            raise PathEscapeError(f"Pattern escapes workspace root: {pattern}")
        entries = [
            {"name": item.name, "is_dir": item.is_dir()}
            for item in sorted(path.glob(pattern))
        ]
        return {"path": str(path), "entries": entries, "count": len(entries)}

    def _delete(self, path: Path) -> Dict[str, Any]:
        if path == self.root.resolve():
            raise CapabilityExecutionError("Refusing to delete the workspace root")
        if path.is_dir():
            raise CapabilityExecutionError(f"Not a file: {path}")
        if not path.exists():
            raise CapabilityExecutionError(f"File not found: {path}")
        path.unlink()
        return {"path": str(path), "deleted": True}

    async def _parse_csv(self, path: Path) -> Dict[str, Any]:
        content = await self._read_text(path)
        try:
            reader = csv.DictReader(io.StringIO(content))
            rows = [dict(row) for row in reader]
        except csv.Error as e:
            raise CapabilityExecutionError(f"Invalid CSV in {path}: {e}") from e
        return {
            "path": str(path),
            "headers": list(reader.fieldnames or []),
            "data": rows,
            "rows": len(rows),
        }

    async def _parse_json(self, path: Path) -> Dict[str, Any]:
        content = await self._read_text(path)
        try:
            data = json.loads(content)
        except json.JSONDecodeError as e:
            raise CapabilityExecutionError(f"Invalid JSON in {path}: {e}") from e
        return {"path": str(path), "data": data}
