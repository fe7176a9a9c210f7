from __future__ import annotations

import contextlib
import json
from pathlib import Path
from typing import Any, TextIO
from uuid import uuid4

import yaml


class _AtomicFileStore:
    """Whole-document file persistence with atomic replace on write."""

    def __init__(self, path: str | Path):
        self.path = Path(path)

    def exists(self) -> bool:
        return self.path.exists()

    def load(self, *, default: Any = None) -> Any:
        if not self.path.exists():
            return default
        with self.path.open("r", encoding="utf-8") as handle:
            payload = self._decode(handle)
        if payload is None:
            return default
        return payload

    def write(self, payload: Any, *, atomic: bool = True) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        if not atomic:
            with self.path.open("w", encoding="utf-8") as handle:
                self._encode(payload, handle)
            return

        temp_path = self._temp_path()
        try:
            with temp_path.open("w", encoding="utf-8") as handle:
                self._encode(payload, handle)
            temp_path.replace(self.path)
        except Exception:
            with contextlib.suppress(Exception):
                temp_path.unlink(missing_ok=True)
            raise

    def discard(self) -> None:
        self.path.unlink(missing_ok=True)

    def _temp_path(self) -> Path:
        token = uuid4().hex
        return self.path.with_name(f".{self.path.name}.{token}.tmp")

    def _decode(self, handle: TextIO) -> Any:
        raise NotImplementedError

    def _encode(self, payload: Any, handle: TextIO) -> None:
        raise NotImplementedError


class JsonFileStore(_AtomicFileStore):
    """Key-value JSON document store used for pool state and cache entries."""

    def _decode(self, handle: TextIO) -> Any:
        raw = handle.read()
        if not raw.strip():
            return None
        return json.loads(raw)

    def _encode(self, payload: Any, handle: TextIO) -> None:
        json.dump(payload, handle, indent=2, ensure_ascii=False)


class YamlFileStore(_AtomicFileStore):
    def __init__(self, path: str | Path, *, sort_keys: bool = False):
        super().__init__(path)
        self._sort_keys = sort_keys

    def _decode(self, handle: TextIO) -> Any:
        return yaml.safe_load(handle)

    def _encode(self, payload: Any, handle: TextIO) -> None:
        yaml.safe_dump(payload, handle, sort_keys=self._sort_keys)
