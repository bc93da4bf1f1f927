"""File-backed entity store: one YAML document per entity, grouped by collection.

Layout is ``<root>/<collection>/<id>.yaml``. Writes are atomic (temp file +
rename) and committed to git when the data directory lives in a repo.
"""

from __future__ import annotations

import logging
import os
import subprocess
import tempfile
import threading
from collections.abc import Callable
from datetime import datetime
from pathlib import Path
from typing import Any
from uuid import uuid4

import yaml

from crm_reminders.config import DATA_DIR as DATA_DIR
from crm_reminders.config import TZ as TZ

STATE_DIR = DATA_DIR / "state"
ENTITIES_DIR = DATA_DIR / "entities"

log = logging.getLogger(__name__)

Record = dict[str, Any]


class EntityNotFound(KeyError):
    """Raised when an update targets an id that does not exist."""


def _find_repo(filepath: Path) -> Path | None:
    """Walk up from filepath to find the nearest git repo root."""
    for parent in filepath.parents:
        if (parent / ".git").is_dir():
            return parent
    return None


def git_commit(filepath: Path, message: str) -> None:
    """No-op when no git repo is found above filepath."""
    repo = _find_repo(filepath)
    if repo is None:
        return
    rel = filepath.relative_to(repo)
    subprocess.run(
        ["git", "add", str(rel)],
        cwd=repo,
        capture_output=True,
    )
    subprocess.run(
        ["git", "commit", "-m", message, "--", str(rel)],
        cwd=repo,
        capture_output=True,
    )


def git_rm_commit(filepath: Path, message: str) -> None:
    """Remove a file from git and commit. No-op when no git repo is found."""
    repo = _find_repo(filepath)
    if repo is None:
        return
    rel = filepath.relative_to(repo)
    subprocess.run(
        ["git", "rm", "-f", str(rel)],
        cwd=repo,
        capture_output=True,
    )
    subprocess.run(
        ["git", "commit", "-m", message, "--", str(rel)],
        cwd=repo,
        capture_output=True,
    )


def _matches(record: Record, criteria: dict[str, Any]) -> bool:
    for key, expected in criteria.items():
        value = record.get(key)
        if isinstance(expected, (tuple, list, set, frozenset)):
            if value not in expected:
                return False
        elif value != expected:
            return False
    return True


class EntityStore:
    """Collections of YAML records keyed by id."""

    def __init__(self, root: Path) -> None:
        self.root = root
        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _lock(self, collection: str) -> threading.Lock:
        with self._locks_guard:
            return self._locks.setdefault(collection, threading.Lock())

    def _path(self, collection: str, entity_id: str) -> Path:
        return self.root / collection / f"{entity_id}.yaml"

    def _read(self, filepath: Path) -> Record:
        data = yaml.safe_load(filepath.read_text(encoding="utf-8"))
        if not isinstance(data, dict):
            raise ValueError("Entity document is not a mapping")
        data.setdefault("id", filepath.stem)
        return data

    def _write(self, collection: str, record: Record, commit_msg: str) -> None:
        """Atomic write via tempfile + os.replace."""
        dir_path = self.root / collection
        dir_path.mkdir(parents=True, exist_ok=True)
        target = self._path(collection, record["id"])
        content = yaml.safe_dump(record, allow_unicode=True, sort_keys=False)
        fd, tmp = tempfile.mkstemp(dir=dir_path, suffix=".tmp")
        try:
            os.write(fd, content.encode())
        finally:
            os.close(fd)
        os.replace(tmp, target)
        git_commit(target, commit_msg)

    def list(self, collection: str) -> list[Record]:
        """All readable records of a collection, ordered by id."""
        dir_path = self.root / collection
        if not dir_path.is_dir():
            return []
        result: list[Record] = []
        for filepath in sorted(dir_path.glob("*.yaml")):
            try:
                result.append(self._read(filepath))
            except (ValueError, yaml.YAMLError, OSError):
                log.warning("Skipping corrupt entity file: %s", filepath)
        return result

    def filter(self, collection: str, **criteria: Any) -> list[Record]:
        """Equality match per field; a tuple/list/set value means membership."""
        return [r for r in self.list(collection) if _matches(r, criteria)]

    def get(self, collection: str, entity_id: str) -> Record | None:
        filepath = self._path(collection, entity_id)
        if not filepath.exists():
            return None
        return self._read(filepath)

    def update(self, collection: str, entity_id: str, fields: dict[str, Any]) -> Record:
        """Field-level partial update. Returns the merged record."""
        return self.modify(collection, entity_id, lambda _current: fields)

    def modify(
        self,
        collection: str,
        entity_id: str,
        fn: Callable[[Record], dict[str, Any]],
    ) -> Record:
        """Read-modify-write of one record under the collection lock.

        fn gets the current record and returns the fields to merge. If fn
        raises, nothing is written. Returns the merged record.
        """
        with self._lock(collection):
            current = self.get(collection, entity_id)
            if current is None:
                raise EntityNotFound(f"{collection}/{entity_id}")
            merged = {**current, **fn(current), "id": entity_id}
            merged["updated_date"] = datetime.now(TZ).isoformat()
            self._write(collection, merged, f"update {collection} {entity_id}")
        return merged

    def create(self, collection: str, fields: dict[str, Any]) -> Record:
        """Keeps a caller-supplied id; otherwise assigns a fresh one."""
        now = datetime.now(TZ).isoformat()
        record = {
            **fields,
            "id": fields.get("id") or uuid4().hex[:8],
            "created_date": now,
            "updated_date": now,
        }
        with self._lock(collection):
            self._write(collection, record, f"add {collection} {record['id']}")
        return record

    def delete(self, collection: str, entity_id: str) -> bool:
        filepath = self._path(collection, entity_id)
        with self._lock(collection):
            if not filepath.exists():
                return False
            filepath.unlink()
        git_rm_commit(filepath, f"remove {collection} {entity_id}")
        return True


def open_store() -> EntityStore:
    """Store rooted at the configured data directory."""
    return EntityStore(ENTITIES_DIR)
