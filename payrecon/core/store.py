"""Hierarchical keyed store used as the persistence collaborator.

The reconciliation core only needs five primitives: read a path, write a
path, delete a path, apply many path writes atomically, and mint a fresh
key under a path.  ``SqlKeyedStore`` provides them on top of a SQLAlchemy
session, storing one JSON document per row (see ``StoreNode``).

Path semantics:
  - ``get("payments/p1")`` returns the document stored at that path.
  - ``get("payments/p1/status")`` navigates into the stored document.
  - ``get("payments")`` assembles every document below ``payments/``.
  - Writing ``None`` deletes; ``None`` values inside dicts are dropped.
"""

from __future__ import annotations

import copy
import re
import uuid
from abc import ABC, abstractmethod
from typing import Any, Mapping, Optional

from sqlalchemy import or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from payrecon.core.errors import StoreError
from payrecon.core.logging import get_logger
from payrecon.models.store_node import StoreNode

logger = get_logger(__name__)

_FORBIDDEN_KEY_CHARS = re.compile(r"[.#$\[\]/]")


def sanitize_key(key: str) -> str:
    """Make ``key`` safe to use as a single path segment."""
    return _FORBIDDEN_KEY_CHARS.sub("_", str(key))


def join_path(*segments: str) -> str:
    return "/".join(str(s).strip("/") for s in segments if str(s).strip("/"))


def _split(path: str) -> list[str]:
    return [seg for seg in path.strip("/").split("/") if seg]


def _prune(value: Any) -> Any:
    """Drop ``None`` entries recursively (absent and null are the same)."""
    if isinstance(value, dict):
        return {k: _prune(v) for k, v in value.items() if v is not None}
    if isinstance(value, list):
        return [_prune(v) for v in value]
    return value


class KeyedStore(ABC):
    """Interface the reconciliation services depend on."""

    @abstractmethod
    def get(self, path: str) -> Any:
        """Return the value at ``path`` or ``None`` when nothing is stored."""

    @abstractmethod
    def update(self, changes: Mapping[str, Any]) -> None:
        """Apply every ``path -> value`` write atomically (``None`` deletes)."""

    @abstractmethod
    def push_key(self, path: str) -> str:
        """Return a new unique key for a child of ``path``."""

    def set(self, path: str, value: Any) -> None:
        self.update({path: value})

    def delete(self, path: str) -> None:
        self.update({path: None})

    def children(self, path: str) -> dict[str, Any]:
        """Return the children of a collection path as a dict (never None)."""
        value = self.get(path)
        return value if isinstance(value, dict) else {}


class SqlKeyedStore(KeyedStore):
    """Keyed store backed by the ``store_nodes`` table."""

    def __init__(self, db: Session) -> None:
        self.db = db

    # ── Reads ────────────────────────────────────────────────────────

    def get(self, path: str) -> Any:
        segments = _split(path)
        try:
            return self._read(segments)
        except SQLAlchemyError as exc:
            logger.error("Store read failed: path=%s error=%s", path, exc)
            raise StoreError(f"Read failed for {path!r}", {"path": path}) from exc

    def _read(self, segments: list[str]) -> Any:
        ancestor = self._find_document(segments)
        if ancestor is not None:
            node, rest = ancestor
            value: Any = node.value
            for seg in rest:
                if not isinstance(value, dict) or seg not in value:
                    return None
                value = value[seg]
            return copy.deepcopy(value)

        prefix = "/".join(segments)
        query = select(StoreNode)
        if prefix:
            query = query.where(StoreNode.path.startswith(prefix + "/", autoescape=True))
        rows = self.db.execute(query).scalars().all()
        if not rows:
            return None

        assembled: dict[str, Any] = {}
        depth = len(segments)
        for row in rows:
            rel = _split(row.path)[depth:]
            cursor = assembled
            for seg in rel[:-1]:
                cursor = cursor.setdefault(seg, {})
            cursor[rel[-1]] = copy.deepcopy(row.value)
        return assembled

    def _find_document(self, segments: list[str]) -> Optional[tuple[StoreNode, list[str]]]:
        """Return the deepest stored row that is ``segments`` or one of its ancestors."""
        if not segments:
            return None
        candidates = ["/".join(segments[:i]) for i in range(1, len(segments) + 1)]
        rows = (
            self.db.execute(select(StoreNode).where(StoreNode.path.in_(candidates)))
            .scalars()
            .all()
        )
        if not rows:
            return None
        deepest = max(rows, key=lambda r: len(_split(r.path)))
        return deepest, segments[len(_split(deepest.path)):]

    # ── Writes ───────────────────────────────────────────────────────

    def update(self, changes: Mapping[str, Any]) -> None:
        if not changes:
            return
        try:
            for path, value in changes.items():
                self._write(_split(path), _prune(value))
                self.db.flush()
            self.db.commit()
        except SQLAlchemyError as exc:
            self.db.rollback()
            logger.error("Store multi-write rolled back: paths=%d error=%s", len(changes), exc)
            raise StoreError(
                "Atomic write failed; nothing was applied",
                {"paths": sorted(changes)},
            ) from exc
        except Exception:
            self.db.rollback()
            raise

    def _write(self, segments: list[str], value: Any) -> None:
        if not segments:
            raise ValueError("Refusing to write the store root")

        ancestor = self._find_document(segments)
        if ancestor is not None and ancestor[1]:
            node, rest = ancestor
            doc = copy.deepcopy(node.value)
            if not isinstance(doc, dict):
                doc = {}
            cursor = doc
            for seg in rest[:-1]:
                child = cursor.get(seg)
                if not isinstance(child, dict):
                    if value is None:
                        return
                    child = {}
                    cursor[seg] = child
                cursor = child
            if value is None:
                cursor.pop(rest[-1], None)
            else:
                cursor[rest[-1]] = value
            node.value = doc
            return

        path = "/".join(segments)
        rows = (
            self.db.execute(
                select(StoreNode).where(
                    or_(
                        StoreNode.path == path,
                        StoreNode.path.startswith(path + "/", autoescape=True),
                    )
                )
            )
            .scalars()
            .all()
        )
        existing = None
        for row in rows:
            if row.path == path and value is not None:
                existing = row
            else:
                self.db.delete(row)
        self.db.flush()

        if value is None:
            return
        if existing is not None:
            existing.value = value
        else:
            self.db.add(StoreNode(path=path, value=value))

    def push_key(self, path: str) -> str:
        return uuid.uuid4().hex
