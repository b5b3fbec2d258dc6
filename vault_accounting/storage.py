"""Entity persistence: an in-memory repository and a JSON file store."""

import dataclasses
import hashlib
import json
import os
import shutil
import sys
import types
import typing
from decimal import Decimal
from enum import Enum
from pathlib import Path
from typing import Any, Protocol

from vault_accounting.constants import STORE_DIR_NAME, STORE_VERSION
from vault_accounting.models import (
    Allocator,
    AllocatorSnapshot,
    Distribution,
    DistributorReward,
    ExitRequest,
    ExitRequestSnapshot,
    LeveragePositionSnapshot,
    LeverageStrategyPosition,
    Network,
    OsToken,
    Vault,
    VaultSnapshot,
)

ENTITY_TYPES: dict[str, type] = {
    cls.__name__: cls
    for cls in (
        Network,
        OsToken,
        Vault,
        Allocator,
        ExitRequest,
        LeverageStrategyPosition,
        Distribution,
        DistributorReward,
        VaultSnapshot,
        AllocatorSnapshot,
        ExitRequestSnapshot,
        LeveragePositionSnapshot,
    )
}


class Repository(Protocol):
    """Store of accounting entities keyed by (kind, id)."""

    def load(self, kind: str, entity_id: str) -> Any | None: ...

    def save(self, entity: Any) -> None: ...

    def save_all(self, entities: typing.Iterable[Any]) -> None: ...

    def remove(self, kind: str, entity_id: str) -> None: ...

    def list_by_parent(self, kind: str, parent_id: str) -> list[Any]: ...

    def list_all(self, kind: str) -> list[Any]: ...

    def commit(self) -> None: ...


def kind_of(entity: Any) -> str:
    kind = type(entity).__name__
    if kind not in ENTITY_TYPES:
        raise TypeError(f"not a stored entity: {kind}")
    return kind


class InMemoryRepository:
    """Repository keeping entities in insertion order per kind."""

    def __init__(self) -> None:
        self._entities: dict[str, dict[str, Any]] = {kind: {} for kind in ENTITY_TYPES}

    def load(self, kind: str, entity_id: str) -> Any | None:
        return self._entities[kind].get(entity_id)

    def save(self, entity: Any) -> None:
        self._entities[kind_of(entity)][entity.id] = entity

    def save_all(self, entities: typing.Iterable[Any]) -> None:
        for entity in entities:
            self.save(entity)

    def remove(self, kind: str, entity_id: str) -> None:
        self._entities[kind].pop(entity_id, None)

    def list_by_parent(self, kind: str, parent_id: str) -> list[Any]:
        return [e for e in self._entities[kind].values() if e.parent_id == parent_id]

    def list_all(self, kind: str) -> list[Any]:
        return list(self._entities[kind].values())

    def commit(self) -> None:
        """Nothing to flush for memory-only storage."""


def _coerce(value: Any, hint: Any) -> Any:
    """Convert a JSON value back to the python type declared by hint."""
    if value is None:
        return None
    origin = typing.get_origin(hint)
    if origin in (typing.Union, types.UnionType):
        args = [a for a in typing.get_args(hint) if a is not type(None)]
        return _coerce(value, args[0]) if len(args) == 1 else value
    if origin is tuple:
        item_hint = typing.get_args(hint)[0]
        return tuple(_coerce(v, item_hint) for v in value)
    if origin is frozenset:
        return frozenset(value)
    if hint is Decimal:
        return Decimal(value)
    if isinstance(hint, type) and issubclass(hint, Enum):
        return hint(value)
    return value


def _to_json(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (tuple, list, frozenset)):
        return [_to_json(v) for v in value]
    return value


def entity_to_dict(entity: Any) -> dict[str, Any]:
    return {f.name: _to_json(getattr(entity, f.name)) for f in dataclasses.fields(entity)}


def entity_from_dict(kind: str, data: dict[str, Any]) -> Any:
    cls = ENTITY_TYPES[kind]
    hints = typing.get_type_hints(cls)
    values = {f.name: _coerce(data[f.name], hints[f.name]) for f in dataclasses.fields(cls) if f.name in data}
    return cls(**values)


def get_store_dir() -> Path:
    """
    Get the store directory path.

    Uses VAULT_ACCOUNTING_STORE if set, otherwise XDG_CACHE_HOME if available, otherwise ~/.cache.
    """
    explicit = os.getenv("VAULT_ACCOUNTING_STORE")
    if explicit:
        store_dir = Path(explicit)
    else:
        cache_home = os.getenv("XDG_CACHE_HOME")
        base = Path(cache_home) if cache_home else Path.home() / ".cache"
        store_dir = base / STORE_DIR_NAME
    store_dir.mkdir(parents=True, exist_ok=True)
    return store_dir


def clear_store(store_dir: Path | None = None) -> None:
    """Remove all stored entities and cached content."""
    store_dir = store_dir or get_store_dir()
    if store_dir.exists():
        shutil.rmtree(store_dir)
        print("✅ Store cleared successfully.", file=sys.stderr)
    else:
        print("ℹ️  Store directory does not exist (nothing to clear).", file=sys.stderr)


class JsonFileRepository(InMemoryRepository):
    """
    Repository backed by one JSON file per entity kind.

    Entities are loaded eagerly on construction; changes are written on commit, so a
    tick that fails before committing leaves the files untouched.
    """

    def __init__(self, store_dir: Path | None = None) -> None:
        super().__init__()
        self.store_dir = store_dir or get_store_dir()
        self.store_dir.mkdir(parents=True, exist_ok=True)
        self._dirty: set[str] = set()
        for kind in ENTITY_TYPES:
            self._load_kind(kind)

    def _kind_file(self, kind: str) -> Path:
        return self.store_dir / f"{kind}.v{STORE_VERSION}.json"

    def _load_kind(self, kind: str) -> None:
        path = self._kind_file(kind)
        if not path.exists():
            return
        try:
            with path.open("r", encoding="utf-8") as f:
                raw = json.load(f)
        except (OSError, ValueError) as ex:
            print(f"⚠️  Ignoring unreadable store file {path}: {ex}", file=sys.stderr)
            return
        for entity_id, data in raw.items():
            self._entities[kind][entity_id] = entity_from_dict(kind, data)

    def save(self, entity: Any) -> None:
        super().save(entity)
        self._dirty.add(kind_of(entity))

    def remove(self, kind: str, entity_id: str) -> None:
        super().remove(kind, entity_id)
        self._dirty.add(kind)

    def commit(self) -> None:
        for kind in sorted(self._dirty):
            path = self._kind_file(kind)
            tmp_path = path.with_suffix(".tmp")
            data = {entity_id: entity_to_dict(e) for entity_id, e in self._entities[kind].items()}
            with tmp_path.open("w", encoding="utf-8") as f:
                json.dump(data, f, ensure_ascii=False, indent=None, separators=(",", ":"))
            os.replace(tmp_path, path)
        self._dirty.clear()


def cache_key(prefix: str, *parts: Any) -> str:
    """Generate a deterministic cache key from prefix and parts."""
    key_str = f"{prefix}:{STORE_VERSION}:" + ":".join(str(p) for p in parts)
    return hashlib.sha256(key_str.encode()).hexdigest()


def get_cached(key: str) -> Any | None:
    """Get cached content by key. Returns None if not found or invalid."""
    cache_file = get_store_dir() / "cache" / f"{key}.json"
    if not cache_file.exists():
        return None
    try:
        with cache_file.open("r", encoding="utf-8") as f:
            return json.load(f)
    except Exception:  # pylint: disable=broad-exception-caught
        # If cache file is corrupted, ignore it
        return None


def set_cached(key: str, data: Any) -> None:
    """Store content in the cache."""
    cache_dir = get_store_dir() / "cache"
    try:
        cache_dir.mkdir(parents=True, exist_ok=True)
        with (cache_dir / f"{key}.json").open("w", encoding="utf-8") as f:
            json.dump(data, f, ensure_ascii=False, indent=None, separators=(",", ":"))
    except Exception:  # pylint: disable=broad-exception-caught
        # If caching fails, continue without cache
        pass
