# cache.py
from __future__ import annotations

import hashlib
import json
import os
import time
import uuid
from collections.abc import Mapping
from pathlib import Path
from typing import Any, Dict, Optional, Protocol, Tuple

from .errors import CacheCorruption, ValidationError
from .model import TaskSpec
from .values import ABSENT, File, Struct

# ---------------------------------------------------------------------
# Core idea
# ---------------------------------------------------------------------
# Call caching:
#   key = hash(
#       task name + tool version,
#       command template + container,
#       declared outputs,
#       canonical form of every bound input (Files as basename + digest),
#   )
#
# Cache entry:
#   the task's output binding as tagged JSON, one file per key.
#   Entries are only ever inserted (idempotent) or pruned.
#
# Example usage in the executor (high-level):
#   key, _ = fingerprinter.fingerprint(spec, bindings)
#   outputs = store.lookup(spec.name, key)
#   if outputs is None:
#       outputs = run(...)
#       store.record(spec.name, key, outputs)
# ---------------------------------------------------------------------


DEFAULT_CACHE_DIR = ".helixflow/cache"
FILE_HASHING_MODES = ("stat", "content")


def _sha256_bytes(data: bytes) -> str:
    h = hashlib.sha256()
    h.update(data)
    return h.hexdigest()


def _sha256_str(s: str) -> str:
    return _sha256_bytes(s.encode("utf-8"))


def _json_dumps_stable(obj) -> str:
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def _hash_file_contents(path: Path) -> str:
    h = hashlib.sha256()
    with path.open("rb") as f:
        while True:
            chunk = f.read(1024 * 1024)
            if not chunk:
                break
            h.update(chunk)
    return h.hexdigest()


# ---------------------------------------------------------------------
# Value serialization (tagged, deterministic)
# ---------------------------------------------------------------------

def encode_value(value: Any) -> Any:
    if value is ABSENT:
        return {"Absent": None}
    if isinstance(value, bool):
        return {"Boolean": value}
    if isinstance(value, int):
        return {"Int": value}
    if isinstance(value, float):
        return {"Float": value}
    if isinstance(value, str):
        return {"String": value}
    if isinstance(value, File):
        return {"File": value.path}
    if isinstance(value, tuple):
        return {"Array": [encode_value(v) for v in value]}
    if isinstance(value, Mapping):
        return {"Struct": {k: encode_value(v) for k, v in value.items()}}
    raise TypeError(f"cannot encode {value!r}")


def decode_value(obj: Any) -> Any:
    if not isinstance(obj, dict) or len(obj) != 1:
        raise ValueError(f"not a tagged value: {obj!r}")
    (tag, raw), = obj.items()
    if tag == "Absent":
        return ABSENT
    if tag == "Boolean" and isinstance(raw, bool):
        return raw
    if tag == "Int" and isinstance(raw, int) and not isinstance(raw, bool):
        return raw
    if tag == "Float" and isinstance(raw, (int, float)) and not isinstance(raw, bool):
        return float(raw)
    if tag in ("String", "File") and isinstance(raw, str):
        return raw if tag == "String" else File(raw)
    if tag == "Array" and isinstance(raw, list):
        return tuple(decode_value(v) for v in raw)
    if tag == "Struct" and isinstance(raw, dict):
        return Struct((k, decode_value(v)) for k, v in raw.items())
    raise ValueError(f"bad tagged value: {obj!r}")


def encode_outputs(outputs: Mapping[str, Any]) -> Dict[str, Any]:
    return {k: encode_value(v) for k, v in outputs.items()}


def decode_outputs(data: Any) -> Struct:
    if not isinstance(data, dict):
        raise ValueError("outputs must be an object")
    return Struct((k, decode_value(v)) for k, v in data.items())


# ---------------------------------------------------------------------
# Fingerprints
# ---------------------------------------------------------------------

class Fingerprinter:
    """
    Stable key for one task invocation.

    file_hashing:
      - "stat":    size + mtime + absolute path (cheap, File.fingerprint)
      - "content": sha256 of the bytes (survives copies/moves)
    """

    def __init__(self, file_hashing: str = "stat"):
        if file_hashing not in FILE_HASHING_MODES:
            raise ValidationError(
                f"file_hashing must be one of {FILE_HASHING_MODES}, got {file_hashing!r}"
            )
        self.file_hashing = file_hashing

    def file_digest(self, f: File) -> str:
        if self.file_hashing == "content":
            return _hash_file_contents(Path(f.path))
        return f.fingerprint

    def canonical(self, value: Any) -> Any:
        """Like encode_value, but Files become basename + digest."""
        if isinstance(value, File):
            return {"File": {"name": os.path.basename(value.path), "digest": self.file_digest(value)}}
        if isinstance(value, tuple):
            return {"Array": [self.canonical(v) for v in value]}
        if isinstance(value, Mapping):
            return {"Struct": {k: self.canonical(v) for k, v in value.items()}}
        return encode_value(value)

    def fingerprint(self, spec: TaskSpec, bindings: Mapping[str, Any]) -> Tuple[str, Dict]:
        payload = {
            "v": 2,  # bump this if you change hashing format
            "task": spec.name,
            "version": spec.version,
            "command": spec.command.source,
            "params": [[p.name, str(p.type), p.sep, p.true, p.false] for p in spec.inputs],
            "container": spec.resources.container,
            "outputs": [[o.name, str(o.type), *_rule_source(o)] for o in spec.outputs],
            "inputs": {k: self.canonical(v) for k, v in bindings.items()},
        }
        return _sha256_str(_json_dumps_stable(payload)), payload


def _rule_source(o) -> Tuple[str, str]:
    kind, template = o.rule
    return kind, template.source


# ---------------------------------------------------------------------
# Stores
# ---------------------------------------------------------------------

class OutputStore(Protocol):
    def lookup(self, task: str, key: str) -> Optional[Struct]: ...
    def record(self, task: str, key: str, outputs: Mapping[str, Any]) -> bool: ...
    def evict(self, task: str, key: str) -> None: ...
    def prune(self, task: str, keep: int = 3) -> int: ...


class CacheStore:
    """
    File-based cache store:
      root/
        <task_name>/
          <key>.json
    """

    def __init__(self, root: str | Path = DEFAULT_CACHE_DIR):
        self.root = Path(root).resolve()
        self.root.mkdir(parents=True, exist_ok=True)

    def __repr__(self) -> str:
        return f"CacheStore({str(self.root)!r})"

    def _task_dir(self, task: str) -> Path:
        d = self.root / task
        d.mkdir(parents=True, exist_ok=True)
        return d

    def entry_path(self, task: str, key: str) -> Path:
        return self._task_dir(task) / f"{key}.json"

    def lookup(self, task: str, key: str) -> Optional[Struct]:
        """
        Returns the recorded outputs, or None on a miss.
        Raises CacheCorruption if the entry exists but cannot be decoded.
        """
        p = self.entry_path(task, key)
        try:
            text = p.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        try:
            entry = json.loads(text)
            if not isinstance(entry, dict) or entry.get("key") != key:
                raise ValueError("key mismatch")
            return decode_outputs(entry["outputs"])
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            raise CacheCorruption(f"{p}: {e}") from None

    def record(self, task: str, key: str, outputs: Mapping[str, Any]) -> bool:
        """
        Insert an entry. Returns False if the key was already present.
        """
        p = self.entry_path(task, key)
        if p.exists():
            return False

        entry = {
            "key": key,
            "task": task,
            "outputs": encode_outputs(outputs),
            "created_at_unix": int(time.time()),
        }
        tmp = p.with_name(f".{key}.{uuid.uuid4().hex[:8]}.tmp")
        try:
            tmp.write_text(json.dumps(entry, sort_keys=True, indent=2, ensure_ascii=False), encoding="utf-8")
            if p.exists():
                return False
            tmp.replace(p)
        finally:
            if tmp.exists():
                tmp.unlink(missing_ok=True)
        return True

    def evict(self, task: str, key: str) -> None:
        self.entry_path(task, key).unlink(missing_ok=True)

    def prune(self, task: str, keep: int = 3) -> int:
        """
        Keep only the newest N entries for a task.
        Uses file mtime as "newest". Returns the number removed.
        """
        d = self._task_dir(task)
        entries = sorted(d.glob("*.json"), key=lambda p: p.stat().st_mtime, reverse=True)
        for p in entries[keep:]:
            p.unlink(missing_ok=True)
        return len(entries[keep:])


def open_store(location: str | Path = DEFAULT_CACHE_DIR) -> OutputStore:
    """A database URL ("sqlite:///cache.db") selects the SQL store, anything else a directory."""
    if "://" in str(location):
        from .store_sql import SqlCacheStore

        return SqlCacheStore(str(location))
    return CacheStore(location)
