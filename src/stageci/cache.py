# cache.py
from __future__ import annotations

import hashlib
import itertools
import json
import logging
import os
import shutil
import threading
import time
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional

from .errors import CacheUnavailable

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------
# Core idea
# ---------------------------------------------------------------------
# Incremental build cache, one slot per key:
#   cache_key = hash(workspace identity, ref name, job name)
#
# Layout:
#   root/
#     <digest>/
#       key.json              human readable key
#       CURRENT               name of the live version
#       versions/<version>/   immutable snapshot of a job's cache dir
#
# Writers build a new version next to the live one and swap CURRENT with
# os.replace, so a concurrent reader sees either the old or the new
# snapshot, never a half-written one. Last writer wins.
# ---------------------------------------------------------------------

DEFAULT_CACHE_DIR = ".stageci/cache"


def _sha256_str(s: str) -> str:
    return hashlib.sha256(s.encode("utf-8")).hexdigest()


def _json_dumps_stable(obj) -> str:
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


@dataclass(frozen=True)
class CacheKey:
    workspace: str
    ref: str
    job: str

    @property
    def digest(self) -> str:
        payload = {"v": 1, "workspace": self.workspace, "ref": self.ref, "job": self.job}
        return _sha256_str(_json_dumps_stable(payload))

    def as_dict(self) -> Dict[str, str]:
        return {"workspace": self.workspace, "ref": self.ref, "job": self.job}


@dataclass(frozen=True)
class CacheHit:
    hit: bool
    key: CacheKey
    reason: str  # human readable
    version: Optional[str] = None


class CacheStore:
    """File-based, versioned cache store keyed by CacheKey."""

    def __init__(self, root: str | Path = DEFAULT_CACHE_DIR, keep: int = 3):
        self.root = Path(root).resolve()
        self.keep = keep
        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()
        self._seq = itertools.count()

    def _lock(self, key: CacheKey) -> threading.Lock:
        with self._locks_guard:
            return self._locks.setdefault(key.digest, threading.Lock())

    def _slot(self, key: CacheKey) -> Path:
        return self.root / key.digest

    def current_version(self, key: CacheKey) -> Optional[str]:
        pointer = self._slot(key) / "CURRENT"
        try:
            version = pointer.read_text(encoding="utf-8").strip()
        except FileNotFoundError:
            return None
        except OSError as e:
            raise CacheUnavailable(f"cannot read cache pointer: {e}", context={"key": key.as_dict()}) from e
        if not version or not (self._slot(key) / "versions" / version).is_dir():
            return None
        return version

    def mount(self, key: CacheKey, dest: str | Path) -> CacheHit:
        """
        Copy the live snapshot for `key` into `dest` (a private directory
        for one job attempt). A miss leaves `dest` empty.
        """
        dest = Path(dest)
        try:
            if dest.exists():
                shutil.rmtree(dest)
            with self._lock(key):
                version = self.current_version(key)
                if version is None:
                    dest.mkdir(parents=True, exist_ok=True)
                    return CacheHit(hit=False, key=key, reason="cache miss")
                shutil.copytree(self._slot(key) / "versions" / version, dest)
        except CacheUnavailable:
            raise
        except OSError as e:
            raise CacheUnavailable(f"cache mount failed: {e}", context={"key": key.as_dict()}) from e
        return CacheHit(hit=True, key=key, reason=f"cache hit: restored {version[:12]}", version=version)

    def persist(self, key: CacheKey, src: str | Path) -> str:
        """
        Snapshot `src` as the new live version for `key`. Returns the version.
        """
        src = Path(src)
        slot = self._slot(key)
        versions = slot / "versions"
        # names sort by creation time
        version = f"{time.time_ns():020d}-{next(self._seq):06d}-{uuid.uuid4().hex[:6]}"
        tmp = versions / f".tmp-{version}"
        try:
            versions.mkdir(parents=True, exist_ok=True)
            if src.is_dir():
                shutil.copytree(src, tmp)
            else:
                tmp.mkdir()

            # pruning must never see a published version that is not yet live
            with self._lock(key):
                tmp.rename(versions / version)
                (slot / "key.json").write_text(
                    json.dumps(key.as_dict(), sort_keys=True, indent=2), encoding="utf-8"
                )
                pointer_tmp = slot / f"CURRENT.{version}.tmp"
                pointer_tmp.write_text(version, encoding="utf-8")
                os.replace(pointer_tmp, slot / "CURRENT")
                self._prune_locked(key)
        except OSError as e:
            if tmp.exists():
                shutil.rmtree(tmp, ignore_errors=True)
            raise CacheUnavailable(f"cache persist failed: {e}", context={"key": key.as_dict()}) from e
        return version

    def prune(self, key: CacheKey, keep: Optional[int] = None) -> None:
        """Keep only the newest N versions (the live one is always kept)."""
        with self._lock(key):
            self._prune_locked(key, keep)

    def _prune_locked(self, key: CacheKey, keep: Optional[int] = None) -> None:
        keep = self.keep if keep is None else keep
        versions = self._slot(key) / "versions"
        if not versions.is_dir():
            return
        live = self.current_version(key)
        snaps = sorted((p for p in versions.iterdir() if p.is_dir() and not p.name.startswith(".")), reverse=True)
        for p in snaps[keep:]:
            if p.name != live:
                shutil.rmtree(p, ignore_errors=True)

    def clear(self, key: CacheKey) -> None:
        with self._lock(key):
            shutil.rmtree(self._slot(key), ignore_errors=True)
