"""
Gatekeeper classification cache.

Keyed by (tenant_id, content sha256, prompt_hash). Stores the raw
classification only; routes are recomputed on every read. A prompt or schema
change produces a new prompt hash and so bypasses stale entries.
"""

import json
import os
import tempfile
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Any, Optional, Tuple

from docengine.models import GatekeeperClassification


CacheKey = Tuple[str, str, str]


@dataclass
class CachedClassification:
    """A cached gatekeeper classification and the run that produced it."""
    classification: GatekeeperClassification
    model: str
    prompt_version: str
    prompt_tokens: Optional[int] = None
    completion_tokens: Optional[int] = None
    created_at: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "classification": self.classification.to_dict(),
            "model": self.model,
            "prompt_version": self.prompt_version,
            "prompt_tokens": self.prompt_tokens,
            "completion_tokens": self.completion_tokens,
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CachedClassification":
        return cls(
            classification=GatekeeperClassification.from_dict(data["classification"]),
            model=data.get("model", "unknown"),
            prompt_version=data.get("prompt_version", ""),
            prompt_tokens=data.get("prompt_tokens"),
            completion_tokens=data.get("completion_tokens"),
            created_at=data.get("created_at"),
        )


class GatekeeperCache:
    """Cache interface."""

    def read(self, tenant_id: str, sha256: str, prompt_hash: str) -> Optional[CachedClassification]:
        raise NotImplementedError

    def write(self, tenant_id: str, sha256: str, prompt_hash: str, entry: CachedClassification) -> None:
        raise NotImplementedError


class InMemoryGatekeeperCache(GatekeeperCache):
    """Process-local cache."""

    def __init__(self):
        self._entries: Dict[CacheKey, CachedClassification] = {}
        self._lock = threading.Lock()

    def read(self, tenant_id: str, sha256: str, prompt_hash: str) -> Optional[CachedClassification]:
        with self._lock:
            return self._entries.get((tenant_id, sha256, prompt_hash))

    def write(self, tenant_id: str, sha256: str, prompt_hash: str, entry: CachedClassification) -> None:
        if entry.created_at is None:
            entry.created_at = datetime.now(timezone.utc).isoformat()
        with self._lock:
            self._entries[(tenant_id, sha256, prompt_hash)] = entry

    def __len__(self) -> int:
        return len(self._entries)


class JsonFileGatekeeperCache(GatekeeperCache):
    """Cache persisted to a single JSON file."""

    def __init__(self, path: str):
        self.path = Path(path)
        self._lock = threading.Lock()

    @staticmethod
    def _key(tenant_id: str, sha256: str, prompt_hash: str) -> str:
        return f"{tenant_id}:{sha256}:{prompt_hash}"

    def _load(self) -> Dict[str, Any]:
        if not self.path.exists():
            return {}
        with open(self.path, "r") as f:
            return json.load(f)

    def read(self, tenant_id: str, sha256: str, prompt_hash: str) -> Optional[CachedClassification]:
        with self._lock:
            data = self._load()
        entry = data.get(self._key(tenant_id, sha256, prompt_hash))
        return CachedClassification.from_dict(entry) if entry else None

    def write(self, tenant_id: str, sha256: str, prompt_hash: str, entry: CachedClassification) -> None:
        if entry.created_at is None:
            entry.created_at = datetime.now(timezone.utc).isoformat()
        with self._lock:
            data = self._load()
            data[self._key(tenant_id, sha256, prompt_hash)] = entry.to_dict()
            self.path.parent.mkdir(parents=True, exist_ok=True)
            # Written beside the target, then swapped in whole
            fd, tmp_path = tempfile.mkstemp(dir=str(self.path.parent), prefix=".gatekeeper_", suffix=".tmp")
            try:
                with os.fdopen(fd, "w") as f:
                    json.dump(data, f, indent=2, default=str)
                os.replace(tmp_path, self.path)
            except BaseException:
                os.unlink(tmp_path)
                raise
