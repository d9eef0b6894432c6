"""
File-style storage for the score datasets.

Paths are logical (`data/2024-06.json`, `daily-summary/2024-06-01.json`, ...).
Every stored file carries a revision token; a write that names a stale token is
rejected with `ConflictError` so callers can re-read, merge and try again.
"""

from __future__ import annotations

import hashlib
import json
import logging
import os
import re
import tempfile
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional, Protocol

from pymongo.errors import DuplicateKeyError

from utils.db_utils import get_db

FILES_COLLECTION = "Score_Files"

logger = logging.getLogger("score-store")


class ConflictError(Exception):
    """The file changed (or appeared) since it was read."""


@dataclass
class StoredFile:
    content: Any = field(default_factory=dict)
    revision: Optional[str] = None
    updated_at: Optional[datetime] = None

    @property
    def exists(self) -> bool:
        return self.revision is not None


class FileStore(Protocol):
    def get_file(self, path: str) -> StoredFile: ...

    def save_file(self, path: str, content: Any, revision: Optional[str] = None) -> str: ...

    def put_text(self, path: str, text: str) -> None: ...

    def list_files(self, prefix: str) -> list[str]: ...


def _dump(content: Any) -> str:
    return json.dumps(content, ensure_ascii=False, indent=2)


class LocalFileStore:
    """Files under a root directory; the revision is the SHA-1 of the file bytes."""

    def __init__(self, root: str | os.PathLike):
        self.root = Path(root).resolve()

    def _resolve(self, path: str) -> Path:
        target = (self.root / path).resolve()
        if target != self.root and self.root not in target.parents:
            raise ValueError(f"Path escapes store root: {path}")
        return target

    @staticmethod
    def _revision(raw: bytes) -> str:
        return hashlib.sha1(raw).hexdigest()

    def get_file(self, path: str) -> StoredFile:
        target = self._resolve(path)
        try:
            raw = target.read_bytes()
        except FileNotFoundError:
            return StoredFile()
        mtime = datetime.fromtimestamp(target.stat().st_mtime, tz=timezone.utc)
        return StoredFile(json.loads(raw.decode("utf-8")), self._revision(raw), mtime)

    def save_file(self, path: str, content: Any, revision: Optional[str] = None) -> str:
        target = self._resolve(path)
        current = self._revision(target.read_bytes()) if target.exists() else None
        if revision is None and current is not None:
            raise ConflictError(f"{path} already exists")
        if revision is not None and revision != current:
            raise ConflictError(f"{path} changed since revision {revision[:8]}")
        raw = _dump(content).encode("utf-8")
        self._write(target, raw)
        return self._revision(raw)

    def put_text(self, path: str, text: str) -> None:
        self._write(self._resolve(path), text.encode("utf-8"))

    def list_files(self, prefix: str) -> list[str]:
        folder = self._resolve(prefix)
        if not folder.is_dir():
            return []
        return sorted(
            p.relative_to(self.root).as_posix() for p in folder.iterdir() if p.is_file()
        )

    @staticmethod
    def _write(target: Path, raw: bytes) -> None:
        target.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=target.parent, prefix=f".{target.name}.")
        try:
            with os.fdopen(fd, "wb") as fh:
                fh.write(raw)
            os.replace(tmp, target)
        except BaseException:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise


class MongoFileStore:
    """
    One document per path: {_id: path, body, revision, updatedAt}.
    Conditional writes filter on the previous revision, so a lost race matches nothing.
    """

    def __init__(self, collection):
        self.collection = collection

    def get_file(self, path: str) -> StoredFile:
        doc = self.collection.find_one({"_id": path})
        if not doc:
            return StoredFile()
        body = doc.get("body") or "{}"
        updated_at = doc.get("updatedAt")
        # pymongo hands back naive UTC datetimes
        if isinstance(updated_at, datetime) and updated_at.tzinfo is None:
            updated_at = updated_at.replace(tzinfo=timezone.utc)
        return StoredFile(json.loads(body), doc.get("revision"), updated_at)

    def save_file(self, path: str, content: Any, revision: Optional[str] = None) -> str:
        new_rev = uuid.uuid4().hex
        fields = {
            "body": _dump(content),
            "revision": new_rev,
            "updatedAt": datetime.now(timezone.utc),
        }
        if revision is None:
            try:
                self.collection.insert_one({"_id": path, **fields})
            except DuplicateKeyError:
                raise ConflictError(f"{path} already exists") from None
            return new_rev

        res = self.collection.update_one({"_id": path, "revision": revision}, {"$set": fields})
        if res.matched_count == 0:
            raise ConflictError(f"{path} changed since revision {revision[:8]}")
        return new_rev

    def put_text(self, path: str, text: str) -> None:
        self.collection.update_one(
            {"_id": path},
            {
                "$set": {
                    "body": text,
                    "revision": uuid.uuid4().hex,
                    "updatedAt": datetime.now(timezone.utc),
                }
            },
            upsert=True,
        )

    def list_files(self, prefix: str) -> list[str]:
        prefix = prefix.rstrip("/") + "/"
        ids = [
            d["_id"]
            for d in self.collection.find({"_id": {"$regex": f"^{re.escape(prefix)}"}}, {"_id": 1})
        ]
        # direct children only, like a directory listing
        return sorted(i for i in ids if "/" not in i[len(prefix):])


def get_store(config) -> FileStore:
    if config.store_backend == "local":
        logger.info("[Store] Using local files under %s", config.data_root)
        return LocalFileStore(config.data_root)
    db = get_db(config)
    logger.info("[Store] Using MongoDB database '%s' (collection %s)", config.db_name, FILES_COLLECTION)
    return MongoFileStore(db[FILES_COLLECTION])
