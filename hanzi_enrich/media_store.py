"""Content-addressed media storage shared by every deck and card."""

import asyncio
import json
import os
import time
import uuid
from pathlib import Path
from typing import Dict, Optional, Tuple
from urllib.parse import quote

import structlog

from .config import CLAIM_TTL_S, MEDIA_BASE_URL, MEDIA_DIR
from .errors import StorageFailure
from .models import AssetType, MediaAsset

log = structlog.get_logger()

ASSET_FILENAMES = {
    AssetType.AUDIO: "audio.mp3",
    AssetType.IMAGE: "image.png",
}


def media_key(character: str, asset_type: AssetType) -> str:
    """Deterministic storage key; any two callers for the same character collide."""
    return f"media/hanzi/{quote(character, safe='')}/{ASSET_FILENAMES[asset_type]}"


def media_url(key: str, base_url: str = MEDIA_BASE_URL) -> str:
    return f"{base_url.rstrip('/')}/{key.removeprefix('media/')}"


class MediaStore:
    """exists/get/put/delete over storage keys, plus best-effort claim markers."""

    base_url = MEDIA_BASE_URL

    async def exists(self, key: str) -> bool:
        raise NotImplementedError

    async def get(self, key: str) -> Optional[MediaAsset]:
        raise NotImplementedError

    async def put(self, key: str, content: bytes, content_type: str,
                  metadata: Optional[Dict[str, str]] = None):
        raise NotImplementedError

    async def delete(self, key: str):
        raise NotImplementedError

    async def claim(self, key: str, ttl_s: float = CLAIM_TTL_S) -> bool:
        """Mark ``key`` as being generated. False if someone else holds a live claim."""
        raise NotImplementedError

    async def release(self, key: str):
        raise NotImplementedError

    def url_for(self, key: str) -> str:
        return media_url(key, self.base_url)


def _asset_type_for(key: str) -> AssetType:
    for asset_type, filename in ASSET_FILENAMES.items():
        if key.endswith(filename):
            return asset_type
    raise ValueError(f"Unknown asset key {key!r}")


class MemoryMediaStore(MediaStore):
    """In-process store. Useful for tests and single-run CLI sessions."""

    def __init__(self, base_url: str = MEDIA_BASE_URL):
        self.base_url = base_url
        self._objects: Dict[str, Tuple[bytes, str, Dict[str, str]]] = {}
        self._claims: Dict[str, float] = {}
        self.put_count = 0

    async def exists(self, key):
        return key in self._objects

    async def get(self, key):
        stored = self._objects.get(key)
        if stored is None:
            return None
        content, content_type, metadata = stored
        return MediaAsset(key=key, asset_type=_asset_type_for(key), content=content,
                          content_type=content_type, metadata=dict(metadata))

    async def put(self, key, content, content_type, metadata=None):
        self._objects[key] = (bytes(content), content_type, dict(metadata or {}))
        self.put_count += 1

    async def delete(self, key):
        self._objects.pop(key, None)

    async def claim(self, key, ttl_s=CLAIM_TTL_S):
        now = time.monotonic()
        expires = self._claims.get(key)
        if expires is not None and expires > now:
            return False
        self._claims[key] = now + ttl_s
        return True

    async def release(self, key):
        self._claims.pop(key, None)

    def keys(self):
        return sorted(self._objects)


class FileMediaStore(MediaStore):
    """Filesystem store: content at ``root/key`` with a ``.meta.json`` sidecar.

    Writes go to a temp file first and are renamed into place, so a reader
    never sees a half-written asset and concurrent writers resolve last-writer-wins.
    """

    def __init__(self, root: Path = MEDIA_DIR, base_url: str = MEDIA_BASE_URL):
        self.root = Path(root)
        self.base_url = base_url

    def _path(self, key: str) -> Path:
        path = (self.root / key).resolve()
        if self.root.resolve() not in path.parents:
            raise ValueError(f"Key escapes media root: {key!r}")
        return path

    @staticmethod
    def _meta_path(path: Path) -> Path:
        return path.with_name(path.name + ".meta.json")

    @staticmethod
    def _claim_path(path: Path) -> Path:
        return path.with_name(path.name + ".claim")

    async def _run(self, func, *args):
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(None, func, *args)
        except OSError as e:
            raise StorageFailure(f"Media store I/O failed: {e}") from e

    async def exists(self, key):
        return await self._run(self._path(key).is_file)

    async def get(self, key):
        path = self._path(key)

        def _read():
            if not path.is_file():
                return None
            meta_path = self._meta_path(path)
            meta = json.loads(meta_path.read_text(encoding="utf-8")) if meta_path.is_file() else {}
            return path.read_bytes(), meta

        stored = await self._run(_read)
        if stored is None:
            return None
        content, meta = stored
        return MediaAsset(
            key=key, asset_type=_asset_type_for(key), content=content,
            content_type=meta.get("content_type", "application/octet-stream"),
            metadata=meta.get("metadata", {}),
        )

    async def put(self, key, content, content_type, metadata=None):
        path = self._path(key)

        def _write():
            path.parent.mkdir(parents=True, exist_ok=True)
            suffix = f".{uuid.uuid4().hex}.tmp"
            tmp_content = path.with_name(path.name + suffix)
            tmp_meta = path.with_name(path.name + ".meta" + suffix)
            tmp_content.write_bytes(content)
            tmp_meta.write_text(
                json.dumps({"content_type": content_type, "metadata": metadata or {}}),
                encoding="utf-8",
            )
            os.replace(tmp_content, path)
            os.replace(tmp_meta, self._meta_path(path))

        await self._run(_write)
        log.info("Media stored", key=key, size=len(content), content_type=content_type)

    async def delete(self, key):
        path = self._path(key)

        def _delete():
            path.unlink(missing_ok=True)
            self._meta_path(path).unlink(missing_ok=True)

        await self._run(_delete)
        log.info("Media deleted", key=key)

    async def claim(self, key, ttl_s=CLAIM_TTL_S):
        claim_path = self._claim_path(self._path(key))

        def _claim():
            claim_path.parent.mkdir(parents=True, exist_ok=True)
            if claim_path.exists():
                try:
                    expires = float(claim_path.read_text(encoding="utf-8"))
                except ValueError:
                    expires = 0.0
                if expires > time.time():
                    return False
                claim_path.unlink(missing_ok=True)
            try:
                with open(claim_path, "x", encoding="utf-8") as f:
                    f.write(str(time.time() + ttl_s))
            except FileExistsError:
                return False
            return True

        return await self._run(_claim)

    async def release(self, key):
        claim_path = self._claim_path(self._path(key))
        await self._run(lambda: claim_path.unlink(missing_ok=True))
