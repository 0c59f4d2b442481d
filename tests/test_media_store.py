"""Tests for deterministic media keys and both store backends."""

import asyncio
import os
from pathlib import Path

import pytest

from hanzi_enrich.media_store import FileMediaStore, MemoryMediaStore, media_key, media_url
from hanzi_enrich.models import AssetType
from tests.conftest import MP3_BYTES, PNG_BYTES


def test_media_key_is_deterministic():
    assert media_key("累", AssetType.AUDIO) == media_key("累", AssetType.AUDIO)
    assert media_key("累", AssetType.AUDIO) == "media/hanzi/%E7%B4%AF/audio.mp3"
    assert media_key("累", AssetType.IMAGE).endswith("/image.png")
    assert media_key("累", AssetType.IMAGE) != media_key("好", AssetType.IMAGE)


def test_media_url():
    assert media_url("media/hanzi/x/audio.mp3", "/api/media/") == "/api/media/hanzi/x/audio.mp3"


@pytest.fixture(params=["memory", "file"])
def store(request, tmp_path):
    if request.param == "memory":
        return MemoryMediaStore()
    return FileMediaStore(tmp_path / "media")


def test_put_get_delete(store):
    key = media_key("累", AssetType.IMAGE)

    async def run():
        assert not await store.exists(key)
        await store.put(key, PNG_BYTES, "image/png", {"validated": "true"})
        assert await store.exists(key)
        asset = await store.get(key)
        await store.delete(key)
        return asset, await store.exists(key), await store.get(key)

    asset, exists_after, missing = asyncio.run(run())

    assert asset.content == PNG_BYTES
    assert asset.asset_type == AssetType.IMAGE
    assert asset.content_type == "image/png"
    assert asset.metadata == {"validated": "true"}
    assert not exists_after
    assert missing is None


def test_put_overwrites(store):
    key = media_key("好", AssetType.AUDIO)

    async def run():
        await store.put(key, b"old", "audio/mpeg")
        await store.put(key, MP3_BYTES, "audio/mpeg")
        return await store.get(key)

    assert asyncio.run(run()).content == MP3_BYTES


def test_claims_are_exclusive_until_released(store):
    key = media_key("累", AssetType.AUDIO)

    async def run():
        first = await store.claim(key)
        second = await store.claim(key)
        await store.release(key)
        third = await store.claim(key)
        return first, second, third

    assert asyncio.run(run()) == (True, False, True)


def test_expired_claim_can_be_taken(store):
    key = media_key("累", AssetType.AUDIO)

    async def run():
        await store.claim(key, ttl_s=-1)
        return await store.claim(key)

    assert asyncio.run(run()) is True


def test_file_store_rejects_escaping_keys(tmp_path):
    store = FileMediaStore(tmp_path / "media")

    with pytest.raises(ValueError):
        asyncio.run(store.exists("../outside.png"))


def test_file_store_leaves_no_temp_files(tmp_path):
    store = FileMediaStore(tmp_path / "media")
    key = media_key("累", AssetType.IMAGE)

    asyncio.run(store.put(key, PNG_BYTES, "image/png"))

    names = sorted(p.name for p in (tmp_path / "media" / "media" / "hanzi" / "%E7%B4%AF").iterdir())
    assert names == ["image.png", "image.png.meta.json"]


def test_file_store_replaces_content_before_metadata(tmp_path, monkeypatch):
    store = FileMediaStore(tmp_path / "media")
    key = media_key("累", AssetType.IMAGE)
    replaced = []
    real_replace = os.replace

    def recording_replace(src, dst):
        replaced.append(Path(dst).name)
        real_replace(src, dst)

    monkeypatch.setattr(os, "replace", recording_replace)
    asyncio.run(store.put(key, PNG_BYTES, "image/png", {"attempts": "1"}))

    assert replaced == ["image.png", "image.png.meta.json"]
    assert asyncio.run(store.get(key)).metadata == {"attempts": "1"}
