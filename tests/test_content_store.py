"""Tests for the id-partitioned filesystem content store."""

import logging
import os

import pytest

from services import content_store as content_store_module
from services.content_store import ContentStoreService
from services.file_hashing import sha256_hex
from tests.conftest import PNG_BYTES
from utils.errors import AssetNotFoundError, PathTraversalError


class TestSanitizeName:
    @pytest.mark.parametrize(
        "original, expected",
        [
            ("logo.png", "logo.png"),
            ("my logo (1).png", "my_logo__1_.png"),
            ("img/nested/logo.png", "logo.png"),
            ("..\\..\\evil.html", "evil.html"),
            ("", "file"),
            ("..", "file"),
            ("ünïcödé.gif", "_n_c_d_.gif"),
        ],
    )
    def test_sanitize(self, original, expected):
        assert ContentStoreService.sanitize_name(original) == expected

    def test_length_is_capped(self):
        assert len(ContentStoreService.sanitize_name("a" * 1000)) == 255


class TestSave:
    @pytest.mark.asyncio
    async def test_save_writes_under_fresh_id(self, store, store_root):
        asset = await store.save(PNG_BYTES, "My Logo.png")

        assert ContentStoreService.is_valid_id(asset.id)
        assert asset.sanitized_name == "My_Logo.png"
        assert asset.size_bytes == len(PNG_BYTES)
        assert asset.detected_mime == "image/png"
        assert asset.content_hash == sha256_hex(PNG_BYTES)
        assert (store_root / asset.id / "My_Logo.png").read_bytes() == PNG_BYTES

    @pytest.mark.asyncio
    async def test_ids_are_never_reused(self, store):
        first = await store.save(b"a", "same.txt")
        second = await store.save(b"a", "same.txt")
        assert first.id != second.id

    @pytest.mark.asyncio
    async def test_read_round_trip(self, store):
        asset = await store.save(b"payload", "x.bin")
        assert await store.read(asset.id, asset.sanitized_name) == b"payload"

    @pytest.mark.asyncio
    async def test_read_missing(self, store):
        asset = await store.save(b"payload", "x.bin")
        with pytest.raises(AssetNotFoundError):
            await store.read(asset.id, "other.bin")

    def test_public_url(self, store):
        assert store.public_url("abc", "x.png") == "/api/files/abc/x.png"


class TestContainment:
    def test_dir_rejects_non_uuid_ids(self, store):
        for bad in ["..", "../etc", "abc", "", "/tmp"]:
            with pytest.raises(PathTraversalError):
                store.dir(bad)

    def test_path_does_not_touch_disk(self, store, store_root):
        asset_id = "2f1c7a52-33a5-4c6e-9d0e-5b8a4f3c2e10"
        assert store.path(asset_id, "a b.png") == store_root / asset_id / "a_b.png"
        assert not (store_root / asset_id).exists()

    @pytest.mark.asyncio
    async def test_resolve_served_path_blocks_dotdot(self, store):
        asset = await store.save(b"x", "x.txt")
        with pytest.raises(PathTraversalError):
            store.resolve_served_path(asset.id, "../../outside.txt")

    @pytest.mark.asyncio
    async def test_resolve_served_path_blocks_symlink_escape(self, store, store_root, tmp_path):
        secret = tmp_path / "secret.txt"
        secret.write_text("secret")
        asset = await store.save(b"x", "x.txt")
        os.symlink(secret, store_root / asset.id / "link.txt")

        with pytest.raises(PathTraversalError):
            store.resolve_served_path(asset.id, "link.txt")

    @pytest.mark.asyncio
    async def test_resolve_served_path_inside_root(self, store, store_root):
        asset = await store.save(b"x", "x.txt")
        resolved = store.resolve_served_path(asset.id, "x.txt")
        assert resolved == (store_root / asset.id / "x.txt").resolve()

    def test_root_itself_is_not_contained(self, store, store_root):
        with pytest.raises(PathTraversalError):
            store.ensure_contained(store_root)


class TestDelete:
    @pytest.mark.asyncio
    async def test_delete_tree_reports_bytes(self, store, store_root):
        asset = await store.save(b"12345", "a.txt")
        (store_root / asset.id / "preview.jpg").write_bytes(b"678")

        outcome = await store.delete_tree(asset.id)

        assert outcome.bytes_reclaimed == 8
        assert len(outcome.deleted_paths) == 2
        assert outcome.errors == []
        assert not (store_root / asset.id).exists()

    @pytest.mark.asyncio
    async def test_delete_missing_is_empty(self, store):
        outcome = await store.delete_tree("2f1c7a52-33a5-4c6e-9d0e-5b8a4f3c2e10")
        assert outcome.deleted_paths == []
        assert outcome.bytes_reclaimed == 0

    @pytest.mark.asyncio
    async def test_bulk_delete_isolates_failures(self, store):
        kept = await store.save(b"abc", "a.txt")
        missing = "2f1c7a52-33a5-4c6e-9d0e-5b8a4f3c2e10"

        results = await store.bulk_delete([missing, "../etc", kept.id])

        assert [(r.id, r.ok, r.reason) for r in results] == [
            (missing, False, "not-found"),
            ("../etc", False, "invalid-id"),
            (kept.id, True, None),
        ]
        assert results[2].deleted == 1
        assert results[2].bytes_reclaimed == 3
        assert not await store.exists(kept.id)


class TestInventory:
    @pytest.mark.asyncio
    async def test_inventory_lists_ids(self, store, store_root):
        first = await store.save(b"aa", "a.txt")
        second = await store.save(b"bbbb", "b.txt")
        (store_root / "not-an-id").mkdir()

        items = {item["id"]: item for item in await store.inventory()}

        assert set(items) == {first.id, second.id}
        assert items[first.id]["files"] == ["a.txt"]
        assert items[second.id]["total_bytes"] == 4


class TestLogging:
    @pytest.mark.asyncio
    async def test_save_and_delete_log_asset_fields(self, store, caplog, monkeypatch):
        monkeypatch.setattr(content_store_module.logger, "propagate", True)

        with caplog.at_level(logging.INFO, logger="services.content_store"):
            asset = await store.save(PNG_BYTES, "logo.png")
            await store.delete_tree(asset.id)

        assert f"Stored asset | id={asset.id} | name=logo.png | size={len(PNG_BYTES)} | mime=image/png" in caplog.text
        assert f"Deleted asset tree | id={asset.id} | files=1 | bytes={len(PNG_BYTES)}" in caplog.text
