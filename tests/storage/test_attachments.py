"""Tests for local attachment storage and signed download links."""

import asyncio
import time
from urllib.parse import parse_qs, unquote, urlparse

import pytest
from uuid_extensions import uuid7

from src.models.errors import NotFound, ValidationFailed
from src.storage.attachments import LocalAttachmentStore, safe_filename


@pytest.fixture
def store(tmp_path) -> LocalAttachmentStore:
    return LocalAttachmentStore(
        str(tmp_path), secret="s3cret", base_url="http://files.test/", max_bytes=16,
    )


class TestUpload:

    @pytest.mark.anyio
    async def test_key_layout(self, store) -> None:
        workspace_id, item_id = uuid7(), uuid7()
        key = await store.upload(b"hello", workspace_id, item_id, "brief v2.pdf", "application/pdf")
        assert key.startswith(f"{workspace_id}/{item_id}/")
        assert key.endswith("-brief_v2.pdf")
        assert store.open(key).read_bytes() == b"hello"

    @pytest.mark.anyio
    async def test_rejects_disallowed_type(self, store) -> None:
        with pytest.raises(ValidationFailed, match="not allowed"):
            await store.upload(b"x", uuid7(), uuid7(), "run.exe", "application/x-msdownload")

    @pytest.mark.anyio
    async def test_rejects_empty(self, store) -> None:
        with pytest.raises(ValidationFailed, match="empty"):
            await store.upload(b"", uuid7(), uuid7(), "a.txt", "text/plain")

    @pytest.mark.anyio
    async def test_rejects_oversized(self, store) -> None:
        with pytest.raises(ValidationFailed, match="maximum size"):
            await store.upload(b"x" * 17, uuid7(), uuid7(), "a.txt", "text/plain")

    def test_safe_filename(self) -> None:
        assert safe_filename("../../etc/passwd") == ".._.._etc_passwd"
        assert len(safe_filename("a" * 300)) == 100


class TestDelete:

    @pytest.mark.anyio
    async def test_delete_removes_object(self, store) -> None:
        key = await store.upload(b"hello", uuid7(), uuid7(), "a.txt", "text/plain")
        await store.delete(key)
        with pytest.raises(NotFound):
            store.open(key)

    @pytest.mark.anyio
    async def test_delete_missing_raises(self, store) -> None:
        with pytest.raises(FileNotFoundError):
            await store.delete("nope/nope/file.txt")

    @pytest.mark.anyio
    async def test_file_io_runs_off_the_event_loop(self, store, monkeypatch) -> None:
        offloaded = []
        real_to_thread = asyncio.to_thread

        async def _to_thread(func, *args):
            offloaded.append(func)
            return await real_to_thread(func, *args)

        monkeypatch.setattr("src.storage.attachments.asyncio.to_thread", _to_thread)
        key = await store.upload(b"hello", uuid7(), uuid7(), "a.txt", "text/plain")
        await store.delete(key)
        assert len(offloaded) == 2
        with pytest.raises(NotFound):
            store.open(key)

    def test_path_escape_is_not_found(self, store) -> None:
        with pytest.raises(NotFound):
            store.open("../../outside.txt")


class TestSignedLinks:

    @pytest.mark.anyio
    async def test_presigned_url_verifies(self, store) -> None:
        key = await store.upload(b"hello", uuid7(), uuid7(), "a.txt", "text/plain")
        url = urlparse(await store.presigned_url(key))
        assert url.netloc == "files.test"
        assert unquote(url.path) == f"/v1/files/{key}"
        query = parse_qs(url.query)
        assert store.verify(key, int(query["expires"][0]), query["signature"][0])

    def test_tampered_signature(self, store) -> None:
        expires = int(time.time()) + 60
        signature = store.sign("a/b/c.txt", expires)
        assert not store.verify("a/b/other.txt", expires, signature)
        assert not store.verify("a/b/c.txt", expires + 1, signature)

    def test_expired_link(self, store) -> None:
        expires = int(time.time()) - 1
        assert not store.verify("a/b/c.txt", expires, store.sign("a/b/c.txt", expires))
