"""Tests for the local multipart storage backend."""

from datetime import datetime, timedelta, timezone

import pytest

from ceremony.errors import AuthorizationError, NotFoundError, UploadIntegrityError
from ceremony.interfaces import ObjectStorage
from ceremony.models.upload import ArtifactLocation
from ceremony.storage.local import LocalObjectStorage


class _Clock:
    def __init__(self) -> None:
        self.now = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture
def clock() -> _Clock:
    return _Clock()


@pytest.fixture
def storage(clock) -> LocalObjectStorage:
    return LocalObjectStorage(secret=b"k" * 32, clock=clock)


class TestMultipart:
    def test_satisfies_protocol(self, storage) -> None:
        assert isinstance(storage, ObjectStorage)

    def test_upload_and_complete(self, storage) -> None:
        upload_id = storage.create_multipart_session("b", "x/x_00001.zkey")
        tags = []
        for number, chunk in enumerate([b"abc", b"def"], start=1):
            url = storage.sign_part_upload("b", "x/x_00001.zkey", upload_id, number, len(chunk), 60)
            tags.append((number, storage.put_part(url, chunk)))
        location = storage.complete_multipart_session("b", "x/x_00001.zkey", upload_id, tags)
        assert location == ArtifactLocation("b", "x/x_00001.zkey")
        assert b"".join(storage.iter_object(location, 2)) == b"abcdef"
        assert list(storage.iter_object(location, 4)) == [b"abcd", b"ef"]
        assert storage.pending_uploads() == 0

    def test_tag_mismatch_fails_complete(self, storage) -> None:
        upload_id = storage.create_multipart_session("b", "k")
        url = storage.sign_part_upload("b", "k", upload_id, 1, 4, 60)
        storage.put_part(url, b"data")
        with pytest.raises(UploadIntegrityError, match="tag mismatch"):
            storage.complete_multipart_session("b", "k", upload_id, [(1, '"other"')])

    def test_missing_part_fails_complete(self, storage) -> None:
        upload_id = storage.create_multipart_session("b", "k")
        with pytest.raises(UploadIntegrityError, match="never uploaded"):
            storage.complete_multipart_session("b", "k", upload_id, [(1, '"x"')])

    def test_abort_discards_parts(self, storage) -> None:
        upload_id = storage.create_multipart_session("b", "k")
        url = storage.sign_part_upload("b", "k", upload_id, 1, 4, 60)
        storage.abort_multipart_session("b", "k", upload_id)
        assert storage.pending_uploads() == 0
        with pytest.raises(NotFoundError):
            storage.put_part(url, b"late")
        # Aborting twice is harmless
        storage.abort_multipart_session("b", "k", upload_id)

    def test_missing_object(self, storage) -> None:
        with pytest.raises(NotFoundError):
            list(storage.iter_object(ArtifactLocation("b", "nothing"), 10))


class TestPresignedUrls:
    def test_expired_url_rejected(self, storage, clock) -> None:
        upload_id = storage.create_multipart_session("b", "k")
        url = storage.sign_part_upload("b", "k", upload_id, 1, 1, 30)
        clock.now += timedelta(seconds=30)
        with pytest.raises(AuthorizationError, match="expired"):
            storage.put_part(url, b"x")

    def test_tampered_url_rejected(self, storage) -> None:
        upload_id = storage.create_multipart_session("b", "k")
        url = storage.sign_part_upload("b", "k", upload_id, 1, 1, 30)
        with pytest.raises(AuthorizationError, match="signature"):
            storage.put_part(url.replace("partNumber=1", "partNumber=2"), b"x")

    def test_url_from_other_secret_rejected(self, storage, clock) -> None:
        other = LocalObjectStorage(secret=b"z" * 32, clock=clock)
        upload_id = other.create_multipart_session("b", "k")
        url = other.sign_part_upload("b", "k", upload_id, 1, 1, 30)
        with pytest.raises(AuthorizationError):
            storage.put_part(url, b"x")

    def test_signing_unknown_upload(self, storage) -> None:
        with pytest.raises(NotFoundError):
            storage.sign_part_upload("b", "k", "mpu_missing", 1, 1, 30)

    def test_body_longer_than_part_rejected(self, storage) -> None:
        upload_id = storage.create_multipart_session("b", "k")
        url = storage.sign_part_upload("b", "k", upload_id, 1, 32, 30)
        with pytest.raises(AuthorizationError, match="scoped to 32 bytes"):
            storage.put_part(url, b"X" * 10_000)
        with pytest.raises(AuthorizationError, match="scoped to 32 bytes"):
            storage.put_part(url, b"X" * 31)
        assert storage.put_part(url, b"X" * 32).startswith('"')

    def test_size_cannot_be_rewritten(self, storage) -> None:
        upload_id = storage.create_multipart_session("b", "k")
        url = storage.sign_part_upload("b", "k", upload_id, 1, 32, 30)
        with pytest.raises(AuthorizationError, match="signature"):
            storage.put_part(url.replace("size=32", "size=10000"), b"X" * 10_000)
