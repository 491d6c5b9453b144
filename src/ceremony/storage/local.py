"""Local ObjectStorage — multipart semantics without a cloud provider.

Used for development and tests. Objects and in-flight parts live in
memory. Presigned URLs are HMAC-signed over the part's exact size and
carry their own expiry; a client "uploads" a part by calling
`put_part(url, data)`, which validates the signature, expiry and body
length exactly as a storage service would and returns the part's ETag.
"""

from __future__ import annotations

import hashlib
import hmac
import secrets
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Iterator, Optional, Sequence, Tuple
from urllib.parse import parse_qs, urlencode, urlsplit

from ceremony.errors import AuthorizationError, NotFoundError, UploadIntegrityError
from ceremony.models.upload import ArtifactLocation


@dataclass
class _PendingUpload:
    bucket: str
    key: str
    parts: Dict[int, bytes] = field(default_factory=dict)
    tags: Dict[int, str] = field(default_factory=dict)


class LocalObjectStorage:
    """In-memory ObjectStorage implementation."""

    def __init__(
        self,
        secret: Optional[bytes] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._secret = secret or secrets.token_bytes(32)
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._lock = threading.Lock()
        self._objects: Dict[Tuple[str, str], bytes] = {}
        self._uploads: Dict[str, _PendingUpload] = {}

    # ------------------------------------------------------------------
    # ObjectStorage protocol
    # ------------------------------------------------------------------

    def create_multipart_session(self, bucket: str, key: str) -> str:
        upload_id = f"mpu_{secrets.token_hex(8)}"
        with self._lock:
            self._uploads[upload_id] = _PendingUpload(bucket=bucket, key=key)
        return upload_id

    def sign_part_upload(
        self,
        bucket: str,
        key: str,
        upload_id: str,
        part_number: int,
        part_size: int,
        ttl_seconds: int,
    ) -> str:
        if part_size < 0:
            raise ValueError("Part size must be non-negative")
        with self._lock:
            if upload_id not in self._uploads:
                raise NotFoundError(f"Unknown multipart upload: {upload_id}")
        expires = int((self._clock() + timedelta(seconds=ttl_seconds)).timestamp())
        query = {
            "uploadId": upload_id,
            "partNumber": str(part_number),
            "size": str(part_size),
            "expires": str(expires),
        }
        query["signature"] = self._sign(bucket, key, query)
        return f"local://{bucket}/{key}?{urlencode(query)}"

    def complete_multipart_session(
        self,
        bucket: str,
        key: str,
        upload_id: str,
        parts: Sequence[Tuple[int, str]],
    ) -> ArtifactLocation:
        with self._lock:
            pending = self._uploads.get(upload_id)
            if pending is None:
                raise NotFoundError(f"Unknown multipart upload: {upload_id}")
            chunks = []
            for part_number, tag in sorted(parts):
                stored = pending.tags.get(part_number)
                if stored is None:
                    raise UploadIntegrityError(f"Part {part_number} was never uploaded")
                if stored != tag:
                    raise UploadIntegrityError(
                        f"Part {part_number} tag mismatch: stored {stored}, given {tag}"
                    )
                chunks.append(pending.parts[part_number])
            self._objects[(bucket, key)] = b"".join(chunks)
            del self._uploads[upload_id]
        return ArtifactLocation(bucket=bucket, key=key)

    def abort_multipart_session(self, bucket: str, key: str, upload_id: str) -> None:
        with self._lock:
            self._uploads.pop(upload_id, None)

    def iter_object(self, location: ArtifactLocation, chunk_size: int) -> Iterator[bytes]:
        with self._lock:
            data = self._objects.get((location.bucket, location.key))
        if data is None:
            raise NotFoundError(f"No object at {location.bucket}/{location.key}")
        for offset in range(0, len(data), chunk_size):
            yield data[offset:offset + chunk_size]

    # ------------------------------------------------------------------
    # Client side and helpers
    # ------------------------------------------------------------------

    def put_part(self, url: str, data: bytes) -> str:
        """Upload one part through a presigned URL; returns its ETag."""
        parsed = urlsplit(url)
        bucket = parsed.netloc
        key = parsed.path.lstrip("/")
        query = {k: v[0] for k, v in parse_qs(parsed.query).items()}
        signature = query.pop("signature", "")
        if not hmac.compare_digest(signature, self._sign(bucket, key, query)):
            raise AuthorizationError("Presigned URL signature is invalid")
        if int(self._clock().timestamp()) >= int(query["expires"]):
            raise AuthorizationError("Presigned URL has expired")
        if len(data) != int(query["size"]):
            raise AuthorizationError(
                f"Presigned URL is scoped to {query['size']} bytes, got {len(data)}"
            )
        upload_id = query["uploadId"]
        part_number = int(query["partNumber"])
        tag = f'"{hashlib.md5(data, usedforsecurity=False).hexdigest()}"'
        with self._lock:
            pending = self._uploads.get(upload_id)
            if pending is None:
                raise NotFoundError(f"Unknown multipart upload: {upload_id}")
            pending.parts[part_number] = data
            pending.tags[part_number] = tag
        return tag

    def put_object(self, bucket: str, key: str, data: bytes) -> ArtifactLocation:
        with self._lock:
            self._objects[(bucket, key)] = data
        return ArtifactLocation(bucket=bucket, key=key)

    def object_exists(self, bucket: str, key: str) -> bool:
        with self._lock:
            return (bucket, key) in self._objects

    def pending_uploads(self) -> int:
        with self._lock:
            return len(self._uploads)

    def _sign(self, bucket: str, key: str, query: Dict[str, str]) -> str:
        message = "|".join([
            bucket,
            key,
            query.get("uploadId", ""),
            query.get("partNumber", ""),
            query.get("size", ""),
            query.get("expires", ""),
        ]).encode("utf-8")
        return hmac.new(self._secret, message, hashlib.sha256).hexdigest()
