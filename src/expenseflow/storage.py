from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Optional
from uuid import uuid4

from .config import Settings
from .errors import NotFound, ValidationFailed

logger = logging.getLogger(__name__)

ALLOWED_FILE_TYPES: tuple[str, ...] = ("image/jpeg", "image/png", "image/heic", "application/pdf")
MAX_FILE_SIZE = 10 * 1024 * 1024


@dataclass(frozen=True)
class StoredObject:
    key: str
    file_name: str
    file_type: str
    size: int
    url: str


@dataclass
class LocalObjectStorage:
    """Bucket-style object store on the local filesystem.

    Keys look like ``<owner>/<uuid>.<ext>``; every key is resolved inside the
    bucket directory before it is read or written.
    """

    base_dir: Path
    bucket: str = "receipts"
    public_base_url: str = "http://localhost:8000/files"
    max_bytes: int = MAX_FILE_SIZE
    allowed_types: tuple[str, ...] = ALLOWED_FILE_TYPES

    @classmethod
    def from_settings(cls, settings: Settings) -> "LocalObjectStorage":
        return cls(
            base_dir=Path(settings.storage_dir),
            bucket=settings.storage_bucket,
            public_base_url=f"{settings.app_url.rstrip('/')}/files",
            max_bytes=settings.max_upload_bytes,
            allowed_types=tuple(settings.allowed_upload_types),
        )

    @property
    def root(self) -> Path:
        return Path(self.base_dir) / sanitize_identifier(self.bucket)

    def validate_file(self, content_type: Optional[str], size: int) -> None:
        if content_type not in self.allowed_types:
            raise ValidationFailed(
                "Invalid file type. Please upload a JPEG, PNG, HEIC, or PDF file.",
                {"file": "Invalid file type"},
            )
        if size > self.max_bytes:
            limit_mb = self.max_bytes // (1024 * 1024)
            raise ValidationFailed(f"File size exceeds {limit_mb}MB limit.", {"file": "File too large"})

    def upload(self, owner_id: str, file_name: str, content_type: Optional[str], content: bytes) -> StoredObject:
        self.validate_file(content_type, len(content))
        suffix = Path(sanitize_filename(file_name)).suffix
        key = f"{sanitize_identifier(owner_id)}/{uuid4()}{suffix}"
        path = self._path(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        # Keys are unique; refuse to overwrite.
        with path.open("xb") as handle:
            handle.write(content)
        logger.info("Stored object", extra={"key": key, "size": len(content)})
        return StoredObject(
            key=key,
            file_name=file_name,
            file_type=content_type or "application/octet-stream",
            size=len(content),
            url=self.public_url(key),
        )

    def download(self, key: str) -> bytes:
        path = self._path(key)
        if not path.is_file():
            raise NotFound("File not found")
        return path.read_bytes()

    def list(self, prefix: str = "") -> list[str]:
        directory = self._path(prefix) if prefix else self.root
        if not directory.is_dir():
            return []
        return sorted(
            path.relative_to(self.root).as_posix() for path in directory.rglob("*") if path.is_file()
        )

    def delete(self, key: str) -> bool:
        path = self._path(key)
        if not path.is_file():
            return False
        path.unlink()
        return True

    def public_url(self, key: str) -> str:
        return f"{self.public_base_url.rstrip('/')}/{sanitize_identifier(self.bucket)}/{key}"

    def _path(self, key: str) -> Path:
        parts = [sanitize_filename(part) for part in key.split("/") if part not in ("", ".", "..")]
        if not parts:
            raise ValueError("Unsafe storage key")
        root = self.root.resolve()
        resolved = root.joinpath(*parts).resolve()
        if root not in resolved.parents:
            raise ValueError("Unsafe storage key")
        return resolved


def sanitize_identifier(value: str) -> str:
    safe = re.sub(r"[^A-Za-z0-9_-]", "_", value)
    return safe.strip("_") or "anonymous"


def sanitize_filename(value: str) -> str:
    value = Path(value).name
    safe = re.sub(r"[^A-Za-z0-9._-]", "_", value)
    return safe or "upload.bin"
