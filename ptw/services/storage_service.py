from __future__ import annotations

import hashlib
import os
import re
import secrets
import time
from dataclasses import dataclass
from enum import StrEnum
from pathlib import Path, PurePosixPath
from typing import Protocol

from ptw.domain.errors import NotFoundError, StorageError

UPLOAD_ROOT = os.getenv("UPLOAD_ROOT", "uploads")
URL_PREFIX = "/uploads"

_UNSAFE_FILENAME_CHARS = re.compile(r"[^A-Za-z0-9.-]")


class StorageKind(StrEnum):
    EVIDENCE = "evidences"
    SWMS = "swms"
    SIGNATURE = "signatures"


FILE_PREFIXES: dict[StorageKind, str] = {
    StorageKind.EVIDENCE: "evidence",
    StorageKind.SWMS: "swms",
    StorageKind.SIGNATURE: "sig",
}


@dataclass(frozen=True)
class StoredObject:
    kind: StorageKind
    file_name: str
    reference: str
    size_bytes: int
    content_type: str
    etag: str


class EvidenceStore(Protocol):
    def store(
        self,
        kind: StorageKind,
        original_name: str,
        content: bytes,
        content_type: str,
    ) -> StoredObject: ...

    def delete(self, reference: str) -> bool: ...

    def read(self, reference: str) -> bytes: ...


def sanitize_filename(original_name: str) -> str:
    sanitized = _UNSAFE_FILENAME_CHARS.sub("_", original_name.strip())
    return sanitized or "file"


def generate_stored_name(kind: StorageKind, original_name: str) -> str:
    unique_suffix = f"{int(time.time() * 1000)}-{secrets.randbelow(10**9)}"
    return f"{FILE_PREFIXES[kind]}-{unique_suffix}-{sanitize_filename(original_name)}"


def build_reference(kind: StorageKind, file_name: str) -> str:
    return f"{URL_PREFIX}/{kind.value}/{file_name}"


def parse_reference(reference: str) -> tuple[StorageKind, str]:
    path = PurePosixPath(reference)
    parts = path.parts
    if len(parts) != 4 or parts[0] != "/" or f"/{parts[1]}" != URL_PREFIX:
        raise StorageError(f"invalid storage reference: {reference}")
    try:
        kind = StorageKind(parts[2])
    except ValueError as exc:
        raise StorageError(f"unknown storage kind in reference: {reference}") from exc
    file_name = parts[3]
    if file_name in {".", ".."}:
        raise StorageError(f"invalid storage reference: {reference}")
    return kind, file_name


class LocalEvidenceStore:
    def __init__(self, root_dir: Path) -> None:
        self._root_dir = root_dir
        for kind in StorageKind:
            (self._root_dir / kind.value).mkdir(parents=True, exist_ok=True)

    @property
    def root_dir(self) -> Path:
        return self._root_dir

    def _path_for(self, kind: StorageKind, file_name: str) -> Path:
        return self._root_dir / kind.value / file_name

    def path_for_reference(self, reference: str) -> Path:
        kind, file_name = parse_reference(reference)
        return self._path_for(kind, file_name)

    def store(
        self,
        kind: StorageKind,
        original_name: str,
        content: bytes,
        content_type: str,
    ) -> StoredObject:
        file_name = generate_stored_name(kind, original_name)
        path = self._path_for(kind, file_name)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            # "xb" so a name collision fails instead of overwriting.
            with path.open("xb") as handle:
                handle.write(content)
        except OSError as exc:
            raise StorageError(f"failed to store file {original_name}") from exc
        return StoredObject(
            kind=kind,
            file_name=file_name,
            reference=build_reference(kind, file_name),
            size_bytes=len(content),
            content_type=content_type,
            etag=hashlib.sha256(content).hexdigest(),
        )

    def delete(self, reference: str) -> bool:
        path = self.path_for_reference(reference)
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        except OSError as exc:
            raise StorageError(f"failed to delete {reference}") from exc
        return True

    def read(self, reference: str) -> bytes:
        path = self.path_for_reference(reference)
        if not path.is_file():
            raise NotFoundError("stored file not found")
        try:
            return path.read_bytes()
        except OSError as exc:
            raise StorageError(f"failed to read {reference}") from exc


class InMemoryEvidenceStore:
    def __init__(self) -> None:
        self._objects: dict[str, tuple[bytes, str]] = {}

    @property
    def references(self) -> list[str]:
        return list(self._objects)

    def store(
        self,
        kind: StorageKind,
        original_name: str,
        content: bytes,
        content_type: str,
    ) -> StoredObject:
        file_name = generate_stored_name(kind, original_name)
        reference = build_reference(kind, file_name)
        if reference in self._objects:
            raise StorageError(f"storage reference collision: {reference}")
        self._objects[reference] = (content, content_type)
        return StoredObject(
            kind=kind,
            file_name=file_name,
            reference=reference,
            size_bytes=len(content),
            content_type=content_type,
            etag=hashlib.sha256(content).hexdigest(),
        )

    def delete(self, reference: str) -> bool:
        parse_reference(reference)
        return self._objects.pop(reference, None) is not None

    def read(self, reference: str) -> bytes:
        parse_reference(reference)
        if reference not in self._objects:
            raise NotFoundError("stored file not found")
        return self._objects[reference][0]


def build_default_store() -> LocalEvidenceStore:
    return LocalEvidenceStore(Path(UPLOAD_ROOT))
