from __future__ import annotations

import json
import math
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any, BinaryIO

import structlog
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, col, func, select

from ptw.domain.errors import (
    BatchSizeMismatchError,
    FileTooLargeError,
    InvalidMetadataError,
    MissingFieldError,
    NotFoundError,
    PersistenceError,
    StorageError,
    UnsupportedMediaTypeError,
    ValidationError,
)
from ptw.domain.models import (
    EVIDENCE_CATEGORIES,
    CategoryCount,
    Evidence,
    EvidenceStatsRead,
    EvidenceType,
)
from ptw.infra.db import open_session
from ptw.infra.events import EventBus
from ptw.services.permit_repository import PermitRepository
from ptw.services.storage_service import EvidenceStore, StorageKind, StoredObject

MIB = 1024 * 1024
MAX_FILES_PER_BATCH = 10

IMAGE_CONTENT_TYPES = frozenset({"image/jpeg", "image/jpg", "image/png", "image/webp"})
DOCUMENT_CONTENT_TYPES = frozenset(
    {
        "application/pdf",
        "application/msword",
        "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    }
)

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class UploadPolicy:
    label: str
    max_bytes: int
    allowed_types: frozenset[str]


EVIDENCE_POLICY = UploadPolicy("evidence", 5 * MIB, IMAGE_CONTENT_TYPES)
SWMS_POLICY = UploadPolicy("SWMS document", 10 * MIB, IMAGE_CONTENT_TYPES | DOCUMENT_CONTENT_TYPES)
SIGNATURE_POLICY = UploadPolicy("signature", 2 * MIB, IMAGE_CONTENT_TYPES)

DOCUMENT_POLICIES: dict[StorageKind, UploadPolicy] = {
    StorageKind.SWMS: SWMS_POLICY,
    StorageKind.SIGNATURE: SIGNATURE_POLICY,
}


@dataclass(frozen=True)
class IncomingFile:
    filename: str
    content_type: str
    content: bytes


@dataclass(frozen=True)
class EvidenceEntry:
    category: str
    description: str
    timestamp: datetime
    latitude: float | None
    longitude: float | None


def normalize_content_type(content_type: str | None) -> str:
    if not content_type:
        return ""
    return content_type.split(";", 1)[0].strip().lower()


def parse_metadata(raw: str | None) -> list[dict[str, Any]]:
    if raw is None or not raw.strip():
        raise InvalidMetadataError("Invalid metadata format: evidences_data is empty")
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise InvalidMetadataError("Invalid metadata format") from exc
    if not isinstance(parsed, list) or not all(isinstance(item, dict) for item in parsed):
        raise InvalidMetadataError("Invalid metadata format: expected a JSON array of objects")
    return parsed


def normalize_timestamp(value: Any) -> datetime:
    """Accepts ISO-8601 strings or epoch milliseconds; returns an aware UTC datetime."""
    if isinstance(value, bool):
        raise ValueError("boolean is not a timestamp")
    if isinstance(value, int | float):
        return datetime.fromtimestamp(float(value) / 1000.0, tz=UTC)
    if isinstance(value, str):
        text = value.strip()
        if text.isdigit():
            return datetime.fromtimestamp(int(text) / 1000.0, tz=UTC)
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
        if parsed.tzinfo is None:
            return parsed.replace(tzinfo=UTC)
        return parsed.astimezone(UTC)
    raise ValueError(f"unsupported timestamp value: {value!r}")


def _is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def _coordinate(value: Any, *, name: str, limit: float, index: int) -> float | None:
    if _is_blank(value):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError) as exc:
        raise InvalidMetadataError(f"Invalid {name} in metadata entry {index}", index=index) from exc
    if math.isnan(number) or abs(number) > limit:
        raise InvalidMetadataError(f"{name} out of range in metadata entry {index}", index=index)
    return number


def validate_entries(raw_entries: list[dict[str, Any]], evidence_type: EvidenceType) -> list[EvidenceEntry]:
    allowed = EVIDENCE_CATEGORIES[evidence_type]
    entries: list[EvidenceEntry] = []
    for index, raw in enumerate(raw_entries):
        for field in ("category", "timestamp"):
            if _is_blank(raw.get(field)):
                raise MissingFieldError(field, index)
        category = str(raw["category"]).strip()
        if category not in allowed:
            raise InvalidMetadataError(
                f"Invalid category '{category}' in metadata entry {index}",
                index=index,
                allowed=sorted(allowed),
            )
        try:
            timestamp = normalize_timestamp(raw["timestamp"])
        except (TypeError, ValueError, OverflowError, OSError) as exc:
            raise InvalidMetadataError(f"Invalid timestamp in metadata entry {index}", index=index) from exc
        description = raw.get("description")
        entries.append(
            EvidenceEntry(
                category=category,
                description="" if description is None else str(description),
                timestamp=timestamp,
                latitude=_coordinate(raw.get("latitude"), name="latitude", limit=90.0, index=index),
                longitude=_coordinate(raw.get("longitude"), name="longitude", limit=180.0, index=index),
            )
        )
    return entries


def _too_large(filename: str, policy: UploadPolicy) -> FileTooLargeError:
    return FileTooLargeError(
        f"File {filename} exceeds the {policy.max_bytes // MIB} MiB {policy.label} limit",
        filename=filename,
        max_bytes=policy.max_bytes,
    )


def ensure_batch_size(count: int) -> None:
    if count > MAX_FILES_PER_BATCH:
        raise ValidationError(
            f"Too many files: at most {MAX_FILES_PER_BATCH} per upload",
            file_count=count,
        )


def read_bounded(stream: BinaryIO, filename: str, size: int | None, policy: UploadPolicy) -> bytes:
    """Read an upload without buffering more than ``policy.max_bytes + 1``
    bytes; anything larger is rejected before the rest is read."""
    if size is not None and size > policy.max_bytes:
        raise _too_large(filename, policy)
    content = stream.read(policy.max_bytes + 1)
    if len(content) > policy.max_bytes:
        raise _too_large(filename, policy)
    return content


def validate_file(incoming: IncomingFile, policy: UploadPolicy) -> None:
    content_type = normalize_content_type(incoming.content_type)
    if content_type not in policy.allowed_types:
        raise UnsupportedMediaTypeError(
            f"Invalid file type for {policy.label}: {content_type or 'unknown'}",
            filename=incoming.filename,
            allowed=sorted(policy.allowed_types),
        )
    if not incoming.content:
        raise ValidationError(f"File {incoming.filename} is empty", filename=incoming.filename)
    if len(incoming.content) > policy.max_bytes:
        raise _too_large(incoming.filename, policy)


def prepare_batch(
    files: list[IncomingFile],
    metadata_json: str | None,
    evidence_type: EvidenceType,
) -> list[EvidenceEntry]:
    raw_entries = parse_metadata(metadata_json)
    if len(raw_entries) != len(files):
        raise BatchSizeMismatchError(len(files), len(raw_entries))
    entries = validate_entries(raw_entries, evidence_type)
    for incoming in files:
        validate_file(incoming, EVIDENCE_POLICY)
    return entries


class EvidenceService:
    def __init__(self, engine: Engine, store: EvidenceStore, event_bus: EventBus | None = None) -> None:
        self._engine = engine
        self._store = store
        self._event_bus = event_bus

    def _session(self) -> Session:
        return open_session(self._engine)

    def _log_orphans(self, stored: list[StoredObject], reason: str) -> None:
        if stored:
            logger.warning(
                "evidence_files_orphaned",
                reason=reason,
                references=[item.reference for item in stored],
            )

    def record_files(
        self,
        session: Session,
        *,
        permit_id: int,
        files: list[IncomingFile],
        entries: list[EvidenceEntry],
        evidence_type: EvidenceType,
        actor_id: int | None,
        closure_id: int | None = None,
    ) -> list[Evidence]:
        """Store each file and stage its row in ``session``, in input order.

        Does not commit. On failure the files written so far are logged as
        orphaned and the error is re-raised; the caller rolls back.
        """
        stored: list[StoredObject] = []
        evidences: list[Evidence] = []
        try:
            for incoming, entry in zip(files, entries, strict=True):
                obj = self._store.store(
                    StorageKind.EVIDENCE,
                    incoming.filename,
                    incoming.content,
                    normalize_content_type(incoming.content_type),
                )
                stored.append(obj)
                evidence = Evidence(
                    permit_id=permit_id,
                    closure_id=closure_id,
                    evidence_type=evidence_type,
                    file_path=obj.reference,
                    file_name=obj.file_name,
                    content_type=obj.content_type,
                    size_bytes=obj.size_bytes,
                    category=entry.category,
                    description=entry.description,
                    timestamp=entry.timestamp,
                    latitude=entry.latitude,
                    longitude=entry.longitude,
                    uploaded_by=actor_id,
                )
                session.add(evidence)
                session.flush()
                evidences.append(evidence)
        except StorageError:
            self._log_orphans(stored, "storage_failure")
            raise
        except SQLAlchemyError as exc:
            self._log_orphans(stored, "insert_failure")
            raise PersistenceError("Failed to record evidence") from exc
        return evidences

    def upload_evidence_batch(
        self,
        permit_id: int | None,
        files: list[IncomingFile],
        metadata_json: str | None,
        *,
        evidence_type: EvidenceType = EvidenceType.WORKING,
        actor_id: int | None = None,
    ) -> list[Evidence]:
        if not files:
            raise ValidationError("No files uploaded")
        ensure_batch_size(len(files))
        if permit_id is None:
            raise MissingFieldError("permit_id")

        with self._session() as session:
            PermitRepository(session).require(permit_id)
            entries = prepare_batch(files, metadata_json, evidence_type)
            evidences = self.record_files(
                session,
                permit_id=permit_id,
                files=files,
                entries=entries,
                evidence_type=evidence_type,
                actor_id=actor_id,
            )
            try:
                session.commit()
            except SQLAlchemyError as exc:
                session.rollback()
                logger.warning(
                    "evidence_files_orphaned",
                    reason="commit_failure",
                    references=[item.file_path for item in evidences],
                )
                raise PersistenceError("Failed to record evidence") from exc
            for evidence in evidences:
                session.refresh(evidence)

        logger.info(
            "evidence_uploaded",
            permit_id=permit_id,
            count=len(evidences),
            evidence_type=str(evidence_type),
        )
        if self._event_bus is not None:
            self._event_bus.publish_dict(
                "evidence.uploaded",
                {"evidence_ids": [item.id for item in evidences], "evidence_type": str(evidence_type)},
                actor_id=actor_id,
                permit_id=permit_id,
            )
        return evidences

    def list_for_permit(self, permit_id: int) -> list[Evidence]:
        with self._session() as session:
            PermitRepository(session).require(permit_id)
            statement = (
                select(Evidence)
                .where(Evidence.permit_id == permit_id)
                .order_by(col(Evidence.timestamp).desc(), col(Evidence.id).desc())
            )
            return list(session.exec(statement).all())

    def list_by_category(self, category: str, permit_id: int | None = None) -> list[Evidence]:
        with self._session() as session:
            statement = select(Evidence).where(Evidence.category == category)
            if permit_id is not None:
                statement = statement.where(Evidence.permit_id == permit_id)
            statement = statement.order_by(col(Evidence.timestamp).desc(), col(Evidence.id).desc())
            return list(session.exec(statement).all())

    def get_evidence(self, evidence_id: int) -> Evidence:
        with self._session() as session:
            evidence = session.get(Evidence, evidence_id)
            if evidence is None:
                raise NotFoundError("Evidence not found", evidence_id=evidence_id)
            return evidence

    def update_evidence(self, evidence_id: int, category: str, description: str | None) -> Evidence:
        with self._session() as session:
            evidence = session.get(Evidence, evidence_id)
            if evidence is None:
                raise NotFoundError("Evidence not found", evidence_id=evidence_id)
            normalized = category.strip() if category else ""
            if not normalized:
                raise MissingFieldError("category")
            allowed = EVIDENCE_CATEGORIES[evidence.evidence_type]
            if normalized not in allowed:
                raise InvalidMetadataError(f"Invalid category '{normalized}'", allowed=sorted(allowed))
            evidence.category = normalized
            if description is not None:
                evidence.description = description
            session.add(evidence)
            try:
                session.commit()
            except SQLAlchemyError as exc:
                session.rollback()
                raise PersistenceError("Failed to update evidence") from exc
            session.refresh(evidence)
            return evidence

    def delete_evidence(self, evidence_id: int, actor_id: int | None = None) -> None:
        with self._session() as session:
            evidence = session.get(Evidence, evidence_id)
            if evidence is None:
                raise NotFoundError("Evidence not found", evidence_id=evidence_id)
            permit_id = evidence.permit_id
            reference = evidence.file_path
            self.discard_file(reference)
            session.delete(evidence)
            try:
                session.commit()
            except SQLAlchemyError as exc:
                session.rollback()
                raise PersistenceError("Failed to delete evidence") from exc

        logger.info("evidence_deleted", evidence_id=evidence_id, permit_id=permit_id)
        if self._event_bus is not None:
            self._event_bus.publish_dict(
                "evidence.deleted",
                {"evidence_id": evidence_id, "file_path": reference},
                actor_id=actor_id,
                permit_id=permit_id,
            )

    def discard_file(self, reference: str) -> None:
        """Best-effort removal of a stored file; never raises."""
        try:
            removed = self._store.delete(reference)
        except StorageError:
            logger.warning("evidence_file_delete_failed", reference=reference, exc_info=True)
            return
        if not removed:
            logger.warning("evidence_file_missing", reference=reference)

    def stats(self, permit_id: int) -> EvidenceStatsRead:
        with self._session() as session:
            PermitRepository(session).require(permit_id)
            rows = session.exec(
                select(Evidence.category, func.count())
                .where(Evidence.permit_id == permit_id)
                .group_by(Evidence.category)
                .order_by(Evidence.category)
            ).all()
            by_category = [CategoryCount(category=category, count=count) for category, count in rows]
            return EvidenceStatsRead(total=sum(item.count for item in by_category), by_category=by_category)

    def upload_document(self, kind: StorageKind, incoming: IncomingFile | None) -> StoredObject:
        policy = DOCUMENT_POLICIES.get(kind)
        if policy is None:
            raise ValidationError(f"Unsupported document kind: {kind}")
        if incoming is None:
            raise ValidationError(f"No {policy.label} file uploaded")
        validate_file(incoming, policy)
        stored = self._store.store(kind, incoming.filename, incoming.content, normalize_content_type(incoming.content_type))
        logger.info("document_uploaded", kind=str(kind), reference=stored.reference, size_bytes=stored.size_bytes)
        return stored
