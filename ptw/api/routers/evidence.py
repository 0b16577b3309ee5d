from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, File, Form, Request, UploadFile, status

from ptw.api.deps import CurrentActor, require_perm
from ptw.domain.models import (
    ApiResponse,
    DocumentUploadRead,
    EvidenceRead,
    EvidenceStatsRead,
    EvidenceType,
    EvidenceUpdate,
)
from ptw.domain.permissions import PERM_EVIDENCE_WRITE, PERM_PERMIT_READ
from ptw.services.evidence_service import (
    EVIDENCE_POLICY,
    SIGNATURE_POLICY,
    SWMS_POLICY,
    EvidenceService,
    IncomingFile,
    UploadPolicy,
    ensure_batch_size,
    read_bounded,
)
from ptw.services.storage_service import StorageKind

router = APIRouter()


def get_evidence_service(request: Request) -> EvidenceService:
    state = request.app.state
    return EvidenceService(state.engine, state.store, state.event_bus)


Service = Annotated[EvidenceService, Depends(get_evidence_service)]


def read_upload(upload: UploadFile, policy: UploadPolicy) -> IncomingFile:
    filename = upload.filename or "file"
    return IncomingFile(
        filename=filename,
        content_type=upload.content_type or "",
        content=read_bounded(upload.file, filename, upload.size, policy),
    )


def read_batch(uploads: list[UploadFile] | None) -> list[IncomingFile]:
    uploads = uploads or []
    ensure_batch_size(len(uploads))
    return [read_upload(item, EVIDENCE_POLICY) for item in uploads]


@router.post(
    "/uploads/evidence",
    response_model=ApiResponse[list[EvidenceRead]],
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_perm(PERM_EVIDENCE_WRITE))],
)
def upload_evidence(
    actor: CurrentActor,
    service: Service,
    permit_id: Annotated[int | None, Form()] = None,
    evidences_data: Annotated[str | None, Form()] = None,
    evidence_type: Annotated[EvidenceType, Form()] = EvidenceType.WORKING,
    evidences: Annotated[list[UploadFile] | None, File()] = None,
) -> ApiResponse[list[EvidenceRead]]:
    files = read_batch(evidences)
    rows = service.upload_evidence_batch(
        permit_id,
        files,
        evidences_data,
        evidence_type=evidence_type,
        actor_id=actor.user_id,
    )
    return ApiResponse(
        message=f"Successfully uploaded {len(rows)} evidence file(s)",
        data=[EvidenceRead.model_validate(item) for item in rows],
    )


@router.get(
    "/permits/{permit_id}/evidences",
    response_model=ApiResponse[list[EvidenceRead]],
    dependencies=[Depends(require_perm(PERM_PERMIT_READ))],
)
def list_permit_evidences(permit_id: int, service: Service) -> ApiResponse[list[EvidenceRead]]:
    rows = service.list_for_permit(permit_id)
    return ApiResponse(data=[EvidenceRead.model_validate(item) for item in rows])


@router.get(
    "/permits/{permit_id}/evidences/stats",
    response_model=ApiResponse[EvidenceStatsRead],
    dependencies=[Depends(require_perm(PERM_PERMIT_READ))],
)
def evidence_stats(permit_id: int, service: Service) -> ApiResponse[EvidenceStatsRead]:
    return ApiResponse(data=service.stats(permit_id))


@router.get(
    "/uploads/evidence/category/{category}",
    response_model=ApiResponse[list[EvidenceRead]],
    dependencies=[Depends(require_perm(PERM_PERMIT_READ))],
)
def list_evidence_by_category(
    category: str,
    service: Service,
    permit_id: int | None = None,
) -> ApiResponse[list[EvidenceRead]]:
    rows = service.list_by_category(category, permit_id=permit_id)
    return ApiResponse(data=[EvidenceRead.model_validate(item) for item in rows])


@router.get(
    "/uploads/evidence/{evidence_id}",
    response_model=ApiResponse[EvidenceRead],
    dependencies=[Depends(require_perm(PERM_PERMIT_READ))],
)
def get_evidence(evidence_id: int, service: Service) -> ApiResponse[EvidenceRead]:
    return ApiResponse(data=EvidenceRead.model_validate(service.get_evidence(evidence_id)))


@router.put(
    "/uploads/evidence/{evidence_id}",
    response_model=ApiResponse[EvidenceRead],
    dependencies=[Depends(require_perm(PERM_EVIDENCE_WRITE))],
)
def update_evidence(evidence_id: int, payload: EvidenceUpdate, service: Service) -> ApiResponse[EvidenceRead]:
    evidence = service.update_evidence(evidence_id, payload.category, payload.description)
    return ApiResponse(message="Evidence updated successfully", data=EvidenceRead.model_validate(evidence))


@router.delete(
    "/uploads/evidence/{evidence_id}",
    response_model=ApiResponse[None],
    dependencies=[Depends(require_perm(PERM_EVIDENCE_WRITE))],
)
def delete_evidence(evidence_id: int, actor: CurrentActor, service: Service) -> ApiResponse[None]:
    service.delete_evidence(evidence_id, actor_id=actor.user_id)
    return ApiResponse(message="Evidence deleted successfully")


@router.post(
    "/uploads/swms",
    response_model=ApiResponse[DocumentUploadRead],
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_perm(PERM_EVIDENCE_WRITE))],
)
def upload_swms(
    service: Service,
    swms: Annotated[UploadFile | None, File()] = None,
) -> ApiResponse[DocumentUploadRead]:
    incoming = read_upload(swms, SWMS_POLICY) if swms is not None else None
    stored = service.upload_document(StorageKind.SWMS, incoming)
    return ApiResponse(message="SWMS file uploaded successfully", data=DocumentUploadRead(url=stored.reference))


@router.post(
    "/uploads/signature",
    response_model=ApiResponse[DocumentUploadRead],
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_perm(PERM_EVIDENCE_WRITE))],
)
def upload_signature(
    service: Service,
    signature: Annotated[UploadFile | None, File()] = None,
) -> ApiResponse[DocumentUploadRead]:
    incoming = read_upload(signature, SIGNATURE_POLICY) if signature is not None else None
    stored = service.upload_document(StorageKind.SIGNATURE, incoming)
    return ApiResponse(message="Signature uploaded successfully", data=DocumentUploadRead(url=stored.reference))
