from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, File, Form, Query, Request, UploadFile, status

from ptw.api.deps import CurrentActor, require_perm
from ptw.api.routers.evidence import get_evidence_service, read_batch
from ptw.domain.models import (
    ApiResponse,
    ClosureResultRead,
    ExtensionDecisionRequest,
    ExtensionRead,
    ExtensionRequest,
    PermitApproveRequest,
    PermitCloseRequest,
    PermitCreate,
    PermitDetailRead,
    PermitRead,
    PermitReasonRequest,
    PermitRejectRequest,
    PermitUpdate,
)
from ptw.domain.permissions import PERM_PERMIT_APPROVE, PERM_PERMIT_READ, PERM_PERMIT_WRITE
from ptw.domain.state_machine import PermitStatus
from ptw.services.permit_service import PermitService

router = APIRouter()


def get_permit_service(request: Request) -> PermitService:
    return PermitService(request.app.state.engine, get_evidence_service(request), request.app.state.event_bus)


Service = Annotated[PermitService, Depends(get_permit_service)]


@router.post(
    "/permits",
    response_model=ApiResponse[PermitRead],
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_perm(PERM_PERMIT_WRITE))],
)
def create_permit(payload: PermitCreate, actor: CurrentActor, service: Service) -> ApiResponse[PermitRead]:
    permit = service.create_permit(actor, payload)
    return ApiResponse(message="Permit created successfully", data=PermitRead.model_validate(permit))


@router.get(
    "/permits",
    response_model=ApiResponse[list[PermitRead]],
    dependencies=[Depends(require_perm(PERM_PERMIT_READ))],
)
def list_permits(
    actor: CurrentActor,
    service: Service,
    status_filter: Annotated[PermitStatus | None, Query(alias="status")] = None,
    site_id: int | None = None,
    mine: bool = False,
) -> ApiResponse[list[PermitRead]]:
    permits = service.list_permits(
        status=status_filter,
        site_id=site_id,
        created_by=actor.user_id if mine else None,
    )
    return ApiResponse(data=[PermitRead.model_validate(item) for item in permits])


@router.get(
    "/permits/{permit_id}",
    response_model=ApiResponse[PermitDetailRead],
    dependencies=[Depends(require_perm(PERM_PERMIT_READ))],
)
def get_permit(permit_id: int, service: Service) -> ApiResponse[PermitDetailRead]:
    return ApiResponse(data=service.get_permit_detail(permit_id))


@router.put(
    "/permits/{permit_id}",
    response_model=ApiResponse[PermitRead],
    dependencies=[Depends(require_perm(PERM_PERMIT_WRITE))],
)
def update_permit(
    permit_id: int,
    payload: PermitUpdate,
    actor: CurrentActor,
    service: Service,
) -> ApiResponse[PermitRead]:
    permit = service.update_permit(permit_id, actor, payload)
    return ApiResponse(message="Permit updated successfully", data=PermitRead.model_validate(permit))


@router.delete(
    "/permits/{permit_id}",
    response_model=ApiResponse[None],
    dependencies=[Depends(require_perm(PERM_PERMIT_WRITE))],
)
def delete_permit(permit_id: int, actor: CurrentActor, service: Service) -> ApiResponse[None]:
    service.delete_permit(permit_id, actor)
    return ApiResponse(message="Permit deleted successfully")


@router.post(
    "/permits/{permit_id}/submit",
    response_model=ApiResponse[PermitRead],
    dependencies=[Depends(require_perm(PERM_PERMIT_WRITE))],
)
def submit_permit(permit_id: int, actor: CurrentActor, service: Service) -> ApiResponse[PermitRead]:
    permit = service.submit(permit_id, actor)
    return ApiResponse(message="Permit submitted for approval", data=PermitRead.model_validate(permit))


@router.post(
    "/permits/{permit_id}/approve",
    response_model=ApiResponse[PermitRead],
    dependencies=[Depends(require_perm(PERM_PERMIT_APPROVE))],
)
def approve_permit(
    permit_id: int,
    actor: CurrentActor,
    service: Service,
    payload: PermitApproveRequest | None = None,
) -> ApiResponse[PermitRead]:
    permit = service.approve(permit_id, actor, payload or PermitApproveRequest())
    return ApiResponse(message="Approval recorded", data=PermitRead.model_validate(permit))


@router.post(
    "/permits/{permit_id}/reject",
    response_model=ApiResponse[PermitRead],
    dependencies=[Depends(require_perm(PERM_PERMIT_APPROVE))],
)
def reject_permit(
    permit_id: int,
    payload: PermitRejectRequest,
    actor: CurrentActor,
    service: Service,
) -> ApiResponse[PermitRead]:
    permit = service.reject(permit_id, actor, payload)
    return ApiResponse(message="Permit rejected", data=PermitRead.model_validate(permit))


@router.post(
    "/permits/{permit_id}/request-extension",
    response_model=ApiResponse[ExtensionRead],
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_perm(PERM_PERMIT_WRITE))],
)
def request_extension(
    permit_id: int,
    payload: ExtensionRequest,
    actor: CurrentActor,
    service: Service,
) -> ApiResponse[ExtensionRead]:
    extension = service.request_extension(permit_id, actor, payload)
    return ApiResponse(message="Extension requested", data=ExtensionRead.model_validate(extension))


@router.post(
    "/permits/{permit_id}/extension/approve",
    response_model=ApiResponse[PermitRead],
    dependencies=[Depends(require_perm(PERM_PERMIT_APPROVE))],
)
def approve_extension(
    permit_id: int,
    actor: CurrentActor,
    service: Service,
    payload: ExtensionDecisionRequest | None = None,
) -> ApiResponse[PermitRead]:
    comments = payload.comments if payload is not None else None
    permit = service.approve_extension(permit_id, actor, comments)
    return ApiResponse(message="Extension approved", data=PermitRead.model_validate(permit))


@router.post(
    "/permits/{permit_id}/extension/reject",
    response_model=ApiResponse[PermitRead],
    dependencies=[Depends(require_perm(PERM_PERMIT_APPROVE))],
)
def reject_extension(
    permit_id: int,
    actor: CurrentActor,
    service: Service,
    payload: ExtensionDecisionRequest | None = None,
) -> ApiResponse[PermitRead]:
    comments = payload.comments if payload is not None else None
    permit = service.reject_extension(permit_id, actor, comments)
    return ApiResponse(message="Extension rejected", data=PermitRead.model_validate(permit))


@router.post(
    "/permits/{permit_id}/suspend",
    response_model=ApiResponse[PermitRead],
    dependencies=[Depends(require_perm(PERM_PERMIT_READ))],
)
def suspend_permit(
    permit_id: int,
    actor: CurrentActor,
    service: Service,
    payload: PermitReasonRequest | None = None,
) -> ApiResponse[PermitRead]:
    permit = service.suspend(permit_id, actor, payload.reason if payload is not None else None)
    return ApiResponse(message="Permit suspended", data=PermitRead.model_validate(permit))


@router.post(
    "/permits/{permit_id}/resume",
    response_model=ApiResponse[PermitRead],
    dependencies=[Depends(require_perm(PERM_PERMIT_READ))],
)
def resume_permit(
    permit_id: int,
    actor: CurrentActor,
    service: Service,
    payload: PermitReasonRequest | None = None,
) -> ApiResponse[PermitRead]:
    permit = service.resume(permit_id, actor, payload.reason if payload is not None else None)
    return ApiResponse(message="Permit resumed", data=PermitRead.model_validate(permit))


@router.post(
    "/permits/{permit_id}/cancel",
    response_model=ApiResponse[PermitRead],
    dependencies=[Depends(require_perm(PERM_PERMIT_WRITE))],
)
def cancel_permit(
    permit_id: int,
    actor: CurrentActor,
    service: Service,
    payload: PermitReasonRequest | None = None,
) -> ApiResponse[PermitRead]:
    permit = service.cancel(permit_id, actor, payload.reason if payload is not None else None)
    return ApiResponse(message="Permit cancelled", data=PermitRead.model_validate(permit))


@router.post(
    "/permits/{permit_id}/close",
    response_model=ApiResponse[ClosureResultRead],
    dependencies=[Depends(require_perm(PERM_PERMIT_WRITE))],
)
def close_permit(
    permit_id: int,
    actor: CurrentActor,
    service: Service,
    housekeeping_done: Annotated[bool, Form()] = False,
    tools_removed: Annotated[bool, Form()] = False,
    locks_removed: Annotated[bool, Form()] = False,
    area_restored: Annotated[bool, Form()] = False,
    remarks: Annotated[str | None, Form()] = None,
    evidences_data: Annotated[str | None, Form()] = None,
    evidences: Annotated[list[UploadFile] | None, File()] = None,
) -> ApiResponse[ClosureResultRead]:
    checklist = PermitCloseRequest(
        housekeeping_done=housekeeping_done,
        tools_removed=tools_removed,
        locks_removed=locks_removed,
        area_restored=area_restored,
        remarks=remarks,
    )
    files = read_batch(evidences)
    result = service.close(permit_id, actor, checklist, files, evidences_data)
    return ApiResponse(message="Permit closed successfully", data=result)
