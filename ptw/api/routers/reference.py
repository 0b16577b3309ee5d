from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, Request, status

from ptw.api.deps import Claims, require_perm
from ptw.domain.models import (
    ApiResponse,
    ApprovalPolicyCreate,
    ApprovalPolicyRead,
    SiteCreate,
    SiteRead,
    SiteUpdate,
    VendorCreate,
    VendorRead,
)
from ptw.domain.permissions import PERM_REFERENCE_WRITE
from ptw.services.reference_service import ReferenceService

router = APIRouter()


def get_reference_service(request: Request) -> ReferenceService:
    return ReferenceService(request.app.state.engine)


Service = Annotated[ReferenceService, Depends(get_reference_service)]


@router.get("/sites", response_model=ApiResponse[list[SiteRead]])
def list_sites(_: Claims, service: Service, active_only: bool = False) -> ApiResponse[list[SiteRead]]:
    return ApiResponse(data=[SiteRead.model_validate(item) for item in service.list_sites(active_only)])


@router.post(
    "/sites",
    response_model=ApiResponse[SiteRead],
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_perm(PERM_REFERENCE_WRITE))],
)
def create_site(payload: SiteCreate, service: Service) -> ApiResponse[SiteRead]:
    return ApiResponse(message="Site created", data=SiteRead.model_validate(service.create_site(payload)))


@router.get("/sites/{site_id}", response_model=ApiResponse[SiteRead])
def get_site(site_id: int, _: Claims, service: Service) -> ApiResponse[SiteRead]:
    return ApiResponse(data=SiteRead.model_validate(service.get_site(site_id)))


@router.patch(
    "/sites/{site_id}",
    response_model=ApiResponse[SiteRead],
    dependencies=[Depends(require_perm(PERM_REFERENCE_WRITE))],
)
def update_site(site_id: int, payload: SiteUpdate, service: Service) -> ApiResponse[SiteRead]:
    site = service.update_site(site_id, payload)
    return ApiResponse(message="Site updated", data=SiteRead.model_validate(site))


@router.delete(
    "/sites/{site_id}",
    response_model=ApiResponse[None],
    dependencies=[Depends(require_perm(PERM_REFERENCE_WRITE))],
)
def delete_site(site_id: int, service: Service) -> ApiResponse[None]:
    service.delete_site(site_id)
    return ApiResponse(message="Site deleted")


@router.get("/vendors", response_model=ApiResponse[list[VendorRead]])
def list_vendors(_: Claims, service: Service) -> ApiResponse[list[VendorRead]]:
    return ApiResponse(data=[VendorRead.model_validate(item) for item in service.list_vendors()])


@router.post(
    "/vendors",
    response_model=ApiResponse[VendorRead],
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_perm(PERM_REFERENCE_WRITE))],
)
def create_vendor(payload: VendorCreate, service: Service) -> ApiResponse[VendorRead]:
    return ApiResponse(message="Vendor created", data=VendorRead.model_validate(service.create_vendor(payload)))


@router.get("/approval-policies", response_model=ApiResponse[list[ApprovalPolicyRead]])
def list_policies(_: Claims, service: Service) -> ApiResponse[list[ApprovalPolicyRead]]:
    return ApiResponse(data=[ApprovalPolicyRead.model_validate(item) for item in service.list_policies()])


@router.post(
    "/approval-policies",
    response_model=ApiResponse[ApprovalPolicyRead],
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_perm(PERM_REFERENCE_WRITE))],
)
def create_policy(payload: ApprovalPolicyCreate, service: Service) -> ApiResponse[ApprovalPolicyRead]:
    policy = service.create_policy(payload)
    return ApiResponse(message="Approval policy created", data=ApprovalPolicyRead.model_validate(policy))
