from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, Request

from ptw.api.deps import CurrentActor, require_perm
from ptw.domain.models import ApiResponse, DashboardStatsRead
from ptw.domain.permissions import PERM_PERMIT_READ
from ptw.services.dashboard_service import DashboardService

router = APIRouter()


def get_dashboard_service(request: Request) -> DashboardService:
    return DashboardService(request.app.state.engine)


Service = Annotated[DashboardService, Depends(get_dashboard_service)]


@router.get(
    "/stats",
    response_model=ApiResponse[DashboardStatsRead],
    dependencies=[Depends(require_perm(PERM_PERMIT_READ))],
)
def get_stats(
    actor: CurrentActor,
    service: Service,
    site_id: int | None = None,
    mine: bool = False,
) -> ApiResponse[DashboardStatsRead]:
    stats = service.get_stats(site_id=site_id, created_by=actor.user_id if mine else None)
    return ApiResponse(data=stats)
