from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, Request

from ptw.api.deps import CurrentActor
from ptw.domain.models import ApiResponse, NotificationRead, UnreadCountRead
from ptw.services.notification_service import NotificationService

router = APIRouter()


def get_notification_service(request: Request) -> NotificationService:
    return NotificationService(request.app.state.engine)


Service = Annotated[NotificationService, Depends(get_notification_service)]


@router.get("", response_model=ApiResponse[list[NotificationRead]])
def list_notifications(
    actor: CurrentActor,
    service: Service,
    unread_only: bool = False,
) -> ApiResponse[list[NotificationRead]]:
    rows = service.list_notifications(actor.user_id, unread_only=unread_only)
    return ApiResponse(data=[NotificationRead.model_validate(item) for item in rows])


@router.get("/unread-count", response_model=ApiResponse[UnreadCountRead])
def unread_count(actor: CurrentActor, service: Service) -> ApiResponse[UnreadCountRead]:
    return ApiResponse(data=UnreadCountRead(unread=service.unread_count(actor.user_id)))


@router.post("/read-all", response_model=ApiResponse[UnreadCountRead])
def mark_all_read(actor: CurrentActor, service: Service) -> ApiResponse[UnreadCountRead]:
    updated = service.mark_all_read(actor.user_id)
    return ApiResponse(message=f"Marked {updated} notification(s) as read", data=UnreadCountRead(unread=0))


@router.post("/{notification_id}/read", response_model=ApiResponse[NotificationRead])
def mark_read(notification_id: int, actor: CurrentActor, service: Service) -> ApiResponse[NotificationRead]:
    notification = service.mark_read(actor.user_id, notification_id)
    return ApiResponse(data=NotificationRead.model_validate(notification))
