from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, Request, status

from ptw.api.deps import CurrentActor, require_perm
from ptw.domain.models import (
    ApiResponse,
    BootstrapAdminRequest,
    LoginRequest,
    TokenResponse,
    UserCreate,
    UserRead,
    UserUpdate,
)
from ptw.domain.permissions import PERM_IDENTITY_READ, PERM_IDENTITY_WRITE, UserRole
from ptw.services.identity_service import IdentityService

router = APIRouter()


def get_identity_service(request: Request) -> IdentityService:
    return IdentityService(request.app.state.engine)


Service = Annotated[IdentityService, Depends(get_identity_service)]


@router.post(
    "/bootstrap-admin",
    response_model=ApiResponse[UserRead],
    status_code=status.HTTP_201_CREATED,
)
def bootstrap_admin(payload: BootstrapAdminRequest, service: Service) -> ApiResponse[UserRead]:
    user = service.bootstrap_admin(payload)
    return ApiResponse(message="Admin user created", data=UserRead.model_validate(user))


@router.post("/login", response_model=ApiResponse[TokenResponse])
def login(payload: LoginRequest, service: Service) -> ApiResponse[TokenResponse]:
    user, token = service.login(payload.login_id, payload.password)
    return ApiResponse(
        message="Login successful",
        data=TokenResponse(access_token=token, user=UserRead.model_validate(user)),
    )


@router.get("/me", response_model=ApiResponse[UserRead])
def me(actor: CurrentActor, service: Service) -> ApiResponse[UserRead]:
    return ApiResponse(data=UserRead.model_validate(service.get_user(actor.user_id)))


@router.get(
    "/users",
    response_model=ApiResponse[list[UserRead]],
    dependencies=[Depends(require_perm(PERM_IDENTITY_READ))],
)
def list_users(service: Service, role: UserRole | None = None) -> ApiResponse[list[UserRead]]:
    return ApiResponse(data=[UserRead.model_validate(item) for item in service.list_users(role)])


@router.post(
    "/users",
    response_model=ApiResponse[UserRead],
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_perm(PERM_IDENTITY_WRITE))],
)
def create_user(payload: UserCreate, service: Service) -> ApiResponse[UserRead]:
    user = service.create_user(payload)
    return ApiResponse(message="User created", data=UserRead.model_validate(user))


@router.get(
    "/users/{user_id}",
    response_model=ApiResponse[UserRead],
    dependencies=[Depends(require_perm(PERM_IDENTITY_READ))],
)
def get_user(user_id: int, service: Service) -> ApiResponse[UserRead]:
    return ApiResponse(data=UserRead.model_validate(service.get_user(user_id)))


@router.patch(
    "/users/{user_id}",
    response_model=ApiResponse[UserRead],
    dependencies=[Depends(require_perm(PERM_IDENTITY_WRITE))],
)
def update_user(user_id: int, payload: UserUpdate, service: Service) -> ApiResponse[UserRead]:
    user = service.update_user(user_id, payload)
    return ApiResponse(message="User updated", data=UserRead.model_validate(user))
