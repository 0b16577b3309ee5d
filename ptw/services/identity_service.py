from __future__ import annotations

import structlog
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, func, select

from ptw.domain.errors import AuthError, ConflictError, NotFoundError
from ptw.domain.models import (
    BootstrapAdminRequest,
    Site,
    User,
    UserCreate,
    UserUpdate,
)
from ptw.domain.permissions import UserRole
from ptw.infra.auth import create_access_token, hash_password
from ptw.infra.db import open_session

logger = structlog.get_logger(__name__)


class IdentityService:
    def __init__(self, engine: Engine) -> None:
        self._engine = engine

    def _session(self) -> Session:
        return open_session(self._engine)

    def _ensure_site(self, session: Session, site_id: int | None) -> None:
        if site_id is not None and session.get(Site, site_id) is None:
            raise NotFoundError("Site not found", site_id=site_id)

    def bootstrap_admin(self, payload: BootstrapAdminRequest) -> User:
        with self._session() as session:
            existing = session.exec(select(func.count()).select_from(User)).one()
            if existing:
                raise ConflictError("system already initialized")
            admin = User(
                login_id=payload.login_id,
                full_name=payload.full_name,
                email=payload.email,
                role=UserRole.ADMIN,
                password_hash=hash_password(payload.password),
                is_active=True,
            )
            session.add(admin)
            session.commit()
            session.refresh(admin)
        logger.info("admin_bootstrapped", user_id=admin.id)
        return admin

    def login(self, login_id: str, password: str) -> tuple[User, str]:
        with self._session() as session:
            user = session.exec(select(User).where(User.login_id == login_id)).first()
            if user is None:
                raise AuthError("invalid credentials")
            if not user.is_active:
                raise AuthError("user disabled")
            if user.password_hash != hash_password(password):
                raise AuthError("invalid credentials")
        assert user.id is not None
        token = create_access_token(user_id=user.id, role=user.role)
        return user, token

    def create_user(self, payload: UserCreate) -> User:
        with self._session() as session:
            self._ensure_site(session, payload.site_id)
            user = User(
                login_id=payload.login_id,
                full_name=payload.full_name,
                email=payload.email,
                role=payload.role,
                department=payload.department,
                site_id=payload.site_id,
                password_hash=hash_password(payload.password),
            )
            session.add(user)
            try:
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                raise ConflictError("login_id already exists") from exc
            session.refresh(user)
            return user

    def list_users(self, role: UserRole | None = None) -> list[User]:
        with self._session() as session:
            statement = select(User)
            if role is not None:
                statement = statement.where(User.role == role)
            return list(session.exec(statement.order_by(col(User.id))).all())

    def get_user(self, user_id: int) -> User:
        with self._session() as session:
            user = session.get(User, user_id)
            if user is None:
                raise NotFoundError("User not found", user_id=user_id)
            return user

    def update_user(self, user_id: int, payload: UserUpdate) -> User:
        with self._session() as session:
            user = session.get(User, user_id)
            if user is None:
                raise NotFoundError("User not found", user_id=user_id)
            changes = payload.model_dump(exclude_unset=True, exclude={"password"})
            if "site_id" in changes:
                self._ensure_site(session, changes["site_id"])
            for key, value in changes.items():
                if value is None and key in {"full_name", "email", "role", "is_active"}:
                    continue
                setattr(user, key, value)
            if payload.password is not None:
                user.password_hash = hash_password(payload.password)
            session.add(user)
            session.commit()
            session.refresh(user)
            return user
