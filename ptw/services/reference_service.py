from __future__ import annotations

from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from ptw.domain.errors import ConflictError, NotFoundError, ValidationError
from ptw.domain.models import (
    ApprovalPolicy,
    ApprovalPolicyCreate,
    Permit,
    Site,
    SiteCreate,
    SiteUpdate,
    Vendor,
    VendorCreate,
)
from ptw.infra.db import open_session
from ptw.services.permit_repository import PermitRepository


class ReferenceService:
    """Sites, vendors and the per-site/per-type approval policies."""

    def __init__(self, engine: Engine) -> None:
        self._engine = engine

    def _session(self) -> Session:
        return open_session(self._engine)

    def create_site(self, payload: SiteCreate) -> Site:
        with self._session() as session:
            site = Site(**payload.model_dump())
            session.add(site)
            try:
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                raise ConflictError("site_code already exists") from exc
            session.refresh(site)
            return site

    def list_sites(self, active_only: bool = False) -> list[Site]:
        with self._session() as session:
            statement = select(Site)
            if active_only:
                statement = statement.where(Site.is_active == True)  # noqa: E712
            return list(session.exec(statement.order_by(col(Site.site_code))).all())

    def get_site(self, site_id: int) -> Site:
        with self._session() as session:
            site = session.get(Site, site_id)
            if site is None:
                raise NotFoundError("Site not found", site_id=site_id)
            return site

    def update_site(self, site_id: int, payload: SiteUpdate) -> Site:
        with self._session() as session:
            site = session.get(Site, site_id)
            if site is None:
                raise NotFoundError("Site not found", site_id=site_id)
            for key, value in payload.model_dump(exclude_unset=True).items():
                if value is None and key in {"name", "is_active"}:
                    continue
                setattr(site, key, value)
            session.add(site)
            session.commit()
            session.refresh(site)
            return site

    def delete_site(self, site_id: int) -> None:
        with self._session() as session:
            site = session.get(Site, site_id)
            if site is None:
                raise NotFoundError("Site not found", site_id=site_id)
            in_use = session.exec(select(Permit.id).where(Permit.site_id == site_id).limit(1)).first()
            if in_use is not None:
                raise ConflictError("site is referenced by permits", site_id=site_id)
            session.delete(site)
            session.commit()

    def create_vendor(self, payload: VendorCreate) -> Vendor:
        with self._session() as session:
            vendor = Vendor(**payload.model_dump())
            session.add(vendor)
            try:
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                raise ConflictError("vendor already exists") from exc
            session.refresh(vendor)
            return vendor

    def list_vendors(self) -> list[Vendor]:
        with self._session() as session:
            return list(session.exec(select(Vendor).order_by(col(Vendor.company_name))).all())

    def create_policy(self, payload: ApprovalPolicyCreate) -> ApprovalPolicy:
        with self._session() as session:
            if payload.site_id is None and payload.permit_type is None:
                raise ValidationError("approval policy needs a site_id or a permit_type")
            if payload.site_id is not None and session.get(Site, payload.site_id) is None:
                raise NotFoundError("Site not found", site_id=payload.site_id)
            # The unique constraint does not cover NULL columns.
            if PermitRepository(session).policy_for(payload.site_id, payload.permit_type) is not None:
                raise ConflictError("approval policy already exists for this site and permit type")
            roles: list[str] = []
            for role in payload.required_roles:
                if str(role) not in roles:
                    roles.append(str(role))
            policy = ApprovalPolicy(
                site_id=payload.site_id,
                permit_type=payload.permit_type,
                required_roles=roles,
            )
            session.add(policy)
            try:
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                raise ConflictError("approval policy already exists for this site and permit type") from exc
            session.refresh(policy)
            return policy

    def list_policies(self) -> list[ApprovalPolicy]:
        with self._session() as session:
            return list(session.exec(select(ApprovalPolicy).order_by(col(ApprovalPolicy.id))).all())
