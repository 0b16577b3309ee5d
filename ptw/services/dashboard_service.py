from __future__ import annotations

from sqlalchemy import func
from sqlalchemy.engine import Engine
from sqlmodel import Session, select

from ptw.domain.models import DashboardStatsRead, Site, SiteCount, StatusCount, User
from ptw.domain.state_machine import TERMINAL_STATES, PermitStatus
from ptw.infra.db import open_session
from ptw.services.permit_repository import PermitRepository


class DashboardService:
    def __init__(self, engine: Engine) -> None:
        self._engine = engine

    def _session(self) -> Session:
        return open_session(self._engine)

    def get_stats(self, *, site_id: int | None = None, created_by: int | None = None) -> DashboardStatsRead:
        """Permit counts for every status (zeros included), narrowed to one
        site and/or one creator when given."""
        with self._session() as session:
            repo = PermitRepository(session)
            counts = repo.count_by_status(site_id=site_id, created_by=created_by)
            by_site = repo.count_by_site(site_id=site_id, created_by=created_by)
            total_sites = session.exec(select(func.count()).select_from(Site)).one()
            active_users = session.exec(
                select(func.count()).select_from(User).where(User.is_active == True)  # noqa: E712
            ).one()
        by_status = [StatusCount(status=item, count=counts.get(item, 0)) for item in PermitStatus]
        total = sum(item.count for item in by_status)
        closed = counts.get(PermitStatus.CLOSED, 0)
        return DashboardStatsRead(
            total_permits=total,
            open_permits=total - sum(counts.get(item, 0) for item in TERMINAL_STATES),
            closed_permits=closed,
            total_sites=total_sites,
            active_users=active_users,
            by_status=by_status,
            by_site=[SiteCount(site_id=site, site_name=name, count=count) for site, name, count in by_site],
        )
