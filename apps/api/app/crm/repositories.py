from __future__ import annotations

import uuid

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from app.crm.models import (
    Company,
    Contact,
    Interaction,
    Lead,
    Opportunity,
    Pipeline,
    PipelineStage,
    Tag,
    Task,
    User,
)
from app.platform.security.repository import BaseRepository


class UserRepository(BaseRepository[User]):
    model = User

    def get_active(self, session: Session, tenant_id: uuid.UUID, user_id: uuid.UUID) -> User | None:
        stmt = self.scoped_select(tenant_id).where(User.id == user_id, User.is_active.is_(True))
        return session.scalar(stmt)

    def find_by_email(self, session: Session, tenant_id: uuid.UUID, email: str) -> User | None:
        stmt = self.scoped_select(tenant_id).where(func.lower(User.email) == email.strip().lower())
        return session.scalar(stmt)


class CompanyRepository(BaseRepository[Company]):
    model = Company

    def find_by_name(
        self,
        session: Session,
        tenant_id: uuid.UUID,
        name: str,
        exclude_id: uuid.UUID | None = None,
    ) -> Company | None:
        stmt = self.scoped_select(tenant_id).where(func.lower(Company.name) == name.strip().lower())
        if exclude_id is not None:
            stmt = stmt.where(Company.id != exclude_id)
        return session.scalar(stmt.limit(1))


class ContactRepository(BaseRepository[Contact]):
    model = Contact

    def find_conflict(
        self,
        session: Session,
        tenant_id: uuid.UUID,
        *,
        email: str | None,
        phone: str | None,
        exclude_id: uuid.UUID | None = None,
    ) -> str | None:
        """Name of the first field already used by another contact in the tenant."""

        candidates = (
            ("email", func.lower(Contact.email), email.strip().lower() if email else None),
            ("phone", Contact.phone, phone.strip() if phone else None),
        )
        for field_name, column, value in candidates:
            if not value:
                continue
            stmt = self.scoped_select(tenant_id).where(column == value)
            if exclude_id is not None:
                stmt = stmt.where(Contact.id != exclude_id)
            if session.scalar(stmt.limit(1)) is not None:
                return field_name
        return None


class LeadRepository(BaseRepository[Lead]):
    model = Lead


class TagRepository(BaseRepository[Tag]):
    model = Tag

    def find_by_name(self, session: Session, tenant_id: uuid.UUID, name: str) -> Tag | None:
        return session.scalar(self.scoped_select(tenant_id).where(Tag.name == name.strip()))


class PipelineRepository(BaseRepository[Pipeline]):
    model = Pipeline


class PipelineStageRepository(BaseRepository[PipelineStage]):
    model = PipelineStage

    def list_for_pipeline(self, session: Session, tenant_id: uuid.UUID, pipeline_id: uuid.UUID) -> list[PipelineStage]:
        stmt = (
            self.scoped_select(tenant_id)
            .where(PipelineStage.pipeline_id == pipeline_id)
            .order_by(PipelineStage.position.asc())
        )
        return list(session.scalars(stmt).all())

    def next_position(self, session: Session, tenant_id: uuid.UUID, pipeline_id: uuid.UUID) -> int:
        stmt = select(func.coalesce(func.max(PipelineStage.position), 0)).where(
            PipelineStage.pipeline_id == pipeline_id,
            PipelineStage.tenant_id == tenant_id,
        )
        return int(session.scalar(stmt) or 0) + 1


class OpportunityRepository(BaseRepository[Opportunity]):
    model = Opportunity


class TaskRepository(BaseRepository[Task]):
    model = Task


class InteractionRepository(BaseRepository[Interaction]):
    model = Interaction


users = UserRepository()
companies = CompanyRepository()
contacts = ContactRepository()
leads = LeadRepository()
tags = TagRepository()
pipelines = PipelineRepository()
pipeline_stages = PipelineStageRepository()
opportunities = OpportunityRepository()
tasks = TaskRepository()
interactions = InteractionRepository()
