from __future__ import annotations

import logging
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import timedelta
from decimal import Decimal
from typing import Any

from sqlalchemy import Row, and_, delete, func, inspect as sa_inspect, select, update
from sqlalchemy.orm import Session, aliased

from app.core.auth import hash_password
from app.core.config import get_settings
from app.core.errors import ConflictError, CRMError, ForbiddenError, NotFoundError, TransactionFailure, ValidationFailure
from app.crm import repositories
from app.crm.dedup import IncomingContact, apply_tags, lead_tag_names, resolve_contact, unlink_tag
from app.crm.models import (
    Company,
    Contact,
    Interaction,
    Lead,
    LeadTag,
    Opportunity,
    Pipeline,
    PipelineStage,
    Tag,
    Task,
    User,
    utcnow,
)
from app.crm.query import ListSpec, Page, build_list_query, paginate, task_order
from app.crm.schemas import (
    CompanyCreate,
    CompanyListItem,
    CompanyListParams,
    CompanyStats,
    CompanyUpdate,
    ContactCreate,
    ContactListItem,
    ContactListParams,
    ContactSearchParams,
    ContactSourceStats,
    ContactUpdate,
    InteractionCreate,
    InteractionListItem,
    InteractionListParams,
    InteractionStatsRow,
    InteractionTimelineParams,
    LeadCreate,
    LeadDetail,
    LeaderboardRow,
    LeadListItem,
    LeadListParams,
    LeadRead,
    LeadStatsRow,
    LeadUpdate,
    OpportunityCreate,
    OpportunityListItem,
    OpportunityListParams,
    OpportunityStats,
    OpportunityUpdate,
    PipelineCreate,
    PipelineRead,
    PipelineStageCreate,
    PipelineStageRead,
    TagListParams,
    TagRead,
    TaskCreate,
    TaskListItem,
    TaskListParams,
    TaskStatsRow,
    TaskUpdate,
    UserCreate,
    UserListParams,
    UserRead,
    UserRoleStats,
    UserUpdate,
)
from app.platform.security.context import TenantContext
from app.services.activity_log import record_activity


logger = logging.getLogger("app.crm")

LeadOwner = aliased(User, name="lead_owner")
TaskAssignee = aliased(User, name="task_assignee")
InteractionCreator = aliased(User, name="interaction_creator")

_CONTACT_SOURCES = {"manual", "import", "api", "fairex"}


@contextmanager
def unit_of_work(session: Session, failure_message: str) -> Iterator[None]:
    """Commit on success; roll back every write of the block on any failure."""

    try:
        yield
        session.commit()
    except CRMError:
        session.rollback()
        raise
    except Exception as exc:
        session.rollback()
        logger.error("crm.transaction_failed", exc_info=True, extra={"error": str(exc)})
        raise TransactionFailure(failure_message) from exc


def apply_partial_update(entity: Any, changes: dict[str, Any], required: set[str]) -> None:
    """Apply only the fields present in `changes`; explicit null is refused for `required`."""

    cleared = sorted(name for name in required if name in changes and changes[name] is None)
    if cleared:
        raise ValidationFailure(
            "Validation failed",
            errors=[{"field": name, "message": "may not be null"} for name in cleared],
        )
    for key, value in changes.items():
        setattr(entity, key, value)
    entity.updated_at = utcnow()


def _merge_row(row: Row[Any]) -> dict[str, Any]:
    entity = row[0]
    values = {attr.key: getattr(entity, attr.key) for attr in sa_inspect(entity).mapper.column_attrs}
    values.update(zip(row._fields[1:], row[1:]))
    return values


def _ensure_reference(
    session: Session,
    repository: repositories.BaseRepository[Any],
    tenant_id: uuid.UUID,
    value: uuid.UUID | None,
    field: str,
    message: str,
) -> None:
    if value is not None and not repository.exists(session, tenant_id, value):
        raise ValidationFailure.for_field(field, message)


def _ensure_active_user(session: Session, tenant_id: uuid.UUID, value: uuid.UUID | None, field: str, message: str) -> None:
    if value is not None and repositories.users.get_active(session, tenant_id, value) is None:
        raise ValidationFailure.for_field(field, message)


def _to_page(page: Page[Row[Any]], read_model: type[Any]) -> Page[Any]:
    items = [read_model.model_validate(_merge_row(row)) for row in page.items]
    return Page(items=items, total=page.total, page=page.page, limit=page.limit)


class LeadService:
    entity_type = "lead"
    required_fields = {"title", "status", "stage", "score", "source"}
    list_spec = ListSpec(
        equality={
            "status": Lead.status,
            "stage": Lead.stage,
            "source": Lead.source,
            "owner_user_id": Lead.owner_user_id,
            "exhibition_id": Lead.exhibition_id,
        },
        ranges={"created_after": (Lead.created_at, "gte"), "created_before": (Lead.created_at, "lte")},
        search=(Lead.title, Contact.first_name, Contact.last_name, Contact.email),
        sort={"created_at": Lead.created_at, "updated_at": Lead.updated_at, "score": Lead.score},
    )

    def create_lead(self, session: Session, ctx: TenantContext, dto: LeadCreate) -> LeadDetail:
        with unit_of_work(session, "Failed to create lead"):
            lead = self._create(session, ctx, dto)
        return self.get_lead(session, ctx, lead.id)

    def list_leads(self, session: Session, ctx: TenantContext, params: LeadListParams) -> Page[LeadListItem]:
        stmt = repositories.leads.apply_scope_query(self._base_query(), ctx.tenant_id)
        stmt = build_list_query(stmt, self.list_spec, params)
        return _to_page(paginate(session, stmt, params.page, params.limit), LeadListItem)

    def get_lead(self, session: Session, ctx: TenantContext, lead_id: uuid.UUID) -> LeadDetail:
        stmt = self._base_query().add_columns(
            LeadOwner.email.label("owner_email"),
            Company.website.label("company_website"),
        )
        stmt = repositories.leads.apply_scope_query(stmt, ctx.tenant_id).where(Lead.id == lead_id)
        row = session.execute(stmt).first()
        if row is None:
            raise NotFoundError("Lead not found")
        detail = LeadDetail.model_validate(_merge_row(row))
        detail.tags = lead_tag_names(session, ctx.tenant_id, lead_id)
        return detail

    def update_lead(self, session: Session, ctx: TenantContext, lead_id: uuid.UUID, dto: LeadUpdate) -> LeadDetail:
        with unit_of_work(session, "Failed to update lead"):
            lead = self._get_owned(session, ctx, lead_id)
            changes = dto.model_dump(exclude_unset=True)
            _ensure_active_user(session, ctx.tenant_id, changes.get("owner_user_id"), "owner_user_id", "Invalid owner user ID")
            _ensure_reference(
                session,
                repositories.contacts,
                ctx.tenant_id,
                changes.get("contact_id"),
                "contact_id",
                "Invalid contact ID",
            )
            before = LeadRead.model_validate(lead).model_dump(mode="json")
            apply_partial_update(lead, changes, self.required_fields)
            session.flush()
            if changes:
                record_activity(
                    session,
                    tenant_id=ctx.tenant_id,
                    entity=self.entity_type,
                    entity_id=lead.id,
                    action="updated",
                    before=before,
                    after=LeadRead.model_validate(lead).model_dump(mode="json"),
                    actor_user_id=ctx.user_id,
                )
        return self.get_lead(session, ctx, lead_id)

    def delete_lead(self, session: Session, ctx: TenantContext, lead_id: uuid.UUID) -> bool:
        with unit_of_work(session, "Failed to delete lead"):
            session.execute(
                delete(LeadTag)
                .where(LeadTag.lead_id == lead_id, LeadTag.tenant_id == ctx.tenant_id)
                .execution_options(synchronize_session=False)
            )
            removed = repositories.leads.delete(session, ctx, lead_id)
            if removed:
                record_activity(
                    session,
                    tenant_id=ctx.tenant_id,
                    entity=self.entity_type,
                    entity_id=lead_id,
                    action="deleted",
                    actor_user_id=ctx.user_id,
                )
        return removed

    def get_stats(self, session: Session, ctx: TenantContext) -> list[LeadStatsRow]:
        cutoff = utcnow() - timedelta(days=30)
        count = func.count(Lead.id)
        stmt = (
            select(
                Lead.status,
                Lead.stage,
                count.label("count"),
                func.avg(Lead.score).label("avg_score"),
                func.count(Lead.id).filter(Lead.created_at >= cutoff).label("recent_count"),
            )
            .where(Lead.tenant_id == ctx.tenant_id)
            .group_by(Lead.status, Lead.stage)
            .order_by(count.desc(), Lead.status.asc())
        )
        return [
            LeadStatsRow(
                status=row.status,
                stage=row.stage,
                count=row.count,
                avg_score=round(float(row.avg_score), 2) if row.avg_score is not None else None,
                recent_count=row.recent_count,
            )
            for row in session.execute(stmt)
        ]

    def get_leaderboard(self, session: Session, ctx: TenantContext, limit: int = 10) -> list[LeaderboardRow]:
        total = func.count(Lead.id)
        converted = func.count(Lead.id).filter(Lead.status == "converted")
        stmt = (
            select(
                User.id,
                User.name,
                User.email,
                total.label("total_leads"),
                converted.label("converted_leads"),
                func.avg(Lead.score).label("avg_score"),
            )
            .join(Lead, and_(Lead.owner_user_id == User.id, Lead.tenant_id == User.tenant_id))
            .where(User.tenant_id == ctx.tenant_id, User.is_active.is_(True))
            .group_by(User.id, User.name, User.email)
            .order_by(converted.desc(), total.desc())
            .limit(limit)
        )
        return [
            LeaderboardRow(
                owner_user_id=row.id,
                owner_name=row.name,
                owner_email=row.email,
                total_leads=row.total_leads,
                converted_leads=row.converted_leads,
                avg_score=round(float(row.avg_score), 2) if row.avg_score is not None else None,
                conversion_rate=round(row.converted_leads / row.total_leads * 100, 2) if row.total_leads else 0.0,
            )
            for row in session.execute(stmt)
        ]

    def add_tags(self, session: Session, ctx: TenantContext, lead_id: uuid.UUID, names: list[str]) -> list[str]:
        with unit_of_work(session, "Failed to add tags"):
            self._get_owned(session, ctx, lead_id)
            apply_tags(session, ctx.tenant_id, lead_id, names)
        return lead_tag_names(session, ctx.tenant_id, lead_id)

    def remove_tag(self, session: Session, ctx: TenantContext, lead_id: uuid.UUID, tag_name: str) -> list[str]:
        with unit_of_work(session, "Failed to remove tag"):
            self._get_owned(session, ctx, lead_id)
            if not unlink_tag(session, ctx.tenant_id, lead_id, tag_name):
                raise NotFoundError("Tag not found on this lead")
        return lead_tag_names(session, ctx.tenant_id, lead_id)

    def _create(self, session: Session, ctx: TenantContext, dto: LeadCreate) -> Lead:
        owner_user_id = dto.owner_user_id or ctx.user_id
        _ensure_active_user(session, ctx.tenant_id, owner_user_id, "owner_user_id", "Invalid owner user ID")
        _ensure_reference(session, repositories.contacts, ctx.tenant_id, dto.contact_id, "contact_id", "Invalid contact ID")

        contact_id = dto.contact_id
        if dto.contact is not None:
            contact, _ = resolve_contact(
                session,
                ctx.tenant_id,
                IncomingContact(**dto.contact.model_dump()),
                source=dto.source if dto.source in _CONTACT_SOURCES else "manual",
            )
            contact_id = contact.id

        lead = Lead(
            tenant_id=ctx.tenant_id,
            contact_id=contact_id,
            owner_user_id=owner_user_id,
            title=dto.title.strip(),
            status=dto.status,
            stage=dto.stage,
            score=dto.score,
            source=dto.source,
            exhibition_id=dto.exhibition_id,
            join_id=dto.join_id,
            utm_source=dto.utm_source,
            utm_medium=dto.utm_medium,
            utm_campaign=dto.utm_campaign,
            notes=dto.notes,
        )
        session.add(lead)
        session.flush()

        if dto.tags:
            apply_tags(session, ctx.tenant_id, lead.id, dto.tags)

        record_activity(
            session,
            tenant_id=ctx.tenant_id,
            entity=self.entity_type,
            entity_id=lead.id,
            action="created",
            after=LeadRead.model_validate(lead).model_dump(mode="json"),
            actor_user_id=ctx.user_id,
        )
        return lead

    def _get_owned(self, session: Session, ctx: TenantContext, lead_id: uuid.UUID) -> Lead:
        lead = repositories.leads.get(session, ctx, lead_id)
        if lead is None:
            raise NotFoundError("Lead not found")
        return lead

    def _base_query(self):  # type: ignore[no-untyped-def]
        return (
            select(
                Lead,
                Contact.first_name.label("contact_first_name"),
                Contact.last_name.label("contact_last_name"),
                Contact.email.label("contact_email"),
                Contact.phone.label("contact_phone"),
                Company.name.label("company_name"),
                LeadOwner.name.label("owner_name"),
            )
            .outerjoin(Contact, and_(Contact.id == Lead.contact_id, Contact.tenant_id == Lead.tenant_id))
            .outerjoin(Company, and_(Company.id == Contact.company_id, Company.tenant_id == Lead.tenant_id))
            .outerjoin(LeadOwner, and_(LeadOwner.id == Lead.owner_user_id, LeadOwner.tenant_id == Lead.tenant_id))
        )


class ContactService:
    entity_type = "contact"
    required_fields = {"source"}
    duplicate_message = "Contact with this email or phone already exists"
    list_spec = ListSpec(
        equality={"source": Contact.source, "company_id": Contact.company_id},
        ranges={"created_after": (Contact.created_at, "gte"), "created_before": (Contact.created_at, "lte")},
        search=(Contact.first_name, Contact.last_name, Contact.email, Contact.phone, Company.name),
        search_option="search",
        sort={
            "created_at": Contact.created_at,
            "updated_at": Contact.updated_at,
            "first_name": Contact.first_name,
            "last_name": Contact.last_name,
        },
    )
    quick_search_spec = ListSpec(
        search=(Contact.first_name, Contact.last_name, Contact.email, Contact.phone),
        fixed_order=(Contact.first_name.asc(), Contact.last_name.asc(), Contact.created_at.asc()),
    )

    def create_contact(self, session: Session, ctx: TenantContext, dto: ContactCreate) -> ContactListItem:
        with unit_of_work(session, "Failed to create contact"):
            _ensure_reference(session, repositories.companies, ctx.tenant_id, dto.company_id, "company_id", "Invalid company ID")
            conflict_field = repositories.contacts.find_conflict(
                session,
                ctx.tenant_id,
                email=dto.email,
                phone=dto.phone,
            )
            if conflict_field is not None:
                raise ConflictError(self.duplicate_message, conflict_field)

            contact = Contact(tenant_id=ctx.tenant_id, **dto.model_dump())
            session.add(contact)
            session.flush()
        return self.get_contact(session, ctx, contact.id)

    def list_contacts(self, session: Session, ctx: TenantContext, params: ContactListParams) -> Page[ContactListItem]:
        stmt = repositories.contacts.apply_scope_query(self._base_query(), ctx.tenant_id)
        stmt = build_list_query(stmt, self.list_spec, params)
        return _to_page(paginate(session, stmt, params.page, params.limit), ContactListItem)

    def search_contacts(self, session: Session, ctx: TenantContext, params: ContactSearchParams) -> list[ContactListItem]:
        stmt = repositories.contacts.apply_scope_query(self._base_query(), ctx.tenant_id)
        stmt = build_list_query(stmt, self.quick_search_spec, params).limit(params.limit)
        return [ContactListItem.model_validate(_merge_row(row)) for row in session.execute(stmt)]

    def get_contact(self, session: Session, ctx: TenantContext, contact_id: uuid.UUID) -> ContactListItem:
        stmt = repositories.contacts.apply_scope_query(self._base_query(), ctx.tenant_id).where(Contact.id == contact_id)
        row = session.execute(stmt).first()
        if row is None:
            raise NotFoundError("Contact not found")
        return ContactListItem.model_validate(_merge_row(row))

    def update_contact(
        self,
        session: Session,
        ctx: TenantContext,
        contact_id: uuid.UUID,
        dto: ContactUpdate,
    ) -> ContactListItem:
        with unit_of_work(session, "Failed to update contact"):
            contact = repositories.contacts.get(session, ctx, contact_id)
            if contact is None:
                raise NotFoundError("Contact not found")
            changes = dto.model_dump(exclude_unset=True)
            _ensure_reference(
                session,
                repositories.companies,
                ctx.tenant_id,
                changes.get("company_id"),
                "company_id",
                "Invalid company ID",
            )
            conflict_field = repositories.contacts.find_conflict(
                session,
                ctx.tenant_id,
                email=changes.get("email"),
                phone=changes.get("phone"),
                exclude_id=contact_id,
            )
            if conflict_field is not None:
                raise ConflictError(self.duplicate_message, conflict_field)
            apply_partial_update(contact, changes, self.required_fields)
        return self.get_contact(session, ctx, contact_id)

    def delete_contact(self, session: Session, ctx: TenantContext, contact_id: uuid.UUID) -> bool:
        with unit_of_work(session, "Failed to delete contact"):
            removed = repositories.contacts.delete(session, ctx, contact_id)
        return removed

    def get_stats(self, session: Session, ctx: TenantContext) -> list[ContactSourceStats]:
        cutoff = utcnow() - timedelta(days=30)
        count = func.count(Contact.id)
        stmt = (
            select(
                Contact.source,
                count.label("count"),
                func.count(Contact.id).filter(Contact.created_at >= cutoff).label("recent_count"),
            )
            .where(Contact.tenant_id == ctx.tenant_id)
            .group_by(Contact.source)
            .order_by(count.desc())
        )
        return [ContactSourceStats(source=row.source, count=row.count, recent_count=row.recent_count) for row in session.execute(stmt)]

    def _base_query(self):  # type: ignore[no-untyped-def]
        lead_count = (
            select(func.count(Lead.id))
            .where(Lead.contact_id == Contact.id, Lead.tenant_id == Contact.tenant_id)
            .correlate(Contact)
            .scalar_subquery()
        )
        return select(
            Contact,
            Company.name.label("company_name"),
            Company.website.label("company_website"),
            lead_count.label("lead_count"),
        ).outerjoin(Company, and_(Company.id == Contact.company_id, Company.tenant_id == Contact.tenant_id))


def _company_aggregates() -> dict[str, Any]:
    contact_count = (
        select(func.count(Contact.id))
        .where(Contact.company_id == Company.id, Contact.tenant_id == Company.tenant_id)
        .correlate(Company)
        .scalar_subquery()
        .label("contact_count")
    )
    opportunity_count = (
        select(func.count(Opportunity.id))
        .where(Opportunity.company_id == Company.id, Opportunity.tenant_id == Company.tenant_id)
        .correlate(Company)
        .scalar_subquery()
        .label("opportunity_count")
    )
    total_won_value = (
        select(func.coalesce(func.sum(Opportunity.amount), 0))
        .where(
            Opportunity.company_id == Company.id,
            Opportunity.tenant_id == Company.tenant_id,
            Opportunity.status == "won",
        )
        .correlate(Company)
        .scalar_subquery()
        .label("total_won_value")
    )
    last_contact_date = (
        select(func.max(Interaction.occurred_at))
        .join(Contact, and_(Contact.id == Interaction.contact_id, Contact.tenant_id == Interaction.tenant_id))
        .where(Contact.company_id == Company.id, Interaction.tenant_id == Company.tenant_id)
        .correlate(Company)
        .scalar_subquery()
        .label("last_contact_date")
    )
    return {
        "contact_count": contact_count,
        "opportunity_count": opportunity_count,
        "total_won_value": total_won_value,
        "last_contact_date": last_contact_date,
    }


class CompanyService:
    entity_type = "company"
    required_fields = {"name"}
    duplicate_message = "Company with this name already exists"

    def __init__(self) -> None:
        self._aggregates = _company_aggregates()
        self.list_spec = ListSpec(
            ranges={"created_after": (Company.created_at, "gte"), "created_before": (Company.created_at, "lte")},
            search=(Company.name, Company.website, Company.phone, Company.address),
            search_option="search",
            sort={
                "name": Company.name,
                "created_at": Company.created_at,
                "contact_count": self._aggregates["contact_count"],
                "opportunity_count": self._aggregates["opportunity_count"],
                "total_won_value": self._aggregates["total_won_value"],
            },
        )

    def create_company(self, session: Session, ctx: TenantContext, dto: CompanyCreate) -> CompanyListItem:
        with unit_of_work(session, "Failed to create company"):
            if repositories.companies.find_by_name(session, ctx.tenant_id, dto.name) is not None:
                raise ConflictError(self.duplicate_message, "name")
            company = Company(tenant_id=ctx.tenant_id, **{**dto.model_dump(), "name": dto.name.strip()})
            session.add(company)
            session.flush()
        return self.get_company(session, ctx, company.id)

    def list_companies(self, session: Session, ctx: TenantContext, params: CompanyListParams) -> Page[CompanyListItem]:
        stmt = repositories.companies.apply_scope_query(self._base_query(), ctx.tenant_id)
        stmt = build_list_query(stmt, self.list_spec, params)
        return _to_page(paginate(session, stmt, params.page, params.limit), CompanyListItem)

    def get_company(self, session: Session, ctx: TenantContext, company_id: uuid.UUID) -> CompanyListItem:
        stmt = repositories.companies.apply_scope_query(self._base_query(), ctx.tenant_id).where(Company.id == company_id)
        row = session.execute(stmt).first()
        if row is None:
            raise NotFoundError("Company not found")
        return CompanyListItem.model_validate(_merge_row(row))

    def update_company(
        self,
        session: Session,
        ctx: TenantContext,
        company_id: uuid.UUID,
        dto: CompanyUpdate,
    ) -> CompanyListItem:
        with unit_of_work(session, "Failed to update company"):
            company = repositories.companies.get(session, ctx, company_id)
            if company is None:
                raise NotFoundError("Company not found")
            changes = dto.model_dump(exclude_unset=True)
            if changes.get("name"):
                changes["name"] = changes["name"].strip()
                if repositories.companies.find_by_name(session, ctx.tenant_id, changes["name"], exclude_id=company_id):
                    raise ConflictError(self.duplicate_message, "name")
            apply_partial_update(company, changes, self.required_fields)
        return self.get_company(session, ctx, company_id)

    def delete_company(self, session: Session, ctx: TenantContext, company_id: uuid.UUID) -> bool:
        with unit_of_work(session, "Failed to delete company"):
            for model in (Contact, Opportunity):
                session.execute(
                    update(model)
                    .where(model.company_id == company_id, model.tenant_id == ctx.tenant_id)
                    .values(company_id=None)
                    .execution_options(synchronize_session=False)
                )
            removed = repositories.companies.delete(session, ctx, company_id)
        return removed

    def get_stats(self, session: Session, ctx: TenantContext) -> CompanyStats:
        now = utcnow()
        stmt = select(
            func.count(Company.id).label("total_companies"),
            func.count(Company.id).filter(Company.created_at >= now - timedelta(days=30)).label("new_this_month"),
            func.count(Company.id).filter(Company.created_at >= now - timedelta(days=7)).label("new_this_week"),
        ).where(Company.tenant_id == ctx.tenant_id)
        row = session.execute(stmt).one()
        return CompanyStats(
            total_companies=row.total_companies,
            new_this_month=row.new_this_month,
            new_this_week=row.new_this_week,
        )

    def _base_query(self):  # type: ignore[no-untyped-def]
        return select(Company, *self._aggregates.values())


class OpportunityService:
    entity_type = "opportunity"
    required_fields = {"name", "pipeline_id", "stage_id", "amount", "currency", "status"}
    list_spec = ListSpec(
        equality={
            "status": Opportunity.status,
            "pipeline_id": Opportunity.pipeline_id,
            "stage_id": Opportunity.stage_id,
            "company_id": Opportunity.company_id,
            "contact_id": Opportunity.contact_id,
        },
        ranges={"close_after": (Opportunity.close_date, "gte"), "close_before": (Opportunity.close_date, "lte")},
        search=(Opportunity.name, Contact.first_name, Contact.last_name, Company.name),
        sort={
            "created_at": Opportunity.created_at,
            "updated_at": Opportunity.updated_at,
            "amount": Opportunity.amount,
            "close_date": Opportunity.close_date,
            "name": Opportunity.name,
        },
    )

    def create_opportunity(self, session: Session, ctx: TenantContext, dto: OpportunityCreate) -> OpportunityListItem:
        with unit_of_work(session, "Failed to create opportunity"):
            self._validate_references(session, ctx, dto.model_dump())
            self._validate_stage(session, ctx, dto.pipeline_id, dto.stage_id)
            payload = dto.model_dump()
            payload["currency"] = dto.currency or get_settings().default_currency
            opportunity = Opportunity(tenant_id=ctx.tenant_id, **payload)
            session.add(opportunity)
            session.flush()
        return self.get_opportunity(session, ctx, opportunity.id)

    def list_opportunities(
        self,
        session: Session,
        ctx: TenantContext,
        params: OpportunityListParams,
    ) -> Page[OpportunityListItem]:
        stmt = repositories.opportunities.apply_scope_query(self._base_query(), ctx.tenant_id)
        stmt = build_list_query(stmt, self.list_spec, params)
        return _to_page(paginate(session, stmt, params.page, params.limit), OpportunityListItem)

    def get_opportunity(self, session: Session, ctx: TenantContext, opportunity_id: uuid.UUID) -> OpportunityListItem:
        stmt = repositories.opportunities.apply_scope_query(self._base_query(), ctx.tenant_id).where(
            Opportunity.id == opportunity_id
        )
        row = session.execute(stmt).first()
        if row is None:
            raise NotFoundError("Opportunity not found")
        return OpportunityListItem.model_validate(_merge_row(row))

    def update_opportunity(
        self,
        session: Session,
        ctx: TenantContext,
        opportunity_id: uuid.UUID,
        dto: OpportunityUpdate,
    ) -> OpportunityListItem:
        with unit_of_work(session, "Failed to update opportunity"):
            opportunity = repositories.opportunities.get(session, ctx, opportunity_id)
            if opportunity is None:
                raise NotFoundError("Opportunity not found")
            changes = dto.model_dump(exclude_unset=True)
            self._validate_references(session, ctx, changes)
            if "pipeline_id" in changes or "stage_id" in changes:
                self._validate_stage(
                    session,
                    ctx,
                    changes.get("pipeline_id") or opportunity.pipeline_id,
                    changes.get("stage_id") or opportunity.stage_id,
                )
            apply_partial_update(opportunity, changes, self.required_fields)
        return self.get_opportunity(session, ctx, opportunity_id)

    def delete_opportunity(self, session: Session, ctx: TenantContext, opportunity_id: uuid.UUID) -> bool:
        with unit_of_work(session, "Failed to delete opportunity"):
            removed = repositories.opportunities.delete(session, ctx, opportunity_id)
        return removed

    def get_stats(self, session: Session, ctx: TenantContext) -> OpportunityStats:
        def value_of(status_value: str):  # type: ignore[no-untyped-def]
            return func.coalesce(func.sum(Opportunity.amount).filter(Opportunity.status == status_value), 0)

        stmt = select(
            func.count(Opportunity.id).label("total"),
            func.count(Opportunity.id).filter(Opportunity.status == "open").label("open"),
            func.count(Opportunity.id).filter(Opportunity.status == "won").label("won"),
            func.count(Opportunity.id).filter(Opportunity.status == "lost").label("lost"),
            value_of("open").label("open_value"),
            value_of("won").label("won_value"),
            value_of("lost").label("lost_value"),
        ).where(Opportunity.tenant_id == ctx.tenant_id)
        row = session.execute(stmt).one()
        return OpportunityStats(
            total=row.total,
            open=row.open,
            won=row.won,
            lost=row.lost,
            open_value=Decimal(str(row.open_value)),
            won_value=Decimal(str(row.won_value)),
            lost_value=Decimal(str(row.lost_value)),
        )

    def _validate_references(self, session: Session, ctx: TenantContext, values: dict[str, Any]) -> None:
        _ensure_reference(session, repositories.leads, ctx.tenant_id, values.get("lead_id"), "lead_id", "Invalid lead ID")
        _ensure_reference(
            session,
            repositories.contacts,
            ctx.tenant_id,
            values.get("contact_id"),
            "contact_id",
            "Invalid contact ID",
        )
        _ensure_reference(
            session,
            repositories.companies,
            ctx.tenant_id,
            values.get("company_id"),
            "company_id",
            "Invalid company ID",
        )

    def _validate_stage(self, session: Session, ctx: TenantContext, pipeline_id: uuid.UUID, stage_id: uuid.UUID) -> None:
        if not repositories.pipelines.exists(session, ctx.tenant_id, pipeline_id):
            raise ValidationFailure.for_field("pipeline_id", "Invalid pipeline ID")
        stage = repositories.pipeline_stages.get_in_tenant(session, ctx.tenant_id, stage_id)
        if stage is None:
            raise ValidationFailure.for_field("stage_id", "Invalid stage ID")
        if stage.pipeline_id != pipeline_id:
            raise ValidationFailure.for_field("stage_id", "Stage does not belong to pipeline")

    def _base_query(self):  # type: ignore[no-untyped-def]
        return (
            select(
                Opportunity,
                Contact.first_name.label("contact_first_name"),
                Contact.last_name.label("contact_last_name"),
                Contact.email.label("contact_email"),
                Company.name.label("company_name"),
                Pipeline.name.label("pipeline_name"),
                PipelineStage.name.label("stage_name"),
                PipelineStage.probability.label("stage_probability"),
                Lead.title.label("lead_title"),
            )
            .outerjoin(Contact, and_(Contact.id == Opportunity.contact_id, Contact.tenant_id == Opportunity.tenant_id))
            .outerjoin(Company, and_(Company.id == Opportunity.company_id, Company.tenant_id == Opportunity.tenant_id))
            .outerjoin(Pipeline, and_(Pipeline.id == Opportunity.pipeline_id, Pipeline.tenant_id == Opportunity.tenant_id))
            .outerjoin(
                PipelineStage,
                and_(PipelineStage.id == Opportunity.stage_id, PipelineStage.tenant_id == Opportunity.tenant_id),
            )
            .outerjoin(Lead, and_(Lead.id == Opportunity.lead_id, Lead.tenant_id == Opportunity.tenant_id))
        )


class PipelineService:
    entity_type = "pipeline"

    def create_pipeline(self, session: Session, ctx: TenantContext, dto: PipelineCreate) -> PipelineRead:
        with unit_of_work(session, "Failed to create pipeline"):
            pipeline = Pipeline(tenant_id=ctx.tenant_id, name=dto.name.strip(), is_default=dto.is_default)
            session.add(pipeline)
            session.flush()
            if dto.is_default:
                self._unset_other_defaults(session, ctx.tenant_id, pipeline.id)
        return self.get_pipeline(session, ctx, pipeline.id)

    def list_pipelines(self, session: Session, ctx: TenantContext) -> list[PipelineRead]:
        stmt = repositories.pipelines.scoped_select(ctx.tenant_id).order_by(Pipeline.is_default.desc(), Pipeline.name.asc())
        pipelines = list(session.scalars(stmt).all())
        stages_by_pipeline: dict[uuid.UUID, list[PipelineStage]] = {item.id: [] for item in pipelines}
        if pipelines:
            stage_stmt = (
                repositories.pipeline_stages.scoped_select(ctx.tenant_id)
                .where(PipelineStage.pipeline_id.in_(list(stages_by_pipeline)))
                .order_by(PipelineStage.position.asc())
            )
            for stage in session.scalars(stage_stmt):
                stages_by_pipeline[stage.pipeline_id].append(stage)
        return [self._to_pipeline_read(item, stages_by_pipeline[item.id]) for item in pipelines]

    def get_pipeline(self, session: Session, ctx: TenantContext, pipeline_id: uuid.UUID) -> PipelineRead:
        pipeline = self._get_owned(session, ctx, pipeline_id)
        stages = repositories.pipeline_stages.list_for_pipeline(session, ctx.tenant_id, pipeline_id)
        return self._to_pipeline_read(pipeline, stages)

    def add_stage(
        self,
        session: Session,
        ctx: TenantContext,
        pipeline_id: uuid.UUID,
        dto: PipelineStageCreate,
    ) -> PipelineStageRead:
        with unit_of_work(session, "Failed to create pipeline stage"):
            self._get_owned(session, ctx, pipeline_id)
            stage = PipelineStage(
                tenant_id=ctx.tenant_id,
                pipeline_id=pipeline_id,
                name=dto.name.strip(),
                position=repositories.pipeline_stages.next_position(session, ctx.tenant_id, pipeline_id),
                probability=dto.probability,
            )
            session.add(stage)
            session.flush()
            stage_read = PipelineStageRead.model_validate(stage)
        return stage_read

    def delete_stage(self, session: Session, ctx: TenantContext, pipeline_id: uuid.UUID, stage_id: uuid.UUID) -> bool:
        with unit_of_work(session, "Failed to delete pipeline stage"):
            stage = repositories.pipeline_stages.get(session, ctx, stage_id)
            if stage is None or stage.pipeline_id != pipeline_id:
                return False
            in_use = session.scalar(
                select(func.count(Opportunity.id)).where(
                    Opportunity.stage_id == stage_id,
                    Opportunity.tenant_id == ctx.tenant_id,
                )
            )
            if in_use:
                raise ValidationFailure.for_field("stage_id", "Stage has opportunities", summary="Stage is in use")
            removed = repositories.pipeline_stages.delete(session, ctx, stage_id)
        return removed

    def _unset_other_defaults(self, session: Session, tenant_id: uuid.UUID, pipeline_id: uuid.UUID) -> None:
        session.execute(
            update(Pipeline)
            .where(Pipeline.tenant_id == tenant_id, Pipeline.id != pipeline_id, Pipeline.is_default.is_(True))
            .values(is_default=False, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )

    def _get_owned(self, session: Session, ctx: TenantContext, pipeline_id: uuid.UUID) -> Pipeline:
        pipeline = repositories.pipelines.get(session, ctx, pipeline_id)
        if pipeline is None:
            raise NotFoundError("Pipeline not found")
        return pipeline

    def _to_pipeline_read(self, pipeline: Pipeline, stages: list[PipelineStage]) -> PipelineRead:
        return PipelineRead(
            id=pipeline.id,
            name=pipeline.name,
            is_default=pipeline.is_default,
            created_at=pipeline.created_at,
            updated_at=pipeline.updated_at,
            stages=[PipelineStageRead.model_validate(stage) for stage in stages],
        )


class TaskService:
    entity_type = "task"
    required_fields = {"title", "priority", "status"}
    list_spec = ListSpec(
        equality={
            "status": Task.status,
            "priority": Task.priority,
            "assigned_to": Task.assigned_to,
            "lead_id": Task.lead_id,
            "contact_id": Task.contact_id,
        },
        ranges={"due_after": (Task.due_at, "gte"), "due_before": (Task.due_at, "lte")},
        fixed_order=task_order(),
    )

    def create_task(self, session: Session, ctx: TenantContext, dto: TaskCreate) -> TaskListItem:
        with unit_of_work(session, "Failed to create task"):
            self._validate_references(session, ctx, dto.model_dump())
            task = Task(tenant_id=ctx.tenant_id, created_by=ctx.user_id, **dto.model_dump())
            session.add(task)
            session.flush()
        return self.get_task(session, ctx, task.id)

    def list_tasks(self, session: Session, ctx: TenantContext, params: TaskListParams) -> Page[TaskListItem]:
        stmt = repositories.tasks.apply_scope_query(self._base_query(), ctx.tenant_id)
        stmt = build_list_query(stmt, self.list_spec, params)
        return _to_page(paginate(session, stmt, params.page, params.limit), TaskListItem)

    def get_task(self, session: Session, ctx: TenantContext, task_id: uuid.UUID) -> TaskListItem:
        stmt = repositories.tasks.apply_scope_query(self._base_query(), ctx.tenant_id).where(Task.id == task_id)
        row = session.execute(stmt).first()
        if row is None:
            raise NotFoundError("Task not found")
        return TaskListItem.model_validate(_merge_row(row))

    def update_task(self, session: Session, ctx: TenantContext, task_id: uuid.UUID, dto: TaskUpdate) -> TaskListItem:
        with unit_of_work(session, "Failed to update task"):
            task = repositories.tasks.get(session, ctx, task_id)
            if task is None:
                raise NotFoundError("Task not found")
            changes = dto.model_dump(exclude_unset=True)
            self._validate_references(session, ctx, changes)
            apply_partial_update(task, changes, self.required_fields)
        return self.get_task(session, ctx, task_id)

    def delete_task(self, session: Session, ctx: TenantContext, task_id: uuid.UUID) -> bool:
        with unit_of_work(session, "Failed to delete task"):
            removed = repositories.tasks.delete(session, ctx, task_id)
        return removed

    def get_stats(self, session: Session, ctx: TenantContext) -> list[TaskStatsRow]:
        count = func.count(Task.id)
        overdue = func.count(Task.id).filter(Task.due_at < utcnow(), Task.status.not_in(["done", "canceled"]))
        stmt = (
            select(Task.status, Task.priority, count.label("count"), overdue.label("overdue_count"))
            .where(Task.tenant_id == ctx.tenant_id)
            .group_by(Task.status, Task.priority)
            .order_by(count.desc())
        )
        return [
            TaskStatsRow(status=row.status, priority=row.priority, count=row.count, overdue_count=row.overdue_count)
            for row in session.execute(stmt)
        ]

    def _validate_references(self, session: Session, ctx: TenantContext, values: dict[str, Any]) -> None:
        _ensure_active_user(session, ctx.tenant_id, values.get("assigned_to"), "assigned_to", "Invalid assigned_to user ID")
        _ensure_reference(session, repositories.leads, ctx.tenant_id, values.get("lead_id"), "lead_id", "Invalid lead ID")
        _ensure_reference(
            session,
            repositories.contacts,
            ctx.tenant_id,
            values.get("contact_id"),
            "contact_id",
            "Invalid contact ID",
        )

    def _base_query(self):  # type: ignore[no-untyped-def]
        return (
            select(
                Task,
                TaskAssignee.name.label("assigned_to_name"),
                Lead.title.label("lead_title"),
                Contact.first_name.label("contact_first_name"),
                Contact.last_name.label("contact_last_name"),
            )
            .outerjoin(TaskAssignee, and_(TaskAssignee.id == Task.assigned_to, TaskAssignee.tenant_id == Task.tenant_id))
            .outerjoin(Lead, and_(Lead.id == Task.lead_id, Lead.tenant_id == Task.tenant_id))
            .outerjoin(Contact, and_(Contact.id == Task.contact_id, Contact.tenant_id == Task.tenant_id))
        )


class InteractionService:
    entity_type = "interaction"
    list_spec = ListSpec(
        equality={
            "lead_id": Interaction.lead_id,
            "contact_id": Interaction.contact_id,
            "channel": Interaction.channel,
            "direction": Interaction.direction,
        },
        ranges={"date_from": (Interaction.occurred_at, "gte"), "date_to": (Interaction.occurred_at, "lte")},
        search=(Interaction.subject, Interaction.body),
        sort={"occurred_at": Interaction.occurred_at, "created_at": Interaction.created_at},
        default_sort="occurred_at",
    )

    def create_interaction(self, session: Session, ctx: TenantContext, dto: InteractionCreate) -> InteractionListItem:
        with unit_of_work(session, "Failed to create interaction"):
            _ensure_reference(session, repositories.leads, ctx.tenant_id, dto.lead_id, "lead_id", "Invalid lead ID")
            _ensure_reference(
                session,
                repositories.contacts,
                ctx.tenant_id,
                dto.contact_id,
                "contact_id",
                "Invalid contact ID",
            )
            payload = dto.model_dump()
            payload["occurred_at"] = dto.occurred_at or utcnow()
            interaction = Interaction(tenant_id=ctx.tenant_id, created_by=ctx.user_id, **payload)
            session.add(interaction)
            session.flush()
        return self.get_interaction(session, ctx, interaction.id)

    def list_interactions(
        self,
        session: Session,
        ctx: TenantContext,
        params: InteractionListParams,
    ) -> Page[InteractionListItem]:
        stmt = repositories.interactions.apply_scope_query(self._base_query(), ctx.tenant_id)
        stmt = build_list_query(stmt, self.list_spec, params)
        return _to_page(paginate(session, stmt, params.page, params.limit), InteractionListItem)

    def get_interaction(self, session: Session, ctx: TenantContext, interaction_id: uuid.UUID) -> InteractionListItem:
        stmt = repositories.interactions.apply_scope_query(self._base_query(), ctx.tenant_id).where(
            Interaction.id == interaction_id
        )
        row = session.execute(stmt).first()
        if row is None:
            raise NotFoundError("Interaction not found")
        return InteractionListItem.model_validate(_merge_row(row))

    def get_timeline(
        self,
        session: Session,
        ctx: TenantContext,
        params: InteractionTimelineParams,
    ) -> list[InteractionListItem]:
        stmt = repositories.interactions.apply_scope_query(self._base_query(), ctx.tenant_id)
        if params.lead_id is not None:
            stmt = stmt.where(Interaction.lead_id == params.lead_id)
        if params.contact_id is not None:
            stmt = stmt.where(Interaction.contact_id == params.contact_id)
        stmt = stmt.order_by(Interaction.occurred_at.desc()).limit(params.limit)
        return [InteractionListItem.model_validate(_merge_row(row)) for row in session.execute(stmt)]

    def get_stats(self, session: Session, ctx: TenantContext) -> list[InteractionStatsRow]:
        cutoff = utcnow() - timedelta(days=7)
        count = func.count(Interaction.id)
        stmt = (
            select(
                Interaction.channel,
                Interaction.direction,
                count.label("count"),
                func.count(Interaction.id).filter(Interaction.occurred_at >= cutoff).label("recent_count"),
            )
            .where(Interaction.tenant_id == ctx.tenant_id)
            .group_by(Interaction.channel, Interaction.direction)
            .order_by(count.desc())
        )
        return [
            InteractionStatsRow(
                channel=row.channel,
                direction=row.direction,
                count=row.count,
                recent_count=row.recent_count,
            )
            for row in session.execute(stmt)
        ]

    def _base_query(self):  # type: ignore[no-untyped-def]
        return (
            select(
                Interaction,
                Lead.title.label("lead_title"),
                Contact.first_name.label("contact_first_name"),
                Contact.last_name.label("contact_last_name"),
                InteractionCreator.name.label("creator_name"),
            )
            .outerjoin(Lead, and_(Lead.id == Interaction.lead_id, Lead.tenant_id == Interaction.tenant_id))
            .outerjoin(Contact, and_(Contact.id == Interaction.contact_id, Contact.tenant_id == Interaction.tenant_id))
            .outerjoin(
                InteractionCreator,
                and_(InteractionCreator.id == Interaction.created_by, InteractionCreator.tenant_id == Interaction.tenant_id),
            )
        )


class TagService:
    entity_type = "tag"
    duplicate_message = "Tag with this name already exists"

    def __init__(self) -> None:
        self._lead_count = (
            select(func.count(LeadTag.lead_id))
            .where(LeadTag.tag_id == Tag.id, LeadTag.tenant_id == Tag.tenant_id)
            .correlate(Tag)
            .scalar_subquery()
            .label("lead_count")
        )
        self.list_spec = ListSpec(
            search=(Tag.name,),
            search_option="search",
            sort={"name": Tag.name, "created_at": Tag.created_at, "lead_count": self._lead_count},
            default_sort="name",
        )

    def list_tags(self, session: Session, ctx: TenantContext, params: TagListParams) -> Page[TagRead]:
        stmt = repositories.tags.apply_scope_query(select(Tag, self._lead_count), ctx.tenant_id)
        stmt = build_list_query(stmt, self.list_spec, params)
        return _to_page(paginate(session, stmt, params.page, params.limit), TagRead)

    def popular_tags(self, session: Session, ctx: TenantContext, limit: int = 10) -> list[TagRead]:
        stmt = (
            repositories.tags.apply_scope_query(select(Tag, self._lead_count), ctx.tenant_id)
            .order_by(self._lead_count.desc(), Tag.name.asc())
            .limit(limit)
        )
        return [TagRead.model_validate(_merge_row(row)) for row in session.execute(stmt)]

    def rename_tag(self, session: Session, ctx: TenantContext, tag_id: uuid.UUID, name: str) -> TagRead:
        with unit_of_work(session, "Failed to update tag"):
            tag = repositories.tags.get(session, ctx, tag_id)
            if tag is None:
                raise NotFoundError("Tag not found")
            existing = repositories.tags.find_by_name(session, ctx.tenant_id, name)
            if existing is not None and existing.id != tag_id:
                raise ConflictError(self.duplicate_message, "name")
            tag.name = name.strip()
            session.flush()
        stmt = repositories.tags.apply_scope_query(select(Tag, self._lead_count), ctx.tenant_id).where(Tag.id == tag_id)
        return TagRead.model_validate(_merge_row(session.execute(stmt).one()))

    def delete_tag(self, session: Session, ctx: TenantContext, tag_id: uuid.UUID) -> bool:
        with unit_of_work(session, "Failed to delete tag"):
            session.execute(
                delete(LeadTag)
                .where(LeadTag.tag_id == tag_id, LeadTag.tenant_id == ctx.tenant_id)
                .execution_options(synchronize_session=False)
            )
            removed = repositories.tags.delete(session, ctx, tag_id)
        return removed


class UserService:
    entity_type = "user"
    required_fields = {"email", "name", "role", "is_active"}
    duplicate_message = "User with this email already exists"
    list_spec = ListSpec(
        equality={"role": User.role, "is_active": User.is_active},
        search=(User.name, User.email),
        search_option="search",
        sort={"name": User.name, "email": User.email, "created_at": User.created_at},
        default_sort="name",
    )

    def create_user(self, session: Session, ctx: TenantContext, dto: UserCreate) -> UserRead:
        with unit_of_work(session, "Failed to create user"):
            if repositories.users.find_by_email(session, ctx.tenant_id, dto.email) is not None:
                raise ConflictError(self.duplicate_message, "email")
            user = User(
                tenant_id=ctx.tenant_id,
                email=dto.email,
                name=dto.name.strip(),
                role=dto.role,
                password_hash=hash_password(dto.password),
                is_active=dto.is_active,
            )
            session.add(user)
            session.flush()
            user_read = UserRead.model_validate(user)
        logger.info("user.created", extra={"tenant_id": str(ctx.tenant_id), "user_id": str(user_read.id), "entity": "user"})
        return user_read

    def list_users(self, session: Session, ctx: TenantContext, params: UserListParams) -> Page[UserRead]:
        stmt = build_list_query(repositories.users.scoped_select(ctx.tenant_id), self.list_spec, params)
        page = paginate(session, stmt, params.page, params.limit)
        return Page(
            items=[UserRead.model_validate(row[0]) for row in page.items],
            total=page.total,
            page=page.page,
            limit=page.limit,
        )

    def get_user(self, session: Session, ctx: TenantContext, user_id: uuid.UUID) -> UserRead:
        return UserRead.model_validate(self._get_owned(session, ctx, user_id))

    def update_user(self, session: Session, ctx: TenantContext, user_id: uuid.UUID, dto: UserUpdate) -> UserRead:
        with unit_of_work(session, "Failed to update user"):
            user = self._get_owned(session, ctx, user_id)
            changes = dto.model_dump(exclude_unset=True)
            if changes.get("email"):
                existing = repositories.users.find_by_email(session, ctx.tenant_id, changes["email"])
                if existing is not None and existing.id != user_id:
                    raise ConflictError(self.duplicate_message, "email")
            if "password" in changes:
                password = changes.pop("password")
                if password is None:
                    raise ValidationFailure.for_field("password", "may not be null", summary="Validation failed")
                changes["password_hash"] = hash_password(password)
            if user_id == ctx.user_id and (changes.get("is_active") is False or changes.get("role") not in {None, "admin"}):
                raise ForbiddenError("Administrators cannot demote or deactivate themselves")
            apply_partial_update(user, changes, self.required_fields)
            session.flush()
            user_read = UserRead.model_validate(user)
        return user_read

    def deactivate_user(self, session: Session, ctx: TenantContext, user_id: uuid.UUID) -> bool:
        if user_id == ctx.user_id:
            raise ForbiddenError("Administrators cannot demote or deactivate themselves")
        with unit_of_work(session, "Failed to deactivate user"):
            user = repositories.users.get(session, ctx, user_id)
            if user is None:
                return False
            user.is_active = False
            user.updated_at = utcnow()
        return True

    def get_stats(self, session: Session, ctx: TenantContext) -> list[UserRoleStats]:
        stmt = (
            select(
                User.role,
                func.count(User.id).label("count"),
                func.count(User.id).filter(User.is_active.is_(True)).label("active_count"),
            )
            .where(User.tenant_id == ctx.tenant_id)
            .group_by(User.role)
            .order_by(User.role.asc())
        )
        return [UserRoleStats(role=row.role, count=row.count, active_count=row.active_count) for row in session.execute(stmt)]

    def _get_owned(self, session: Session, ctx: TenantContext, user_id: uuid.UUID) -> User:
        user = repositories.users.get(session, ctx, user_id)
        if user is None:
            raise NotFoundError("User not found")
        return user
