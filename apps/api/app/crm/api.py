from __future__ import annotations

import uuid
from typing import Annotated, Any

from fastapi import APIRouter, Depends, Query, Request, status
from sqlalchemy.orm import Session

from app.core.auth import authenticate_user, create_access_token, get_tenant_context
from app.core.database import get_db
from app.core.errors import NotFoundError
from app.core.rbac import require_roles
from app.core.responses import ApiResponse, ok
from app.crm.ingestion import SIGNATURE_HEADER, LeadCaptureService, verify_signature
from app.crm.query import Page
from app.crm.schemas import (
    CompanyCreate,
    CompanyList,
    CompanyListItem,
    CompanyListParams,
    CompanyStats,
    CompanyUpdate,
    ContactCreate,
    ContactListItem,
    ContactList,
    ContactListParams,
    ContactSearchParams,
    ContactSourceStats,
    ContactUpdate,
    FairexLeadCaptured,
    InteractionCreate,
    InteractionList,
    InteractionListItem,
    InteractionListParams,
    InteractionStatsRow,
    InteractionTimelineParams,
    LeadCapturedRead,
    LeadCreate,
    LeadDetail,
    LeaderboardRow,
    LeadList,
    LeadListParams,
    LeadStatsRow,
    LeadTagsRequest,
    LeadUpdate,
    MeRead,
    OpportunityCreate,
    OpportunityList,
    OpportunityListItem,
    OpportunityListParams,
    OpportunityStats,
    OpportunityUpdate,
    PipelineCreate,
    PipelineRead,
    PipelineStageCreate,
    PipelineStageRead,
    TagList,
    TagListParams,
    TagRead,
    TagUpdate,
    TaskCreate,
    TaskList,
    TaskListItem,
    TaskListParams,
    TaskStatsRow,
    TaskUpdate,
    TokenRequest,
    TokenResponse,
    TokenUser,
    UserCreate,
    UserList,
    UserListParams,
    UserRead,
    UserRoleStats,
    UserUpdate,
)
from app.crm.service import (
    CompanyService,
    ContactService,
    InteractionService,
    LeadService,
    OpportunityService,
    PipelineService,
    TagService,
    TaskService,
    UserService,
)
from app.platform.security.context import TenantContext

auth_router = APIRouter(prefix="/api/auth", tags=["auth"])
leads_router = APIRouter(prefix="/api/leads", tags=["crm.leads"])
contacts_router = APIRouter(prefix="/api/contacts", tags=["crm.contacts"])
companies_router = APIRouter(prefix="/api/companies", tags=["crm.companies"])
opportunities_router = APIRouter(prefix="/api/opportunities", tags=["crm.opportunities"])
pipelines_router = APIRouter(prefix="/api/pipelines", tags=["crm.pipelines"])
tasks_router = APIRouter(prefix="/api/tasks", tags=["crm.tasks"])
interactions_router = APIRouter(prefix="/api/interactions", tags=["crm.interactions"])
tags_router = APIRouter(prefix="/api/tags", tags=["crm.tags"])
users_router = APIRouter(prefix="/api/users", tags=["crm.users"])
webhooks_router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])

lead_service = LeadService()
contact_service = ContactService()
company_service = CompanyService()
opportunity_service = OpportunityService()
pipeline_service = PipelineService()
task_service = TaskService()
interaction_service = InteractionService()
tag_service = TagService()
user_service = UserService()
lead_capture_service = LeadCaptureService()

admin_only = require_roles("admin")


def _paged(key: str, page: Page[Any]) -> dict[str, Any]:
    return {key: page.items, "pagination": page.pagination()}


def _deleted(removed: bool, entity: str) -> dict[str, Any]:
    if not removed:
        raise NotFoundError(f"{entity} not found")
    return ok(message=f"{entity} deleted successfully")


# auth


@auth_router.post("/token", response_model=ApiResponse[TokenResponse])
def issue_token(payload: TokenRequest, db: Session = Depends(get_db)) -> dict[str, Any]:
    user, tenant_name = authenticate_user(db, payload.username, payload.password, payload.tenant_id)
    token, expires_in = create_access_token(user)
    data = TokenResponse(
        access_token=token,
        expires_in=expires_in,
        user=TokenUser(id=user.id, name=user.name, email=user.email, role=user.role, tenant=tenant_name),
    )
    return ok(data, "Login successful")


@auth_router.get("/me", response_model=ApiResponse[MeRead])
def read_me(ctx: TenantContext = Depends(get_tenant_context)) -> dict[str, Any]:
    return ok(MeRead(**ctx.describe()))


# leads


@leads_router.post("", response_model=ApiResponse[LeadDetail], status_code=status.HTTP_201_CREATED)
def create_lead(
    payload: LeadCreate,
    ctx: TenantContext = Depends(get_tenant_context),
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    return ok(lead_service.create_lead(db, ctx, payload), "Lead created successfully")


@leads_router.get("", response_model=ApiResponse[LeadList])
def list_leads(
    params: Annotated[LeadListParams, Query()],
    ctx: TenantContext = Depends(get_tenant_context),
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    return ok(_paged("leads", lead_service.list_leads(db, ctx, params)))


@leads_router.get("/stats", response_model=ApiResponse[list[LeadStatsRow]])
def lead_stats(ctx: TenantContext = Depends(get_tenant_context), db: Session = Depends(get_db)) -> dict[str, Any]:
    return ok(lead_service.get_stats(db, ctx))


@leads_router.get("/leaderboard", response_model=ApiResponse[list[LeaderboardRow]])
def lead_leaderboard(
    limit: int = Query(default=10, ge=1, le=50),
    ctx: TenantContext = Depends(get_tenant_context),
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    return ok(lead_service.get_leaderboard(db, ctx, limit))


@leads_router.get("/{lead_id}", response_model=ApiResponse[LeadDetail])
def get_lead(
    lead_id: uuid.UUID,
    ctx: TenantContext = Depends(get_tenant_context),
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    return ok(lead_service.get_lead(db, ctx, lead_id))


@leads_router.patch("/{lead_id}", response_model=ApiResponse[LeadDetail])
def update_lead(
    lead_id: uuid.UUID,
    payload: LeadUpdate,
    ctx: TenantContext = Depends(get_tenant_context),
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    return ok(lead_service.update_lead(db, ctx, lead_id, payload), "Lead updated successfully")


@leads_router.delete("/{lead_id}", response_model=ApiResponse[None])
def delete_lead(
    lead_id: uuid.UUID,
    ctx: TenantContext = Depends(get_tenant_context),
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    return _deleted(lead_service.delete_lead(db, ctx, lead_id), "Lead")


@leads_router.post("/{lead_id}/tags", response_model=ApiResponse[list[str]])
def add_lead_tags(
    lead_id: uuid.UUID,
    payload: LeadTagsRequest,
    ctx: TenantContext = Depends(get_tenant_context),
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    return ok(lead_service.add_tags(db, ctx, lead_id, payload.tags), "Tags added successfully")


@leads_router.delete("/{lead_id}/tags/{tag_name}", response_model=ApiResponse[list[str]])
def remove_lead_tag(
    lead_id: uuid.UUID,
    tag_name: str,
    ctx: TenantContext = Depends(get_tenant_context),
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    return ok(lead_service.remove_tag(db, ctx, lead_id, tag_name), "Tag removed successfully")


# contacts


@contacts_router.post("", response_model=ApiResponse[ContactListItem], status_code=status.HTTP_201_CREATED)
def create_contact(
    payload: ContactCreate,
    ctx: TenantContext = Depends(get_tenant_context),
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    return ok(contact_service.create_contact(db, ctx, payload), "Contact created successfully")


@contacts_router.get("", response_model=ApiResponse[ContactList])
def list_contacts(
    params: Annotated[ContactListParams, Query()],
    ctx: TenantContext = Depends(get_tenant_context),
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    return ok(_paged("contacts", contact_service.list_contacts(db, ctx, params)))


@contacts_router.get("/search", response_model=ApiResponse[list[ContactListItem]])
def search_contacts(
    params: Annotated[ContactSearchParams, Query()],
    ctx: TenantContext = Depends(get_tenant_context),
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    return ok(contact_service.search_contacts(db, ctx, params))


@contacts_router.get("/stats", response_model=ApiResponse[list[ContactSourceStats]])
def contact_stats(ctx: TenantContext = Depends(get_tenant_context), db: Session = Depends(get_db)) -> dict[str, Any]:
    return ok(contact_service.get_stats(db, ctx))


@contacts_router.get("/{contact_id}", response_model=ApiResponse[ContactListItem])
def get_contact(
    contact_id: uuid.UUID,
    ctx: TenantContext = Depends(get_tenant_context),
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    return ok(contact_service.get_contact(db, ctx, contact_id))


@contacts_router.patch("/{contact_id}", response_model=ApiResponse[ContactListItem])
def update_contact(
    contact_id: uuid.UUID,
    payload: ContactUpdate,
    ctx: TenantContext = Depends(get_tenant_context),
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    return ok(contact_service.update_contact(db, ctx, contact_id, payload), "Contact updated successfully")


@contacts_router.delete("/{contact_id}", response_model=ApiResponse[None])
def delete_contact(
    contact_id: uuid.UUID,
    ctx: TenantContext = Depends(get_tenant_context),
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    return _deleted(contact_service.delete_contact(db, ctx, contact_id), "Contact")


# companies


@companies_router.post("", response_model=ApiResponse[CompanyListItem], status_code=status.HTTP_201_CREATED)
def create_company(
    payload: CompanyCreate,
    ctx: TenantContext = Depends(get_tenant_context),
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    return ok(company_service.create_company(db, ctx, payload), "Company created successfully")


@companies_router.get("", response_model=ApiResponse[CompanyList])
def list_companies(
    params: Annotated[CompanyListParams, Query()],
    ctx: TenantContext = Depends(get_tenant_context),
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    return ok(_paged("companies", company_service.list_companies(db, ctx, params)))


@companies_router.get("/stats", response_model=ApiResponse[CompanyStats])
def company_stats(ctx: TenantContext = Depends(get_tenant_context), db: Session = Depends(get_db)) -> dict[str, Any]:
    return ok(company_service.get_stats(db, ctx))


@companies_router.get("/{company_id}", response_model=ApiResponse[CompanyListItem])
def get_company(
    company_id: uuid.UUID,
    ctx: TenantContext = Depends(get_tenant_context),
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    return ok(company_service.get_company(db, ctx, company_id))


@companies_router.patch("/{company_id}", response_model=ApiResponse[CompanyListItem])
def update_company(
    company_id: uuid.UUID,
    payload: CompanyUpdate,
    ctx: TenantContext = Depends(get_tenant_context),
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    return ok(company_service.update_company(db, ctx, company_id, payload), "Company updated successfully")


@companies_router.delete("/{company_id}", response_model=ApiResponse[None])
def delete_company(
    company_id: uuid.UUID,
    ctx: TenantContext = Depends(get_tenant_context),
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    return _deleted(company_service.delete_company(db, ctx, company_id), "Company")


# opportunities


@opportunities_router.post("", response_model=ApiResponse[OpportunityListItem], status_code=status.HTTP_201_CREATED)
def create_opportunity(
    payload: OpportunityCreate,
    ctx: TenantContext = Depends(get_tenant_context),
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    return ok(opportunity_service.create_opportunity(db, ctx, payload), "Opportunity created successfully")


@opportunities_router.get("", response_model=ApiResponse[OpportunityList])
def list_opportunities(
    params: Annotated[OpportunityListParams, Query()],
    ctx: TenantContext = Depends(get_tenant_context),
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    return ok(_paged("opportunities", opportunity_service.list_opportunities(db, ctx, params)))


@opportunities_router.get("/stats", response_model=ApiResponse[OpportunityStats])
def opportunity_stats(ctx: TenantContext = Depends(get_tenant_context), db: Session = Depends(get_db)) -> dict[str, Any]:
    return ok(opportunity_service.get_stats(db, ctx))


@opportunities_router.get("/{opportunity_id}", response_model=ApiResponse[OpportunityListItem])
def get_opportunity(
    opportunity_id: uuid.UUID,
    ctx: TenantContext = Depends(get_tenant_context),
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    return ok(opportunity_service.get_opportunity(db, ctx, opportunity_id))


@opportunities_router.patch("/{opportunity_id}", response_model=ApiResponse[OpportunityListItem])
def update_opportunity(
    opportunity_id: uuid.UUID,
    payload: OpportunityUpdate,
    ctx: TenantContext = Depends(get_tenant_context),
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    data = opportunity_service.update_opportunity(db, ctx, opportunity_id, payload)
    return ok(data, "Opportunity updated successfully")


@opportunities_router.delete("/{opportunity_id}", response_model=ApiResponse[None])
def delete_opportunity(
    opportunity_id: uuid.UUID,
    ctx: TenantContext = Depends(get_tenant_context),
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    return _deleted(opportunity_service.delete_opportunity(db, ctx, opportunity_id), "Opportunity")


# pipelines


@pipelines_router.get("", response_model=ApiResponse[list[PipelineRead]])
def list_pipelines(ctx: TenantContext = Depends(get_tenant_context), db: Session = Depends(get_db)) -> dict[str, Any]:
    return ok(pipeline_service.list_pipelines(db, ctx))


@pipelines_router.post("", response_model=ApiResponse[PipelineRead], status_code=status.HTTP_201_CREATED)
def create_pipeline(
    payload: PipelineCreate,
    ctx: TenantContext = Depends(get_tenant_context),
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    return ok(pipeline_service.create_pipeline(db, ctx, payload), "Pipeline created successfully")


@pipelines_router.get("/{pipeline_id}", response_model=ApiResponse[PipelineRead])
def get_pipeline(
    pipeline_id: uuid.UUID,
    ctx: TenantContext = Depends(get_tenant_context),
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    return ok(pipeline_service.get_pipeline(db, ctx, pipeline_id))


@pipelines_router.post(
    "/{pipeline_id}/stages",
    response_model=ApiResponse[PipelineStageRead],
    status_code=status.HTTP_201_CREATED,
)
def create_pipeline_stage(
    pipeline_id: uuid.UUID,
    payload: PipelineStageCreate,
    ctx: TenantContext = Depends(get_tenant_context),
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    return ok(pipeline_service.add_stage(db, ctx, pipeline_id, payload), "Stage created successfully")


@pipelines_router.delete("/{pipeline_id}/stages/{stage_id}", response_model=ApiResponse[None])
def delete_pipeline_stage(
    pipeline_id: uuid.UUID,
    stage_id: uuid.UUID,
    ctx: TenantContext = Depends(get_tenant_context),
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    return _deleted(pipeline_service.delete_stage(db, ctx, pipeline_id, stage_id), "Stage")


# tasks


@tasks_router.post("", response_model=ApiResponse[TaskListItem], status_code=status.HTTP_201_CREATED)
def create_task(
    payload: TaskCreate,
    ctx: TenantContext = Depends(get_tenant_context),
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    return ok(task_service.create_task(db, ctx, payload), "Task created successfully")


@tasks_router.get("", response_model=ApiResponse[TaskList])
def list_tasks(
    params: Annotated[TaskListParams, Query()],
    ctx: TenantContext = Depends(get_tenant_context),
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    return ok(_paged("tasks", task_service.list_tasks(db, ctx, params)))


@tasks_router.get("/stats", response_model=ApiResponse[list[TaskStatsRow]])
def task_stats(ctx: TenantContext = Depends(get_tenant_context), db: Session = Depends(get_db)) -> dict[str, Any]:
    return ok(task_service.get_stats(db, ctx))


@tasks_router.get("/{task_id}", response_model=ApiResponse[TaskListItem])
def get_task(
    task_id: uuid.UUID,
    ctx: TenantContext = Depends(get_tenant_context),
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    return ok(task_service.get_task(db, ctx, task_id))


@tasks_router.patch("/{task_id}", response_model=ApiResponse[TaskListItem])
def update_task(
    task_id: uuid.UUID,
    payload: TaskUpdate,
    ctx: TenantContext = Depends(get_tenant_context),
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    return ok(task_service.update_task(db, ctx, task_id, payload), "Task updated successfully")


@tasks_router.delete("/{task_id}", response_model=ApiResponse[None])
def delete_task(
    task_id: uuid.UUID,
    ctx: TenantContext = Depends(get_tenant_context),
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    return _deleted(task_service.delete_task(db, ctx, task_id), "Task")


# interactions


@interactions_router.post("", response_model=ApiResponse[InteractionListItem], status_code=status.HTTP_201_CREATED)
def create_interaction(
    payload: InteractionCreate,
    ctx: TenantContext = Depends(get_tenant_context),
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    return ok(interaction_service.create_interaction(db, ctx, payload), "Interaction logged successfully")


@interactions_router.get("", response_model=ApiResponse[InteractionList])
def list_interactions(
    params: Annotated[InteractionListParams, Query()],
    ctx: TenantContext = Depends(get_tenant_context),
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    return ok(_paged("interactions", interaction_service.list_interactions(db, ctx, params)))


@interactions_router.get("/timeline", response_model=ApiResponse[list[InteractionListItem]])
def interaction_timeline(
    params: Annotated[InteractionTimelineParams, Query()],
    ctx: TenantContext = Depends(get_tenant_context),
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    return ok(interaction_service.get_timeline(db, ctx, params))


@interactions_router.get("/stats", response_model=ApiResponse[list[InteractionStatsRow]])
def interaction_stats(ctx: TenantContext = Depends(get_tenant_context), db: Session = Depends(get_db)) -> dict[str, Any]:
    return ok(interaction_service.get_stats(db, ctx))


@interactions_router.get("/{interaction_id}", response_model=ApiResponse[InteractionListItem])
def get_interaction(
    interaction_id: uuid.UUID,
    ctx: TenantContext = Depends(get_tenant_context),
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    return ok(interaction_service.get_interaction(db, ctx, interaction_id))


# tags


@tags_router.get("", response_model=ApiResponse[TagList])
def list_tags(
    params: Annotated[TagListParams, Query()],
    ctx: TenantContext = Depends(get_tenant_context),
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    return ok(_paged("tags", tag_service.list_tags(db, ctx, params)))


@tags_router.get("/popular", response_model=ApiResponse[list[TagRead]])
def popular_tags(
    limit: int = Query(default=10, ge=1, le=50),
    ctx: TenantContext = Depends(get_tenant_context),
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    return ok(tag_service.popular_tags(db, ctx, limit))


@tags_router.patch("/{tag_id}", response_model=ApiResponse[TagRead])
def rename_tag(
    tag_id: uuid.UUID,
    payload: TagUpdate,
    ctx: TenantContext = Depends(get_tenant_context),
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    return ok(tag_service.rename_tag(db, ctx, tag_id, payload.name), "Tag updated successfully")


@tags_router.delete("/{tag_id}", response_model=ApiResponse[None])
def delete_tag(
    tag_id: uuid.UUID,
    ctx: TenantContext = Depends(get_tenant_context),
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    return _deleted(tag_service.delete_tag(db, ctx, tag_id), "Tag")


# users


@users_router.get("", response_model=ApiResponse[UserList])
def list_users(
    params: Annotated[UserListParams, Query()],
    ctx: TenantContext = Depends(admin_only),
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    return ok(_paged("users", user_service.list_users(db, ctx, params)))


@users_router.post("", response_model=ApiResponse[UserRead], status_code=status.HTTP_201_CREATED)
def create_user(
    payload: UserCreate,
    ctx: TenantContext = Depends(admin_only),
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    return ok(user_service.create_user(db, ctx, payload), "User created successfully")


@users_router.get("/stats", response_model=ApiResponse[list[UserRoleStats]])
def user_stats(ctx: TenantContext = Depends(admin_only), db: Session = Depends(get_db)) -> dict[str, Any]:
    return ok(user_service.get_stats(db, ctx))


@users_router.get("/{user_id}", response_model=ApiResponse[UserRead])
def get_user(
    user_id: uuid.UUID,
    ctx: TenantContext = Depends(admin_only),
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    return ok(user_service.get_user(db, ctx, user_id))


@users_router.patch("/{user_id}", response_model=ApiResponse[UserRead])
def update_user(
    user_id: uuid.UUID,
    payload: UserUpdate,
    ctx: TenantContext = Depends(admin_only),
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    return ok(user_service.update_user(db, ctx, user_id, payload), "User updated successfully")


@users_router.delete("/{user_id}", response_model=ApiResponse[None])
def deactivate_user(
    user_id: uuid.UUID,
    ctx: TenantContext = Depends(admin_only),
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    if not user_service.deactivate_user(db, ctx, user_id):
        raise NotFoundError("User not found")
    return ok(message="User deactivated successfully")


# webhooks


async def verified_webhook_body(request: Request) -> None:
    verify_signature(await request.body(), request.headers.get(SIGNATURE_HEADER))


@webhooks_router.post(
    "/fairex/lead-captured",
    response_model=ApiResponse[LeadCapturedRead],
    dependencies=[Depends(verified_webhook_body)],
)
def fairex_lead_captured(payload: FairexLeadCaptured, db: Session = Depends(get_db)) -> dict[str, Any]:
    return ok(lead_capture_service.capture_lead(db, payload), "Webhook processed successfully")
