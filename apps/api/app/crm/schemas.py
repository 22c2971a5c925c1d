from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Annotated, Any, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, EmailStr, Field, StringConstraints, model_validator


UserRole = Literal["admin", "manager", "agent"]
ContactSource = Literal["manual", "import", "api", "fairex"]
LeadStatus = Literal["new", "working", "qualified", "unqualified", "converted"]
LeadStage = Literal["lead", "mql", "sql"]
LeadSource = Literal["fairex", "ads", "import", "referral", "manual"]
OpportunityStatus = Literal["open", "won", "lost", "abandoned"]
TaskPriority = Literal["low", "normal", "high", "urgent"]
TaskStatus = Literal["open", "in_progress", "done", "canceled"]
InteractionChannel = Literal["chat", "email", "sms", "whatsapp", "call", "meeting", "note"]
InteractionDirection = Literal["in", "out"]
SortOrder = Literal["asc", "desc"]

TagName = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1, max_length=64)]
Phone = Annotated[str, StringConstraints(strip_whitespace=True, min_length=3, max_length=32)]
CurrencyCode = Annotated[str, StringConstraints(pattern=r"^[A-Z]{3}$")]


class Pagination(BaseModel):
    page: int
    limit: int
    total: int
    pages: int


class PageParams(BaseModel):
    page: int = Field(default=1, ge=1)
    limit: int = Field(default=20, ge=1, le=100)


# auth


class TokenRequest(BaseModel):
    username: str = Field(min_length=1)
    password: str = Field(min_length=1)
    tenant_id: UUID


class TokenUser(BaseModel):
    id: UUID
    name: str
    email: str
    role: str
    tenant: str | None


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "Bearer"
    expires_in: int
    user: TokenUser


class MeRead(BaseModel):
    id: UUID
    name: str
    email: str
    role: str
    tenant_id: UUID
    tenant: str | None


# users


class UserCreate(BaseModel):
    email: EmailStr
    name: str = Field(min_length=1, max_length=255)
    role: UserRole = "agent"
    password: str = Field(min_length=8, max_length=72)
    is_active: bool = True


class UserUpdate(BaseModel):
    email: EmailStr | None = None
    name: str | None = Field(default=None, min_length=1, max_length=255)
    role: UserRole | None = None
    password: str | None = Field(default=None, min_length=8, max_length=72)
    is_active: bool | None = None


class UserRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    email: str
    name: str
    role: str
    is_active: bool
    created_at: datetime
    updated_at: datetime


class UserListParams(PageParams):
    role: UserRole | None = None
    is_active: bool | None = None
    search: str | None = Field(default=None, max_length=255)
    sort: Literal["name", "email", "created_at"] = "name"
    order: SortOrder = "asc"


class UserList(BaseModel):
    users: list[UserRead]
    pagination: Pagination


class UserRoleStats(BaseModel):
    role: str
    count: int
    active_count: int


# companies


class CompanyCreate(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    website: str | None = Field(default=None, max_length=255)
    phone: Phone | None = None
    address: str | None = None


class CompanyUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=255)
    website: str | None = Field(default=None, max_length=255)
    phone: Phone | None = None
    address: str | None = None


class CompanyRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    website: str | None
    phone: str | None
    address: str | None
    created_at: datetime
    updated_at: datetime


class CompanyListItem(CompanyRead):
    contact_count: int = 0
    opportunity_count: int = 0
    total_won_value: Decimal = Decimal("0")
    last_contact_date: datetime | None = None


class CompanyListParams(PageParams):
    search: str | None = Field(default=None, max_length=255)
    created_after: datetime | None = None
    created_before: datetime | None = None
    sort: Literal["name", "created_at", "contact_count", "opportunity_count", "total_won_value"] = "created_at"
    order: SortOrder = "desc"


class CompanyList(BaseModel):
    companies: list[CompanyListItem]
    pagination: Pagination


class CompanyStats(BaseModel):
    total_companies: int
    new_this_month: int
    new_this_week: int


# contacts


class ContactCreate(BaseModel):
    first_name: str | None = Field(default=None, max_length=100)
    last_name: str | None = Field(default=None, max_length=100)
    email: EmailStr | None = None
    phone: Phone | None = None
    dob: date | None = None
    company_id: UUID | None = None
    kf_visitor_id: str | None = Field(default=None, max_length=128)
    source: ContactSource = "manual"


class ContactUpdate(BaseModel):
    first_name: str | None = Field(default=None, max_length=100)
    last_name: str | None = Field(default=None, max_length=100)
    email: EmailStr | None = None
    phone: Phone | None = None
    dob: date | None = None
    company_id: UUID | None = None
    kf_visitor_id: str | None = Field(default=None, max_length=128)
    source: ContactSource | None = None


class ContactRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    first_name: str | None
    last_name: str | None
    email: str | None
    phone: str | None
    dob: date | None
    company_id: UUID | None
    kf_visitor_id: str | None
    source: str
    created_at: datetime
    updated_at: datetime


class ContactListItem(ContactRead):
    company_name: str | None = None
    company_website: str | None = None
    lead_count: int = 0


class ContactListParams(PageParams):
    source: ContactSource | None = None
    company_id: UUID | None = None
    search: str | None = Field(default=None, max_length=255)
    created_after: datetime | None = None
    created_before: datetime | None = None
    sort: Literal["created_at", "updated_at", "first_name", "last_name"] = "created_at"
    order: SortOrder = "desc"


class ContactSearchParams(BaseModel):
    q: str = Field(min_length=2, max_length=255)
    limit: int = Field(default=10, ge=1, le=50)


class ContactList(BaseModel):
    contacts: list[ContactListItem]
    pagination: Pagination


class ContactSourceStats(BaseModel):
    source: str
    count: int
    recent_count: int


# leads


class LeadContactInput(BaseModel):
    first_name: str | None = Field(default=None, max_length=100)
    last_name: str | None = Field(default=None, max_length=100)
    email: EmailStr | None = None
    phone: Phone | None = None
    dob: date | None = None
    kf_visitor_id: str | None = Field(default=None, max_length=128)


class LeadCreate(BaseModel):
    title: str = Field(min_length=1, max_length=255)
    contact_id: UUID | None = None
    contact: LeadContactInput | None = None
    owner_user_id: UUID | None = None
    status: LeadStatus = "new"
    stage: LeadStage = "lead"
    score: int = Field(default=0, ge=0, le=100)
    source: LeadSource = "manual"
    exhibition_id: int | None = None
    join_id: int | None = None
    utm_source: str | None = Field(default=None, max_length=255)
    utm_medium: str | None = Field(default=None, max_length=255)
    utm_campaign: str | None = Field(default=None, max_length=255)
    notes: str | None = None
    tags: list[TagName] = Field(default_factory=list)

    @model_validator(mode="after")
    def _single_contact_reference(self) -> LeadCreate:
        if self.contact_id is not None and self.contact is not None:
            raise ValueError("provide either contact_id or contact, not both")
        return self


class LeadUpdate(BaseModel):
    title: str | None = Field(default=None, min_length=1, max_length=255)
    contact_id: UUID | None = None
    owner_user_id: UUID | None = None
    status: LeadStatus | None = None
    stage: LeadStage | None = None
    score: int | None = Field(default=None, ge=0, le=100)
    source: LeadSource | None = None
    exhibition_id: int | None = None
    join_id: int | None = None
    utm_source: str | None = Field(default=None, max_length=255)
    utm_medium: str | None = Field(default=None, max_length=255)
    utm_campaign: str | None = Field(default=None, max_length=255)
    notes: str | None = None


class LeadRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    contact_id: UUID | None
    owner_user_id: UUID | None
    title: str
    status: str
    stage: str
    score: int
    source: str
    exhibition_id: int | None
    join_id: int | None
    utm_source: str | None
    utm_medium: str | None
    utm_campaign: str | None
    notes: str | None
    created_at: datetime
    updated_at: datetime


class LeadListItem(LeadRead):
    contact_first_name: str | None = None
    contact_last_name: str | None = None
    contact_email: str | None = None
    contact_phone: str | None = None
    company_name: str | None = None
    owner_name: str | None = None


class LeadDetail(LeadListItem):
    owner_email: str | None = None
    company_website: str | None = None
    tags: list[str] = Field(default_factory=list)


class LeadListParams(PageParams):
    status: LeadStatus | None = None
    stage: LeadStage | None = None
    source: LeadSource | None = None
    owner_user_id: UUID | None = None
    exhibition_id: int | None = None
    created_after: datetime | None = None
    created_before: datetime | None = None
    q: str | None = Field(default=None, max_length=255)
    sort: Literal["created_at", "updated_at", "score"] = "created_at"
    order: SortOrder = "desc"


class LeadList(BaseModel):
    leads: list[LeadListItem]
    pagination: Pagination


class LeadStatsRow(BaseModel):
    status: str
    stage: str
    count: int
    avg_score: float | None
    recent_count: int


class LeaderboardRow(BaseModel):
    owner_user_id: UUID
    owner_name: str
    owner_email: str
    total_leads: int
    converted_leads: int
    avg_score: float | None
    conversion_rate: float


class LeadTagsRequest(BaseModel):
    tags: list[TagName] = Field(min_length=1, max_length=50)


# tags


class TagRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    created_at: datetime
    lead_count: int = 0


class TagUpdate(BaseModel):
    name: TagName


class TagListParams(PageParams):
    search: str | None = Field(default=None, max_length=64)
    sort: Literal["name", "created_at", "lead_count"] = "name"
    order: SortOrder = "asc"


class TagList(BaseModel):
    tags: list[TagRead]
    pagination: Pagination


# pipelines


class PipelineStageCreate(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    probability: int = Field(default=0, ge=0, le=100)


class PipelineStageRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    pipeline_id: UUID
    name: str
    position: int
    probability: int
    created_at: datetime


class PipelineCreate(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    is_default: bool = False


class PipelineRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    is_default: bool
    created_at: datetime
    updated_at: datetime
    stages: list[PipelineStageRead] = Field(default_factory=list)


# opportunities


class OpportunityCreate(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    lead_id: UUID | None = None
    contact_id: UUID | None = None
    company_id: UUID | None = None
    pipeline_id: UUID
    stage_id: UUID
    amount: Decimal = Field(default=Decimal("0"), ge=0, max_digits=14, decimal_places=2)
    currency: CurrencyCode | None = None
    status: OpportunityStatus = "open"
    close_date: date | None = None


class OpportunityUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=255)
    lead_id: UUID | None = None
    contact_id: UUID | None = None
    company_id: UUID | None = None
    pipeline_id: UUID | None = None
    stage_id: UUID | None = None
    amount: Decimal | None = Field(default=None, ge=0, max_digits=14, decimal_places=2)
    currency: CurrencyCode | None = None
    status: OpportunityStatus | None = None
    close_date: date | None = None


class OpportunityRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    lead_id: UUID | None
    contact_id: UUID | None
    company_id: UUID | None
    pipeline_id: UUID
    stage_id: UUID
    amount: Decimal
    currency: str
    status: str
    close_date: date | None
    created_at: datetime
    updated_at: datetime


class OpportunityListItem(OpportunityRead):
    contact_first_name: str | None = None
    contact_last_name: str | None = None
    contact_email: str | None = None
    company_name: str | None = None
    pipeline_name: str | None = None
    stage_name: str | None = None
    stage_probability: int | None = None
    lead_title: str | None = None


class OpportunityListParams(PageParams):
    status: OpportunityStatus | None = None
    pipeline_id: UUID | None = None
    stage_id: UUID | None = None
    company_id: UUID | None = None
    contact_id: UUID | None = None
    close_after: date | None = None
    close_before: date | None = None
    q: str | None = Field(default=None, max_length=255)
    sort: Literal["created_at", "updated_at", "amount", "close_date", "name"] = "created_at"
    order: SortOrder = "desc"


class OpportunityList(BaseModel):
    opportunities: list[OpportunityListItem]
    pagination: Pagination


class OpportunityStats(BaseModel):
    total: int
    open: int
    won: int
    lost: int
    open_value: Decimal
    won_value: Decimal
    lost_value: Decimal


# tasks


class TaskCreate(BaseModel):
    title: str = Field(min_length=1, max_length=255)
    lead_id: UUID | None = None
    contact_id: UUID | None = None
    assigned_to: UUID | None = None
    due_at: datetime | None = None
    priority: TaskPriority = "normal"
    status: TaskStatus = "open"


class TaskUpdate(BaseModel):
    title: str | None = Field(default=None, min_length=1, max_length=255)
    lead_id: UUID | None = None
    contact_id: UUID | None = None
    assigned_to: UUID | None = None
    due_at: datetime | None = None
    priority: TaskPriority | None = None
    status: TaskStatus | None = None


class TaskRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    title: str
    lead_id: UUID | None
    contact_id: UUID | None
    assigned_to: UUID | None
    created_by: UUID | None
    due_at: datetime | None
    priority: str
    status: str
    created_at: datetime
    updated_at: datetime


class TaskListItem(TaskRead):
    assigned_to_name: str | None = None
    lead_title: str | None = None
    contact_first_name: str | None = None
    contact_last_name: str | None = None


class TaskListParams(PageParams):
    status: TaskStatus | None = None
    priority: TaskPriority | None = None
    assigned_to: UUID | None = None
    lead_id: UUID | None = None
    contact_id: UUID | None = None
    due_after: datetime | None = None
    due_before: datetime | None = None


class TaskList(BaseModel):
    tasks: list[TaskListItem]
    pagination: Pagination


class TaskStatsRow(BaseModel):
    status: str
    priority: str
    count: int
    overdue_count: int


# interactions


class InteractionCreate(BaseModel):
    lead_id: UUID | None = None
    contact_id: UUID | None = None
    channel: InteractionChannel
    direction: InteractionDirection = "out"
    subject: str | None = Field(default=None, max_length=255)
    body: str | None = None
    meta: dict[str, Any] = Field(default_factory=dict)
    occurred_at: datetime | None = None


class InteractionRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    lead_id: UUID | None
    contact_id: UUID | None
    channel: str
    direction: str
    subject: str | None
    body: str | None
    meta: dict[str, Any]
    occurred_at: datetime
    created_by: UUID | None
    created_at: datetime


class InteractionListItem(InteractionRead):
    lead_title: str | None = None
    contact_first_name: str | None = None
    contact_last_name: str | None = None
    creator_name: str | None = None


class InteractionListParams(PageParams):
    lead_id: UUID | None = None
    contact_id: UUID | None = None
    channel: InteractionChannel | None = None
    direction: InteractionDirection | None = None
    date_from: datetime | None = None
    date_to: datetime | None = None
    q: str | None = Field(default=None, max_length=255)
    sort: Literal["occurred_at", "created_at"] = "occurred_at"
    order: SortOrder = "desc"


class InteractionTimelineParams(BaseModel):
    lead_id: UUID | None = None
    contact_id: UUID | None = None
    limit: int = Field(default=50, ge=1, le=50)

    @model_validator(mode="after")
    def _requires_subject(self) -> InteractionTimelineParams:
        if self.lead_id is None and self.contact_id is None:
            raise ValueError("lead_id or contact_id is required")
        return self


class InteractionList(BaseModel):
    interactions: list[InteractionListItem]
    pagination: Pagination


class InteractionStatsRow(BaseModel):
    channel: str
    direction: str
    count: int
    recent_count: int


# webhook


class FairexVisitor(BaseModel):
    first_name: str | None = Field(default=None, max_length=100)
    last_name: str | None = Field(default=None, max_length=100)
    email: EmailStr | None = None
    phone: Phone | None = None
    kf_visitor_id: str | int | None = None
    dob: date | None = None


class FairexLeadCaptured(BaseModel):
    tenant_id: UUID
    visitor: FairexVisitor
    exhibition_id: int
    join_id: int
    scan_time: datetime | None = None
    context: dict[str, Any] | None = None


class LeadCapturedRead(BaseModel):
    lead_id: UUID
    contact_id: UUID | None
    message: str = "Lead captured successfully"
