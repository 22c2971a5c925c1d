from fastapi import APIRouter, Depends
from fastapi.responses import Response

from app.core.config import get_settings
from app.core.errors import NotFoundError
from app.core.rbac import require_roles
from app.crm.api import (
    auth_router,
    companies_router,
    contacts_router,
    interactions_router,
    leads_router,
    opportunities_router,
    pipelines_router,
    tags_router,
    tasks_router,
    users_router,
    webhooks_router,
)
from app.metrics import generate_metrics_payload, metrics_content_type
from app.platform.security.context import TenantContext

router = APIRouter()
router.include_router(auth_router)
router.include_router(leads_router)
router.include_router(contacts_router)
router.include_router(companies_router)
router.include_router(opportunities_router)
router.include_router(pipelines_router)
router.include_router(tasks_router)
router.include_router(interactions_router)
router.include_router(tags_router)
router.include_router(users_router)
router.include_router(webhooks_router)


@router.get("/health", tags=["system"])
def health() -> dict[str, str]:
    settings = get_settings()
    return {
        "status": "ok",
        "service": settings.app_name,
        "environment": settings.app_env,
    }


@router.get("/metrics", tags=["system"])
def metrics(ctx: TenantContext = Depends(require_roles("admin"))) -> Response:
    if not get_settings().metrics_enabled:
        raise NotFoundError("Not found")
    return Response(content=generate_metrics_payload(), media_type=metrics_content_type())
