"""FairEx lead-captured webhook: one transaction from tenant check to activity entry."""

from __future__ import annotations

import hashlib
import hmac
import logging
import time
import uuid

from opentelemetry import trace
from sqlalchemy.orm import Session

from app.context import get_correlation_id
from app.core.config import get_settings
from app.core.errors import AuthenticationError, CRMError, TransactionFailure, ValidationFailure
from app.crm.dedup import IncomingContact, resolve_contact
from app.crm.models import Lead, Tenant, utcnow
from app.crm.schemas import FairexLeadCaptured, LeadCapturedRead
from app.metrics import observe_auth_failure, observe_webhook_ingestion
from app.platform.security.rls import bind_tenant
from app.services.activity_log import record_activity


logger = logging.getLogger("app.crm.ingestion")
tracer = trace.get_tracer("app.crm.ingestion")

SIGNATURE_HEADER = "X-Webhook-Signature"


def verify_signature(body: bytes, signature: str | None) -> None:
    """Check the hex HMAC-SHA256 of the raw body when a webhook secret is configured."""

    secret = get_settings().webhook_secret
    if not secret:
        return
    expected = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    provided = (signature or "").strip().removeprefix("sha256=")
    if not hmac.compare_digest(expected, provided):
        observe_auth_failure("bad_signature")
        logger.warning("webhook.signature_rejected", extra={"reason": "bad_signature"})
        raise AuthenticationError("Invalid signature", reason="bad_signature")


def lead_title(first_name: str | None, last_name: str | None) -> str:
    return f"FairEx Lead - {first_name or 'Visitor'} {last_name or ''}".strip()


class LeadCaptureService:
    source = "fairex"

    def capture_lead(self, session: Session, payload: FairexLeadCaptured) -> LeadCapturedRead:
        started = time.perf_counter()
        outcome = "failed"

        with tracer.start_as_current_span("crm.webhook.lead_captured") as span:
            span.set_attribute("tenant_id", str(payload.tenant_id))
            span.set_attribute("exhibition_id", payload.exhibition_id)
            span.set_attribute("join_id", payload.join_id)
            span.set_attribute("correlation_id", get_correlation_id() or "")
            try:
                tenant = session.get(Tenant, payload.tenant_id)
                if tenant is None:
                    outcome = "invalid_tenant"
                    raise ValidationFailure.for_field("tenant_id", "Invalid tenant ID")

                bind_tenant(session, tenant.id, source="webhook")
                lead = self._write_lead(session, payload)
                session.commit()
                outcome = "succeeded"
            except CRMError:
                session.rollback()
                raise
            except Exception as exc:
                session.rollback()
                span.record_exception(exc)
                logger.error(
                    "webhook.failed",
                    exc_info=True,
                    extra={"tenant_id": str(payload.tenant_id), "exhibition_id": payload.exhibition_id, "error": str(exc)},
                )
                raise TransactionFailure("Webhook processing failed") from exc
            finally:
                span.set_attribute("outcome", outcome)
                observe_webhook_ingestion(outcome, time.perf_counter() - started)

            span.set_attribute("lead_id", str(lead.id))

        logger.info(
            "webhook.lead_captured",
            extra={
                "tenant_id": str(payload.tenant_id),
                "lead_id": str(lead.id),
                "contact_id": str(lead.contact_id) if lead.contact_id else None,
                "exhibition_id": payload.exhibition_id,
                "duration_ms": round((time.perf_counter() - started) * 1000, 2),
            },
        )
        return LeadCapturedRead(lead_id=lead.id, contact_id=lead.contact_id)

    def _write_lead(self, session: Session, payload: FairexLeadCaptured) -> Lead:
        visitor = payload.visitor
        tenant_id = payload.tenant_id

        contact_id: uuid.UUID | None = None
        incoming = IncomingContact(
            first_name=visitor.first_name,
            last_name=visitor.last_name,
            email=visitor.email,
            phone=visitor.phone,
            dob=visitor.dob,
            kf_visitor_id=str(visitor.kf_visitor_id) if visitor.kf_visitor_id is not None else None,
        )
        if incoming.has_match_keys:
            contact, created = resolve_contact(session, tenant_id, incoming, source=self.source)
            contact_id = contact.id
            logger.info(
                "webhook.contact_resolved",
                extra={"tenant_id": str(tenant_id), "contact_id": str(contact.id), "contact_reused": not created},
            )

        context = payload.context or {}
        captured_at = payload.scan_time or utcnow()
        notes = context.get("notes") or f"Lead captured from FairEx exhibition at {captured_at.isoformat()}"
        lead = Lead(
            tenant_id=tenant_id,
            contact_id=contact_id,
            title=lead_title(visitor.first_name, visitor.last_name),
            status="new",
            stage="lead",
            score=0,
            source=self.source,
            exhibition_id=payload.exhibition_id,
            join_id=payload.join_id,
            notes=str(notes),
        )
        session.add(lead)
        session.flush()

        record_activity(
            session,
            tenant_id=tenant_id,
            entity="lead",
            entity_id=lead.id,
            action="created_via_webhook",
            after={
                "source": "fairex_webhook",
                "exhibition_id": payload.exhibition_id,
                "join_id": payload.join_id,
                "context": context,
            },
            occurred_at=captured_at,
        )
        return lead
