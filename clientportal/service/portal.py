from __future__ import annotations

from datetime import datetime
from typing import Any, Callable, Dict, Optional

from clientportal.logging import get_logger
from clientportal.service.auth import AuthContext
from clientportal.service.errors import NotFoundError, ValidationError
from clientportal.service.metrics_cache import MetricsCache
from clientportal.service.rbac import PermissionResolver, Role
from clientportal.storage.errors import ConstraintViolation
from clientportal.storage.models import Case, Document, Invoice, Message, utcnow

logger = get_logger(__name__)


class PortalService:
    """Tenant-scoped portal reads and writes.

    Every call checks the action permission first and tenant isolation
    second. Writes that feed the dashboard drop the tenant's cached metrics.
    """

    def __init__(
        self,
        store,
        metrics_cache: MetricsCache,
        permissions: PermissionResolver,
        *,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.store = store
        self.metrics_cache = metrics_cache
        self.permissions = permissions
        self._clock = clock or utcnow

    def _authorize(self, principal: AuthContext, action: str, tenant_id: str) -> None:
        self.permissions.require(principal.role, action)
        self.permissions.require_tenant_access(principal.role, principal.tenant_scope, tenant_id)

    async def _invalidate(self, tenant_id: str) -> None:
        await self.metrics_cache.invalidate(tenant_id)

    async def dashboard(self, principal: AuthContext, tenant_id: str) -> Dict[str, Any]:
        self._authorize(principal, "view_dashboard", tenant_id)
        if self.store.get_tenant(tenant_id) is None:
            raise NotFoundError("tenant not found")

        def _compute() -> Dict[str, Any]:
            return self.store.compute_dashboard_metrics(tenant_id, now=self._clock()).to_dict()

        return await self.metrics_cache.get_or_compute(tenant_id, _compute)

    async def update_case_status(
        self,
        principal: AuthContext,
        tenant_id: str,
        case_id: str,
        status: str,
        *,
        progress_percentage: Optional[int] = None,
    ) -> Case:
        self._authorize(principal, "update_case_status", tenant_id)
        try:
            case = self.store.update_case_status(
                tenant_id, case_id, status, progress_percentage=progress_percentage
            )
        except ConstraintViolation as exc:
            raise ValidationError(exc.message, detail=exc.detail) from exc
        if case is None:
            raise NotFoundError("case not found")
        logger.info(
            "case_status_updated",
            tenant_id=tenant_id,
            case_id=case_id,
            status=status,
            subject_id=principal.subject_id,
        )
        await self._invalidate(tenant_id)
        return case

    async def update_invoice_status(
        self, principal: AuthContext, tenant_id: str, invoice_id: str, status: str
    ) -> Invoice:
        self._authorize(principal, "update_invoice_status", tenant_id)
        try:
            invoice = self.store.update_invoice_status(tenant_id, invoice_id, status)
        except ConstraintViolation as exc:
            raise ValidationError(exc.message, detail=exc.detail) from exc
        if invoice is None:
            raise NotFoundError("invoice not found")
        logger.info(
            "invoice_status_updated",
            tenant_id=tenant_id,
            invoice_id=invoice_id,
            status=status,
            subject_id=principal.subject_id,
        )
        await self._invalidate(tenant_id)
        return invoice

    async def record_document_upload(
        self,
        principal: AuthContext,
        tenant_id: str,
        name: str,
        *,
        signature_required: bool = False,
    ) -> Document:
        self._authorize(principal, "upload_documents", tenant_id)
        document = self.store.add_document(
            tenant_id,
            name,
            uploaded_by=principal.subject_id,
            signature_required=signature_required,
            uploaded_at=self._clock(),
        )
        logger.info("document_recorded", tenant_id=tenant_id, document_id=document.id)
        await self._invalidate(tenant_id)
        return document

    async def send_message(self, principal: AuthContext, tenant_id: str, body: str) -> Message:
        if principal.role == Role.CLIENT.value:
            action, recipient = "send_messages", "staff"
        else:
            action, recipient = "send_messages_to_clients", "client"
        self._authorize(principal, action, tenant_id)
        if not body or not body.strip():
            raise ValidationError("message body is required", detail={"field": "body"})
        message = self.store.add_message(
            tenant_id, principal.subject_id, recipient, body.strip(), created_at=self._clock()
        )
        logger.info(
            "message_sent", tenant_id=tenant_id, message_id=message.id, recipient_type=recipient
        )
        await self._invalidate(tenant_id)
        return message

    async def mark_message_read(
        self, principal: AuthContext, tenant_id: str, message_id: str
    ) -> Message:
        if principal.role == Role.CLIENT.value:
            action = "view_notifications"
        else:
            action = "view_client_communications"
        self._authorize(principal, action, tenant_id)
        message = self.store.mark_message_read(tenant_id, message_id)
        if message is None:
            raise NotFoundError("message not found")
        await self._invalidate(tenant_id)
        return message
