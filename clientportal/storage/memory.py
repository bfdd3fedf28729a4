from __future__ import annotations

import threading
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Dict, Optional

from clientportal.logging import get_logger
from clientportal.storage.errors import ConstraintViolation
from clientportal.storage.models import (
    CASE_ACTIVE_STATUSES,
    CASE_CLOSED_STATUSES,
    CASE_STATUSES,
    CASE_WAITING_STATUSES,
    DOCUMENT_STATUSES,
    INVOICE_STATUSES,
    Account,
    Case,
    CaseMetrics,
    CommunicationMetrics,
    DashboardMetrics,
    Document,
    DocumentMetrics,
    FinancialMetrics,
    Invoice,
    Message,
    Tenant,
    ensure_utc,
    new_id,
    utcnow,
)


class MemoryStore:
    """In-memory backing store for tests and local development."""

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.tenants: Dict[str, Tenant] = {}
        self.accounts: Dict[str, Account] = {}
        self.cases: Dict[str, Case] = {}
        self.invoices: Dict[str, Invoice] = {}
        self.documents: Dict[str, Document] = {}
        self.messages: Dict[str, Message] = {}
        # RLock so helpers can nest acquisitions within the same thread
        self._data_lock = threading.RLock()

    # -- tenants and accounts -------------------------------------------------

    def create_tenant(
        self, name: str, business_identity: Optional[str] = None, *, tenant_id: Optional[str] = None
    ) -> Tenant:
        with self._data_lock:
            tenant_id = tenant_id or new_id()
            if tenant_id in self.tenants:
                raise ConstraintViolation("tenant already exists", {"field": "id"})
            tenant = Tenant(id=tenant_id, name=name, business_identity=business_identity)
            self.tenants[tenant_id] = tenant
            return tenant

    def get_tenant(self, tenant_id: str) -> Optional[Tenant]:
        with self._data_lock:
            return self.tenants.get(tenant_id)

    def create_account(
        self,
        email: str,
        tenant_id: str,
        password_hash: str,
        password_algo: str = "argon2id",
        *,
        enabled: bool = True,
    ) -> Account:
        email = email.strip().lower()
        with self._data_lock:
            if tenant_id not in self.tenants:
                raise ConstraintViolation("tenant not found for account", {"tenant_id": tenant_id})
            if any(existing.email == email for existing in self.accounts.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            account = Account(
                id=new_id(),
                email=email,
                tenant_id=tenant_id,
                password_hash=password_hash,
                password_algo=password_algo,
                enabled=enabled,
            )
            self.accounts[account.id] = account
            self.logger.info("account_created", account_id=account.id, tenant_id=tenant_id)
            return replace(account)

    def get_account_by_email(self, email: str) -> Optional[Account]:
        email = email.strip().lower()
        with self._data_lock:
            account = next((a for a in self.accounts.values() if a.email == email), None)
            # hand out copies so callers never mutate stored state directly
            return replace(account) if account else None

    def get_account(self, account_id: str) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            return replace(account) if account else None

    def _require_account(self, account_id: str) -> Account:
        account = self.accounts.get(account_id)
        if not account:
            raise ConstraintViolation("account not found", {"account_id": account_id})
        return account

    def set_account_enabled(self, account_id: str, enabled: bool) -> None:
        with self._data_lock:
            self._require_account(account_id).enabled = enabled

    def save_password(self, account_id: str, password_hash: str, password_algo: str) -> None:
        with self._data_lock:
            account = self._require_account(account_id)
            account.password_hash = password_hash
            account.password_algo = password_algo

    def increment_failed_attempts(self, account_id: str, *, now: datetime) -> int:
        with self._data_lock:
            account = self._require_account(account_id)
            if account.locked_until is not None and now >= ensure_utc(account.locked_until):
                # lock ran out: start counting again from scratch
                account.locked_until = None
                account.failed_attempts = 0
            account.failed_attempts += 1
            return account.failed_attempts

    def set_locked_until(self, account_id: str, until: datetime) -> None:
        with self._data_lock:
            self._require_account(account_id).locked_until = until

    def record_login_success(self, account_id: str, *, now: datetime) -> None:
        with self._data_lock:
            account = self._require_account(account_id)
            account.failed_attempts = 0
            account.locked_until = None
            account.last_login_at = now

    # -- business records -----------------------------------------------------

    def create_case(
        self,
        tenant_id: str,
        title: str,
        *,
        status: str = "open",
        progress_percentage: int = 0,
        due_date: Optional[datetime] = None,
        priority: str = "medium",
    ) -> Case:
        if status not in CASE_STATUSES:
            raise ConstraintViolation("invalid case status", {"status": status})
        with self._data_lock:
            case = Case(
                id=new_id(),
                tenant_id=tenant_id,
                title=title,
                status=status,
                priority=priority,
                progress_percentage=progress_percentage,
                due_date=due_date,
            )
            self.cases[case.id] = case
            return replace(case)

    def update_case_status(
        self, tenant_id: str, case_id: str, status: str, *, progress_percentage: Optional[int] = None
    ) -> Optional[Case]:
        if status not in CASE_STATUSES:
            raise ConstraintViolation("invalid case status", {"status": status})
        with self._data_lock:
            case = self.cases.get(case_id)
            if not case or case.tenant_id != tenant_id:
                return None
            case.status = status
            if progress_percentage is not None:
                case.progress_percentage = progress_percentage
            case.updated_at = utcnow()
            return replace(case)

    def create_invoice(
        self,
        tenant_id: str,
        amount: float,
        *,
        status: str = "pending",
        due_date: Optional[datetime] = None,
    ) -> Invoice:
        if status not in INVOICE_STATUSES:
            raise ConstraintViolation("invalid invoice status", {"status": status})
        with self._data_lock:
            invoice = Invoice(
                id=new_id(), tenant_id=tenant_id, amount=float(amount), status=status, due_date=due_date
            )
            self.invoices[invoice.id] = invoice
            return replace(invoice)

    def update_invoice_status(self, tenant_id: str, invoice_id: str, status: str) -> Optional[Invoice]:
        if status not in INVOICE_STATUSES:
            raise ConstraintViolation("invalid invoice status", {"status": status})
        with self._data_lock:
            invoice = self.invoices.get(invoice_id)
            if not invoice or invoice.tenant_id != tenant_id:
                return None
            invoice.status = status
            invoice.updated_at = utcnow()
            return replace(invoice)

    def add_document(
        self,
        tenant_id: str,
        name: str,
        *,
        uploaded_by: Optional[str] = None,
        signature_required: bool = False,
        status: str = "pending",
        uploaded_at: Optional[datetime] = None,
    ) -> Document:
        if status not in DOCUMENT_STATUSES:
            raise ConstraintViolation("invalid document status", {"status": status})
        with self._data_lock:
            document = Document(
                id=new_id(),
                tenant_id=tenant_id,
                name=name,
                uploaded_by=uploaded_by,
                signature_required=signature_required,
                status=status,
                uploaded_at=uploaded_at or utcnow(),
            )
            self.documents[document.id] = document
            return replace(document)

    def add_message(
        self,
        tenant_id: str,
        sender_id: str,
        recipient_type: str,
        body: str,
        *,
        created_at: Optional[datetime] = None,
    ) -> Message:
        with self._data_lock:
            message = Message(
                id=new_id(),
                tenant_id=tenant_id,
                sender_id=sender_id,
                recipient_type=recipient_type,
                body=body,
                created_at=created_at or utcnow(),
            )
            self.messages[message.id] = message
            return replace(message)

    def mark_message_read(self, tenant_id: str, message_id: str) -> Optional[Message]:
        with self._data_lock:
            message = self.messages.get(message_id)
            if not message or message.tenant_id != tenant_id:
                return None
            message.read_by_recipient = True
            return replace(message)

    # -- aggregates -----------------------------------------------------------

    def compute_dashboard_metrics(self, tenant_id: str, *, now: Optional[datetime] = None) -> DashboardMetrics:
        now = now or utcnow()
        with self._data_lock:
            cases = [c for c in self.cases.values() if c.tenant_id == tenant_id]
            invoices = [i for i in self.invoices.values() if i.tenant_id == tenant_id]
            documents = [d for d in self.documents.values() if d.tenant_id == tenant_id]
            messages = [m for m in self.messages.values() if m.tenant_id == tenant_id]

        not_finished = CASE_CLOSED_STATUSES | {"cancelled"}
        case_metrics = CaseMetrics(
            total=len(cases),
            active=sum(1 for c in cases if c.status in CASE_ACTIVE_STATUSES),
            waiting=sum(1 for c in cases if c.status in CASE_WAITING_STATUSES),
            closed=sum(1 for c in cases if c.status in CASE_CLOSED_STATUSES),
            overdue=sum(
                1
                for c in cases
                if c.due_date is not None
                and ensure_utc(c.due_date) < now
                and c.status not in not_finished
            ),
            average_progress=(
                int(sum(c.progress_percentage for c in cases) / len(cases)) if cases else 0
            ),
        )
        financial = FinancialMetrics(
            total_amount=round(sum(i.amount for i in invoices), 2),
            pending_amount=round(sum(i.amount for i in invoices if i.status == "pending"), 2),
            paid_amount=round(sum(i.amount for i in invoices if i.status == "paid"), 2),
            overdue_amount=round(sum(i.amount for i in invoices if i.status == "overdue"), 2),
            overdue_count=sum(1 for i in invoices if i.status == "overdue"),
        )
        recent_docs_since = now - timedelta(days=30)
        document_metrics = DocumentMetrics(
            total=len(documents),
            recent=sum(1 for d in documents if ensure_utc(d.uploaded_at) >= recent_docs_since),
            pending_signatures=sum(
                1 for d in documents if d.signature_required and d.status != "signed"
            ),
        )
        recent_msgs_since = now - timedelta(days=7)
        communication = CommunicationMetrics(
            total_messages=len(messages),
            unread_messages=sum(
                1 for m in messages if m.recipient_type == "client" and not m.read_by_recipient
            ),
            recent_messages=sum(1 for m in messages if ensure_utc(m.created_at) >= recent_msgs_since),
        )
        return DashboardMetrics(
            tenant_id=tenant_id,
            cases=case_metrics,
            financial=financial,
            documents=document_metrics,
            communications=communication,
            generated_at=now,
        )
