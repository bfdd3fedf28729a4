from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Normalize naive or offset datetimes to aware UTC."""

    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


# Case statuses grouped the way the dashboard reports them
CASE_ACTIVE_STATUSES = frozenset({"open", "in_progress"})
CASE_WAITING_STATUSES = frozenset({"waiting_client", "waiting_court"})
CASE_CLOSED_STATUSES = frozenset({"closed_won", "closed_lost"})
CASE_STATUSES = CASE_ACTIVE_STATUSES | CASE_WAITING_STATUSES | CASE_CLOSED_STATUSES | {"cancelled"}

INVOICE_STATUSES = frozenset({"pending", "paid", "overdue", "cancelled"})
DOCUMENT_STATUSES = frozenset({"pending", "signed", "archived"})


@dataclass
class Tenant:
    id: str
    name: str
    business_identity: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class Account:
    id: str
    email: str
    tenant_id: str
    password_hash: str
    password_algo: str = "argon2id"
    enabled: bool = True
    failed_attempts: int = 0
    locked_until: Optional[datetime] = None
    last_login_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class VerifiedIdentity:
    """Identity proven by a credential check or an external identity provider."""

    subject_id: str
    email: str
    tenant_id: Optional[str]
    source: str = "credentials"


@dataclass
class SessionRecord:
    subject_id: str
    role: str
    tenant_scope: Optional[str]
    created_at: datetime
    last_activity_at: datetime
    expires_at: datetime
    ttl_seconds: int

    def to_payload(self) -> Dict[str, Any]:
        return {
            "subject_id": self.subject_id,
            "role": self.role,
            "tenant_scope": self.tenant_scope,
            "created_at": self.created_at.isoformat(),
            "last_activity_at": self.last_activity_at.isoformat(),
            "expires_at": self.expires_at.isoformat(),
            "ttl_seconds": self.ttl_seconds,
        }

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "SessionRecord":
        return cls(
            subject_id=str(payload["subject_id"]),
            role=str(payload["role"]),
            tenant_scope=payload.get("tenant_scope"),
            created_at=ensure_utc(datetime.fromisoformat(payload["created_at"])),
            last_activity_at=ensure_utc(
                datetime.fromisoformat(payload["last_activity_at"])
            ),
            expires_at=ensure_utc(datetime.fromisoformat(payload["expires_at"])),
            ttl_seconds=int(payload["ttl_seconds"]),
        )


@dataclass
class Case:
    id: str
    tenant_id: str
    title: str
    status: str = "open"
    priority: str = "medium"
    progress_percentage: int = 0
    due_date: Optional[datetime] = None
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class Invoice:
    id: str
    tenant_id: str
    amount: float
    status: str = "pending"
    due_date: Optional[datetime] = None
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class Document:
    id: str
    tenant_id: str
    name: str
    uploaded_by: Optional[str] = None
    signature_required: bool = False
    status: str = "pending"
    uploaded_at: datetime = field(default_factory=utcnow)


@dataclass
class Message:
    id: str
    tenant_id: str
    sender_id: str
    recipient_type: str
    body: str
    read_by_recipient: bool = False
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class CaseMetrics:
    total: int = 0
    active: int = 0
    waiting: int = 0
    closed: int = 0
    overdue: int = 0
    average_progress: int = 0


@dataclass
class FinancialMetrics:
    total_amount: float = 0.0
    pending_amount: float = 0.0
    paid_amount: float = 0.0
    overdue_amount: float = 0.0
    overdue_count: int = 0


@dataclass
class DocumentMetrics:
    total: int = 0
    recent: int = 0
    pending_signatures: int = 0


@dataclass
class CommunicationMetrics:
    total_messages: int = 0
    unread_messages: int = 0
    recent_messages: int = 0


@dataclass
class DashboardMetrics:
    tenant_id: str
    cases: CaseMetrics = field(default_factory=CaseMetrics)
    financial: FinancialMetrics = field(default_factory=FinancialMetrics)
    documents: DocumentMetrics = field(default_factory=DocumentMetrics)
    communications: CommunicationMetrics = field(default_factory=CommunicationMetrics)
    generated_at: datetime = field(default_factory=utcnow)

    def alerts(self) -> List[Dict[str, Any]]:
        found: List[Dict[str, Any]] = []
        if self.financial.overdue_amount > 0:
            found.append(
                {
                    "type": "overdue_invoices",
                    "count": self.financial.overdue_count,
                    "amount": self.financial.overdue_amount,
                }
            )
        if self.cases.overdue > 0:
            found.append({"type": "overdue_cases", "count": self.cases.overdue})
        if self.communications.unread_messages > 0:
            found.append(
                {"type": "unread_messages", "count": self.communications.unread_messages}
            )
        if self.documents.pending_signatures > 0:
            found.append(
                {"type": "pending_signatures", "count": self.documents.pending_signatures}
            )
        return found

    def to_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload["generated_at"] = self.generated_at.isoformat()
        payload["alerts"] = self.alerts()
        return payload
