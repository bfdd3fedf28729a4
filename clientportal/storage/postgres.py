from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

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
    new_id,
    utcnow,
)

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS client_tenant (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        business_identity TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS client_portal_user (
        id TEXT PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        tenant_id TEXT NOT NULL REFERENCES client_tenant(id),
        password_hash TEXT NOT NULL,
        password_algo TEXT NOT NULL DEFAULT 'argon2id',
        portal_access_enabled BOOLEAN NOT NULL DEFAULT TRUE,
        failed_login_attempts INTEGER NOT NULL DEFAULT 0,
        locked_until TIMESTAMPTZ,
        last_login TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS portal_case (
        id TEXT PRIMARY KEY,
        tenant_id TEXT NOT NULL REFERENCES client_tenant(id),
        title TEXT NOT NULL,
        status TEXT NOT NULL,
        priority TEXT NOT NULL DEFAULT 'medium',
        progress_percentage INTEGER NOT NULL DEFAULT 0,
        due_date TIMESTAMPTZ,
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS portal_invoice (
        id TEXT PRIMARY KEY,
        tenant_id TEXT NOT NULL REFERENCES client_tenant(id),
        amount NUMERIC(14, 2) NOT NULL,
        status TEXT NOT NULL,
        due_date TIMESTAMPTZ,
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS portal_document (
        id TEXT PRIMARY KEY,
        tenant_id TEXT NOT NULL REFERENCES client_tenant(id),
        name TEXT NOT NULL,
        uploaded_by TEXT,
        signature_required BOOLEAN NOT NULL DEFAULT FALSE,
        status TEXT NOT NULL DEFAULT 'pending',
        uploaded_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS portal_message (
        id TEXT PRIMARY KEY,
        tenant_id TEXT NOT NULL REFERENCES client_tenant(id),
        sender_id TEXT NOT NULL,
        recipient_type TEXT NOT NULL,
        body TEXT NOT NULL,
        read_by_recipient BOOLEAN NOT NULL DEFAULT FALSE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
)


class PostgresStore:
    """Postgres-backed account, tenant and business record store."""

    def __init__(self, dsn: str) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=1,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        """Create portal tables if they are missing."""

        with self._connect() as conn:
            for statement in _SCHEMA:
                conn.execute(statement)

    def ping(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    @staticmethod
    def _account_from_row(row: Dict[str, Any]) -> Account:
        return Account(
            id=str(row["id"]),
            email=row["email"],
            tenant_id=str(row["tenant_id"]),
            password_hash=row["password_hash"],
            password_algo=row.get("password_algo") or "argon2id",
            enabled=bool(row.get("portal_access_enabled", True)),
            failed_attempts=int(row.get("failed_login_attempts") or 0),
            locked_until=row.get("locked_until"),
            last_login_at=row.get("last_login"),
            created_at=row.get("created_at") or utcnow(),
        )

    # -- tenants and accounts -------------------------------------------------

    def create_tenant(
        self, name: str, business_identity: Optional[str] = None, *, tenant_id: Optional[str] = None
    ) -> Tenant:
        tenant = Tenant(id=tenant_id or new_id(), name=name, business_identity=business_identity)
        try:
            with self._connect() as conn:
                conn.execute(
                    "INSERT INTO client_tenant (id, name, business_identity) VALUES (%s, %s, %s)",
                    (tenant.id, tenant.name, tenant.business_identity),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("tenant already exists", {"field": "id"})
        return tenant

    def get_tenant(self, tenant_id: str) -> Optional[Tenant]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM client_tenant WHERE id = %s", (tenant_id,)
            ).fetchone()
        if not row:
            return None
        return Tenant(
            id=str(row["id"]),
            name=row["name"],
            business_identity=row.get("business_identity"),
            created_at=row.get("created_at") or utcnow(),
        )

    def create_account(
        self,
        email: str,
        tenant_id: str,
        password_hash: str,
        password_algo: str = "argon2id",
        *,
        enabled: bool = True,
    ) -> Account:
        account = Account(
            id=new_id(),
            email=email.strip().lower(),
            tenant_id=tenant_id,
            password_hash=password_hash,
            password_algo=password_algo,
            enabled=enabled,
        )
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO client_portal_user
                        (id, email, tenant_id, password_hash, password_algo, portal_access_enabled)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    """,
                    (
                        account.id,
                        account.email,
                        tenant_id,
                        password_hash,
                        password_algo,
                        enabled,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("tenant not found for account", {"tenant_id": tenant_id})
        self.logger.info("account_created", account_id=account.id, tenant_id=tenant_id)
        return account

    def get_account_by_email(self, email: str) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM client_portal_user WHERE email = %s",
                (email.strip().lower(),),
            ).fetchone()
        return self._account_from_row(row) if row else None

    def get_account(self, account_id: str) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM client_portal_user WHERE id = %s", (account_id,)
            ).fetchone()
        return self._account_from_row(row) if row else None

    def set_account_enabled(self, account_id: str, enabled: bool) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE client_portal_user SET portal_access_enabled = %s WHERE id = %s",
                (enabled, account_id),
            )

    def save_password(self, account_id: str, password_hash: str, password_algo: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE client_portal_user SET password_hash = %s, password_algo = %s WHERE id = %s",
                (password_hash, password_algo, account_id),
            )

    def increment_failed_attempts(self, account_id: str, *, now: datetime) -> int:
        # A lock that ran out restarts the count; the single UPDATE keeps
        # concurrent failures from losing increments.
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE client_portal_user
                SET failed_login_attempts = CASE
                        WHEN locked_until IS NOT NULL AND locked_until <= %(now)s THEN 1
                        ELSE failed_login_attempts + 1
                    END,
                    locked_until = CASE
                        WHEN locked_until IS NOT NULL AND locked_until <= %(now)s THEN NULL
                        ELSE locked_until
                    END
                WHERE id = %(id)s
                RETURNING failed_login_attempts
                """,
                {"now": now, "id": account_id},
            ).fetchone()
        if not row:
            raise ConstraintViolation("account not found", {"account_id": account_id})
        return int(row["failed_login_attempts"])

    def set_locked_until(self, account_id: str, until: datetime) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE client_portal_user SET locked_until = %s WHERE id = %s",
                (until, account_id),
            )

    def record_login_success(self, account_id: str, *, now: datetime) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE client_portal_user
                SET failed_login_attempts = 0, locked_until = NULL, last_login = %s
                WHERE id = %s
                """,
                (now, account_id),
            )

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
        case = Case(
            id=new_id(),
            tenant_id=tenant_id,
            title=title,
            status=status,
            priority=priority,
            progress_percentage=progress_percentage,
            due_date=due_date,
        )
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO portal_case (id, tenant_id, title, status, priority, progress_percentage, due_date)
                VALUES (%s, %s, %s, %s, %s, %s, %s)
                """,
                (case.id, tenant_id, title, status, priority, progress_percentage, due_date),
            )
        return case

    def update_case_status(
        self, tenant_id: str, case_id: str, status: str, *, progress_percentage: Optional[int] = None
    ) -> Optional[Case]:
        if status not in CASE_STATUSES:
            raise ConstraintViolation("invalid case status", {"status": status})
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE portal_case
                SET status = %s,
                    progress_percentage = COALESCE(%s, progress_percentage),
                    updated_at = now()
                WHERE id = %s AND tenant_id = %s
                RETURNING *
                """,
                (status, progress_percentage, case_id, tenant_id),
            ).fetchone()
        if not row:
            return None
        return Case(
            id=str(row["id"]),
            tenant_id=str(row["tenant_id"]),
            title=row["title"],
            status=row["status"],
            priority=row.get("priority", "medium"),
            progress_percentage=int(row.get("progress_percentage") or 0),
            due_date=row.get("due_date"),
            updated_at=row.get("updated_at") or utcnow(),
        )

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
        invoice = Invoice(
            id=new_id(), tenant_id=tenant_id, amount=float(amount), status=status, due_date=due_date
        )
        with self._connect() as conn:
            conn.execute(
                "INSERT INTO portal_invoice (id, tenant_id, amount, status, due_date) VALUES (%s, %s, %s, %s, %s)",
                (invoice.id, tenant_id, amount, status, due_date),
            )
        return invoice

    def update_invoice_status(self, tenant_id: str, invoice_id: str, status: str) -> Optional[Invoice]:
        if status not in INVOICE_STATUSES:
            raise ConstraintViolation("invalid invoice status", {"status": status})
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE portal_invoice SET status = %s, updated_at = now()
                WHERE id = %s AND tenant_id = %s
                RETURNING *
                """,
                (status, invoice_id, tenant_id),
            ).fetchone()
        if not row:
            return None
        return Invoice(
            id=str(row["id"]),
            tenant_id=str(row["tenant_id"]),
            amount=float(row["amount"]),
            status=row["status"],
            due_date=row.get("due_date"),
            updated_at=row.get("updated_at") or utcnow(),
        )

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
        document = Document(
            id=new_id(),
            tenant_id=tenant_id,
            name=name,
            uploaded_by=uploaded_by,
            signature_required=signature_required,
            status=status,
            uploaded_at=uploaded_at or utcnow(),
        )
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO portal_document (id, tenant_id, name, uploaded_by, signature_required, status, uploaded_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    document.id,
                    tenant_id,
                    name,
                    uploaded_by,
                    signature_required,
                    status,
                    document.uploaded_at,
                ),
            )
        return document

    def add_message(
        self,
        tenant_id: str,
        sender_id: str,
        recipient_type: str,
        body: str,
        *,
        created_at: Optional[datetime] = None,
    ) -> Message:
        message = Message(
            id=new_id(),
            tenant_id=tenant_id,
            sender_id=sender_id,
            recipient_type=recipient_type,
            body=body,
            created_at=created_at or utcnow(),
        )
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO portal_message (id, tenant_id, sender_id, recipient_type, body, created_at)
                VALUES (%s, %s, %s, %s, %s, %s)
                """,
                (message.id, tenant_id, sender_id, recipient_type, body, message.created_at),
            )
        return message

    def mark_message_read(self, tenant_id: str, message_id: str) -> Optional[Message]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE portal_message SET read_by_recipient = TRUE
                WHERE id = %s AND tenant_id = %s
                RETURNING *
                """,
                (message_id, tenant_id),
            ).fetchone()
        if not row:
            return None
        return Message(
            id=str(row["id"]),
            tenant_id=str(row["tenant_id"]),
            sender_id=row["sender_id"],
            recipient_type=row["recipient_type"],
            body=row["body"],
            read_by_recipient=bool(row["read_by_recipient"]),
            created_at=row.get("created_at") or utcnow(),
        )

    # -- aggregates -----------------------------------------------------------

    def compute_dashboard_metrics(self, tenant_id: str, *, now: Optional[datetime] = None) -> DashboardMetrics:
        now = now or utcnow()
        finished = sorted(CASE_CLOSED_STATUSES | {"cancelled"})
        with self._connect() as conn:
            case_row = conn.execute(
                """
                SELECT
                    COUNT(*) AS total,
                    COUNT(*) FILTER (WHERE status = ANY(%(active)s)) AS active,
                    COUNT(*) FILTER (WHERE status = ANY(%(waiting)s)) AS waiting,
                    COUNT(*) FILTER (WHERE status = ANY(%(closed)s)) AS closed,
                    COUNT(*) FILTER (
                        WHERE due_date < %(now)s AND NOT (status = ANY(%(finished)s))
                    ) AS overdue,
                    COALESCE(AVG(progress_percentage), 0)::int AS average_progress
                FROM portal_case WHERE tenant_id = %(tenant_id)s
                """,
                {
                    "active": sorted(CASE_ACTIVE_STATUSES),
                    "waiting": sorted(CASE_WAITING_STATUSES),
                    "closed": sorted(CASE_CLOSED_STATUSES),
                    "finished": finished,
                    "now": now,
                    "tenant_id": tenant_id,
                },
            ).fetchone()
            invoice_row = conn.execute(
                """
                SELECT
                    COALESCE(SUM(amount), 0) AS total_amount,
                    COALESCE(SUM(amount) FILTER (WHERE status = 'pending'), 0) AS pending_amount,
                    COALESCE(SUM(amount) FILTER (WHERE status = 'paid'), 0) AS paid_amount,
                    COALESCE(SUM(amount) FILTER (WHERE status = 'overdue'), 0) AS overdue_amount,
                    COUNT(*) FILTER (WHERE status = 'overdue') AS overdue_count
                FROM portal_invoice WHERE tenant_id = %s
                """,
                (tenant_id,),
            ).fetchone()
            document_row = conn.execute(
                """
                SELECT
                    COUNT(*) AS total,
                    COUNT(*) FILTER (WHERE uploaded_at >= %s) AS recent,
                    COUNT(*) FILTER (WHERE signature_required AND status <> 'signed') AS pending_signatures
                FROM portal_document WHERE tenant_id = %s
                """,
                (now - timedelta(days=30), tenant_id),
            ).fetchone()
            message_row = conn.execute(
                """
                SELECT
                    COUNT(*) AS total_messages,
                    COUNT(*) FILTER (
                        WHERE recipient_type = 'client' AND NOT read_by_recipient
                    ) AS unread_messages,
                    COUNT(*) FILTER (WHERE created_at >= %s) AS recent_messages
                FROM portal_message WHERE tenant_id = %s
                """,
                (now - timedelta(days=7), tenant_id),
            ).fetchone()

        return DashboardMetrics(
            tenant_id=tenant_id,
            cases=CaseMetrics(
                total=int(case_row["total"]),
                active=int(case_row["active"]),
                waiting=int(case_row["waiting"]),
                closed=int(case_row["closed"]),
                overdue=int(case_row["overdue"]),
                average_progress=int(case_row["average_progress"]),
            ),
            financial=FinancialMetrics(
                total_amount=round(float(invoice_row["total_amount"]), 2),
                pending_amount=round(float(invoice_row["pending_amount"]), 2),
                paid_amount=round(float(invoice_row["paid_amount"]), 2),
                overdue_amount=round(float(invoice_row["overdue_amount"]), 2),
                overdue_count=int(invoice_row["overdue_count"]),
            ),
            documents=DocumentMetrics(
                total=int(document_row["total"]),
                recent=int(document_row["recent"]),
                pending_signatures=int(document_row["pending_signatures"]),
            ),
            communications=CommunicationMetrics(
                total_messages=int(message_row["total_messages"]),
                unread_messages=int(message_row["unread_messages"]),
                recent_messages=int(message_row["recent_messages"]),
            ),
            generated_at=now,
        )
