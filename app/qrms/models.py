from __future__ import annotations

from datetime import datetime

from sqlalchemy import Boolean, DateTime, ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    pass


class User(Base):
    """
    Acting user as supplied by the identity provider.
    Only role and qualification flags matter to the workflow engines.
    """

    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    username: Mapped[str] = mapped_column(String(150), nullable=False, unique=True)
    display_name: Mapped[str] = mapped_column(String(255), nullable=False)
    role: Mapped[str] = mapped_column(String(16), nullable=False, default="VIEWER")  # VIEWER, EDITOR, INSPECTOR, ADMIN

    # Sign-off qualifications
    is_qc: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_pm: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    signature_path: Mapped[str | None] = mapped_column(String(512), nullable=True)

    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)


class AuditEvent(Base):
    """
    Append-only audit trail event.
    Keep this table intentionally generic; module-specific tables can refer to it by id if needed.
    """

    __tablename__ = "audit_events"
    __table_args__ = (
        UniqueConstraint("request_id", "id", name="uq_audit_request_id_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    request_id: Mapped[str | None] = mapped_column(String(64), nullable=True)

    actor_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    actor_name: Mapped[str | None] = mapped_column(String(255), nullable=True)

    action: Mapped[str] = mapped_column(String(128), nullable=False)  # e.g. "change_request.approve"
    entity_type: Mapped[str | None] = mapped_column(String(128), nullable=True)  # e.g. "ChangeRequest"
    entity_id: Mapped[str | None] = mapped_column(String(128), nullable=True)

    reason: Mapped[str | None] = mapped_column(String(512), nullable=True)
    metadata_json: Mapped[str | None] = mapped_column(Text, nullable=True)  # small JSON string


# Ensure module models are imported so Base.metadata includes their tables.
# (Kept at bottom to avoid circular imports.)
from app.qrms.modules.items.models import Item, ItemHistory, ItemRelation, Project, ProjectCategory  # noqa: E402,F401
from app.qrms.modules.change_requests.models import ChangeRequest  # noqa: E402,F401
from app.qrms.modules.quality_approval.models import QCDocumentApproval, RevisionItem  # noqa: E402,F401
from app.qrms.modules.notifications.models import Notification  # noqa: E402,F401
from app.qrms.modules.data_files.models import DataFile, DataFileHistory  # noqa: E402,F401
