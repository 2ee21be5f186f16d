from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.qrms.models import Base


class QCDocumentApproval(Base):
    """
    Two-stage (QC, then PM) sign-off over the quality document of one ItemHistory.
    Terminal once COMPLETED or REJECTED.
    """

    __tablename__ = "qc_document_approvals"
    __table_args__ = (Index("idx_qc_approvals_status", "status"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)

    item_history_id: Mapped[int] = mapped_column(
        ForeignKey("item_histories.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="PENDING_QC")

    # Owner of the revision loop (submitter of the originating change request)
    submitted_by_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    submitter_name: Mapped[str | None] = mapped_column(String(255), nullable=True)

    qc_approver_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    qc_approver_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    qc_approved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    qc_note: Mapped[str | None] = mapped_column(Text, nullable=True)

    pm_approver_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    pm_approver_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    pm_approved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    pm_note: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Terminal rejection
    rejected_by_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    rejected_by_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    rejected_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    rejection_note: Mapped[str | None] = mapped_column(Text, nullable=True)

    revision_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    item_history = relationship("ItemHistory", lazy="selectin")
    revisions: Mapped[list["RevisionItem"]] = relationship(
        "RevisionItem",
        back_populates="approval",
        cascade="all, delete-orphan",
        order_by="RevisionItem.revision_number",
        lazy="selectin",
    )


class RevisionItem(Base):
    __tablename__ = "qc_revision_items"
    __table_args__ = (
        UniqueConstraint("approval_id", "revision_number", name="uq_qc_revision_number"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    approval_id: Mapped[int] = mapped_column(
        ForeignKey("qc_document_approvals.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    revision_number: Mapped[int] = mapped_column(Integer, nullable=False)  # 1-based
    stage: Mapped[str] = mapped_column(String(8), nullable=False)  # QC or PM

    requested_by_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    requested_by_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    request_note: Mapped[str] = mapped_column(Text, nullable=False)
    requested_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    resolved_by_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    resolved_by_name: Mapped[str | None] = mapped_column(String(255), nullable=True)

    approval: Mapped[QCDocumentApproval] = relationship("QCDocumentApproval", back_populates="revisions")
