from __future__ import annotations

import json
from datetime import datetime
from typing import Any

from sqlalchemy import DateTime, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.qrms.models import Base


class ChangeRequest(Base):
    """
    A proposed change to an item, a project or a data file.

    Rows are never deleted. A rejected request that is resubmitted stays in
    place (status RESUBMITTED) and its successor points back at it through
    previous_request_id.
    """

    __tablename__ = "change_requests"
    __table_args__ = (
        Index("idx_change_requests_status", "status"),
        Index("idx_change_requests_submitted_by", "submitted_by_id"),
        Index("idx_change_requests_item", "item_id"),
        Index("idx_change_requests_data_file", "data_file_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)

    kind: Mapped[str] = mapped_column(String(32), nullable=False)  # CREATE, UPDATE, DELETE, RESTORE, PROJECT_*, FILE_*
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="PENDING")

    # Targets (which ones are set depends on kind)
    project_id: Mapped[int | None] = mapped_column(ForeignKey("projects.id", ondelete="SET NULL"), nullable=True)
    item_id: Mapped[int | None] = mapped_column(ForeignKey("items.id", ondelete="SET NULL"), nullable=True)
    parent_item_id: Mapped[int | None] = mapped_column(ForeignKey("items.id", ondelete="SET NULL"), nullable=True)
    data_file_id: Mapped[int | None] = mapped_column(ForeignKey("data_files.id", ondelete="SET NULL"), nullable=True)
    # Readable target label, kept after the target is gone
    target_label: Mapped[str | None] = mapped_column(String(255), nullable=True)

    payload_json: Mapped[str] = mapped_column(Text, nullable=False, default="{}")
    submit_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    submitted_by_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    submitter_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    submitted_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    reviewed_by_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    reviewer_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    reviewed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    review_note: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Lineage: at most one successor per request
    previous_request_id: Mapped[int | None] = mapped_column(
        ForeignKey("change_requests.id", ondelete="SET NULL"),
        nullable=True,
        unique=True,
    )

    previous_request: Mapped["ChangeRequest | None"] = relationship(
        "ChangeRequest",
        remote_side="ChangeRequest.id",
        lazy="select",
    )

    @property
    def payload(self) -> dict[str, Any]:
        return json.loads(self.payload_json or "{}")
