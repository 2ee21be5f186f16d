from __future__ import annotations

import json
from datetime import datetime
from typing import Any

from sqlalchemy import Boolean, DateTime, ForeignKey, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.qrms.models import Base


class DataFile(Base):
    """
    Metadata for a controlled data file. The bytes live in external storage;
    only their path is kept here.
    """

    __tablename__ = "data_files"
    __table_args__ = (Index("idx_data_files_year", "data_year"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)

    data_year: Mapped[int] = mapped_column(Integer, nullable=False)
    data_name: Mapped[str] = mapped_column(String(255), nullable=False)
    data_code: Mapped[str] = mapped_column(String(128), nullable=False, unique=True)
    author: Mapped[str | None] = mapped_column(String(255), nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    file_name: Mapped[str] = mapped_column(String(255), nullable=False)
    file_path: Mapped[str] = mapped_column(String(512), nullable=False)
    file_size: Mapped[int | None] = mapped_column(Integer, nullable=True)
    mime_type: Mapped[str | None] = mapped_column(String(128), nullable=True)

    current_version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    is_deleted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)


class DataFileHistory(Base):
    """Immutable snapshot, one per applied FILE_* change request."""

    __tablename__ = "data_file_histories"
    __table_args__ = (
        UniqueConstraint("file_id", "version", name="uq_data_file_history_version"),
        Index("idx_data_file_histories_data_code", "data_code"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)

    file_id: Mapped[int | None] = mapped_column(ForeignKey("data_files.id", ondelete="SET NULL"), nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    change_type: Mapped[str] = mapped_column(String(16), nullable=False)  # CREATE, UPDATE, DELETE
    snapshot_json: Mapped[str] = mapped_column(Text, nullable=False)
    diff_json: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Redundant identity
    data_code: Mapped[str] = mapped_column(String(128), nullable=False)
    data_name: Mapped[str] = mapped_column(String(255), nullable=False)
    data_year: Mapped[int] = mapped_column(Integer, nullable=False)

    submitted_by_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    submitted_by_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    reviewed_by_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    reviewed_by_name: Mapped[str | None] = mapped_column(String(255), nullable=True)

    change_request_id: Mapped[int | None] = mapped_column(
        ForeignKey("change_requests.id", ondelete="SET NULL"),
        nullable=True,
        unique=True,
    )

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    file: Mapped[DataFile | None] = relationship("DataFile", lazy="selectin")

    @property
    def snapshot(self) -> dict[str, Any]:
        return json.loads(self.snapshot_json)

    @property
    def diff(self) -> dict[str, Any] | None:
        return json.loads(self.diff_json) if self.diff_json else None
