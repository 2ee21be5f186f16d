from __future__ import annotations

import json
from datetime import datetime
from typing import Any

from sqlalchemy import Boolean, DateTime, ForeignKey, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.qrms.models import Base


class ProjectCategory(Base):
    """Display grouping for projects. Deleting a category unlinks its projects."""

    __tablename__ = "project_categories"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(128), nullable=False, unique=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    sort_order: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)


class Project(Base):
    __tablename__ = "projects"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    category_id: Mapped[int | None] = mapped_column(
        ForeignKey("project_categories.id", ondelete="SET NULL"), nullable=True
    )

    code_prefix: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)  # e.g. "WQ", "ISO-9001"
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Snapshots of items in this project go through QC/PM sign-off
    requires_quality_review: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    items: Mapped[list["Item"]] = relationship(
        "Item",
        back_populates="project",
        cascade="all, delete-orphan",
        lazy="selectin",
    )
    category: Mapped[ProjectCategory | None] = relationship("ProjectCategory", lazy="selectin")


class Item(Base):
    __tablename__ = "items"
    __table_args__ = (
        Index("idx_items_project", "project_id"),
        Index("idx_items_parent", "parent_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)

    project_id: Mapped[int] = mapped_column(ForeignKey("projects.id", ondelete="CASCADE"), nullable=False)
    parent_id: Mapped[int | None] = mapped_column(ForeignKey("items.id", ondelete="RESTRICT"), nullable=True)

    # Dash-delimited hierarchical code: "<prefix>-<seg>[-<seg>...]"
    code: Mapped[str] = mapped_column(String(128), nullable=False, unique=True)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    content: Mapped[str | None] = mapped_column(Text, nullable=True)
    attachments_json: Mapped[str | None] = mapped_column(Text, nullable=True)

    current_version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    # Soft delete
    is_deleted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)

    published_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    project: Mapped[Project] = relationship("Project", back_populates="items", lazy="selectin")
    parent: Mapped["Item | None"] = relationship("Item", remote_side="Item.id", lazy="selectin")

    @property
    def attachments(self) -> list[Any]:
        if not self.attachments_json:
            return []
        return json.loads(self.attachments_json)


class ItemRelation(Base):
    """
    One direction of a symmetric "related item" link.
    Both (a, b) and (b, a) rows always exist together.
    """

    __tablename__ = "item_relations"

    source_id: Mapped[int] = mapped_column(ForeignKey("items.id", ondelete="CASCADE"), primary_key=True)
    target_id: Mapped[int] = mapped_column(ForeignKey("items.id", ondelete="CASCADE"), primary_key=True)
    description: Mapped[str | None] = mapped_column(String(512), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    target: Mapped[Item] = relationship("Item", foreign_keys=[target_id], lazy="selectin")


class ItemHistory(Base):
    """
    Immutable snapshot, one per applied change request. Never updated after insert.
    Identity columns are duplicated as plain text so rows stay readable after the
    item or the users are gone.
    """

    __tablename__ = "item_histories"
    __table_args__ = (
        UniqueConstraint("item_id", "version", name="uq_item_history_version"),
        Index("idx_item_histories_project", "project_id"),
        Index("idx_item_histories_item_code", "item_code"),
        Index("idx_item_histories_created_at", "created_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)

    item_id: Mapped[int | None] = mapped_column(ForeignKey("items.id", ondelete="SET NULL"), nullable=True)
    project_id: Mapped[int | None] = mapped_column(ForeignKey("projects.id", ondelete="SET NULL"), nullable=True)

    version: Mapped[int] = mapped_column(Integer, nullable=False)
    change_type: Mapped[str] = mapped_column(String(16), nullable=False)  # CREATE, UPDATE, DELETE, RESTORE
    snapshot_json: Mapped[str] = mapped_column(Text, nullable=False)
    diff_json: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Redundant identity (survives item deletion)
    item_code: Mapped[str] = mapped_column(String(128), nullable=False)
    item_title: Mapped[str] = mapped_column(String(255), nullable=False)

    submitted_by_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    submitted_by_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    reviewed_by_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    reviewed_by_name: Mapped[str | None] = mapped_column(String(255), nullable=True)

    change_request_id: Mapped[int | None] = mapped_column(
        ForeignKey("change_requests.id", ondelete="SET NULL"),
        nullable=True,
        unique=True,
    )

    document_path: Mapped[str | None] = mapped_column(String(512), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    item: Mapped[Item | None] = relationship("Item", lazy="selectin")
    project: Mapped[Project | None] = relationship("Project", lazy="selectin")

    @property
    def snapshot(self) -> dict[str, Any]:
        return json.loads(self.snapshot_json)

    @property
    def diff(self) -> dict[str, Any] | None:
        return json.loads(self.diff_json) if self.diff_json else None
