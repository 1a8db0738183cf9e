"""Folder status, folder list and event cursor models."""

from __future__ import annotations

from sqlalchemy import CheckConstraint, Float, Integer, Text
from sqlalchemy.orm import Mapped, mapped_column

from stui.models.base import Base


class FolderStatusCache(Base):
    """Last observed status of a folder, keyed by folder id."""

    __tablename__ = "folder_status"

    folder_id: Mapped[str] = mapped_column(Text, primary_key=True)
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)
    state: Mapped[str] = mapped_column(Text, nullable=False)
    need_total_items: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    receive_only_total_items: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    global_bytes: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    local_bytes: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    need_bytes: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    receive_only_changed_bytes: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    global_total_items: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    local_files: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    local_directories: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    global_files: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    global_directories: Mapped[int] = mapped_column(Integer, nullable=False, default=0)


class EventCursor(Base):
    """Single-row table holding the id of the last processed daemon event."""

    __tablename__ = "event_state"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    last_event_id: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    __table_args__ = (CheckConstraint("id = 1", name="ck_event_state_single_row"),)


class FolderListCache(Base):
    """Single-row table holding the last folder list as JSON."""

    __tablename__ = "cached_folders"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    data: Mapped[str] = mapped_column(Text, nullable=False)
    cached_at: Mapped[float] = mapped_column(Float, nullable=False)

    __table_args__ = (CheckConstraint("id = 1", name="ck_cached_folders_single_row"),)
