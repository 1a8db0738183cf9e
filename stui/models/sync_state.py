"""Per-item sync state and local-change models."""

from __future__ import annotations

from sqlalchemy import Float, Integer, Text
from sqlalchemy.orm import Mapped, mapped_column

from stui.models.base import Base


class SyncStateCache(Base):
    """Direct sync state of one file or directory."""

    __tablename__ = "sync_states"

    folder_id: Mapped[str] = mapped_column(Text, primary_key=True)
    file_path: Mapped[str] = mapped_column(Text, primary_key=True)
    file_sequence: Mapped[int] = mapped_column(Integer, nullable=False)
    sync_state: Mapped[str] = mapped_column(Text, nullable=False)


class LocalChangedCache(Base):
    """Path reported as locally changed in a receive-only folder."""

    __tablename__ = "local_changed"

    folder_id: Mapped[str] = mapped_column(Text, primary_key=True)
    file_path: Mapped[str] = mapped_column(Text, primary_key=True)
    cached_at: Mapped[float] = mapped_column(Float, nullable=False)


class NeededFileCache(Base):
    """Item the folder still needs from peers, tagged with its transfer stage."""

    __tablename__ = "needed_files"

    folder_id: Mapped[str] = mapped_column(Text, primary_key=True)
    file_path: Mapped[str] = mapped_column(Text, primary_key=True)
    category: Mapped[str] = mapped_column(Text, nullable=False)
    cached_at: Mapped[float] = mapped_column(Float, nullable=False)
