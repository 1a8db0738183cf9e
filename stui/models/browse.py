"""Directory listing cache model."""

from __future__ import annotations

from sqlalchemy import Index, Integer, Text
from sqlalchemy.orm import Mapped, mapped_column

from stui.models.base import Base


class BrowseCacheEntry(Base):
    """One child of a cached directory listing.

    A listing for ``(folder_id, prefix)`` is the set of rows sharing that key,
    ordered by ``position``. All rows of one listing carry the same
    ``folder_sequence``.
    """

    __tablename__ = "browse_cache"

    folder_id: Mapped[str] = mapped_column(Text, primary_key=True)
    prefix: Mapped[str] = mapped_column(Text, primary_key=True)
    name: Mapped[str] = mapped_column(Text, primary_key=True)
    folder_sequence: Mapped[int] = mapped_column(Integer, nullable=False)
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    item_type: Mapped[str] = mapped_column(Text, nullable=False)
    mod_time: Mapped[str] = mapped_column(Text, nullable=False, default="")
    size: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    __table_args__ = (Index("idx_browse_cache_folder_sequence", "folder_id", "folder_sequence"),)
