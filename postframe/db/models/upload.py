"""Upload model for files stored under the uploads namespace."""

from __future__ import annotations

from sqlalchemy import Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from postframe.db.base import Base


class Upload(Base):
    """A file uploaded to the site, addressed by its site-root-relative path."""

    __tablename__ = "uploads"

    path: Mapped[str] = mapped_column(String(1024), nullable=False, unique=True, index=True)
    filename: Mapped[str] = mapped_column(String(255), nullable=False)
    mime_type: Mapped[str] = mapped_column(String(128), nullable=False)
    size: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    width: Mapped[int | None] = mapped_column(Integer, nullable=True)
    height: Mapped[int | None] = mapped_column(Integer, nullable=True)
