"""Store node model: one row per document path in the keyed store."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import JSON, DateTime, String, func
from sqlalchemy.orm import Mapped, mapped_column

from payrecon.core.database import Base


class StoreNode(Base):
    """A JSON document addressed by a ``/``-delimited path.

    Collections are not rows of their own: reading ``payments`` assembles
    every row whose path starts with ``payments/``.
    """

    __tablename__ = "store_nodes"

    path: Mapped[str] = mapped_column(
        String(512),
        primary_key=True,
    )
    value: Mapped[Any] = mapped_column(
        JSON,
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime,
        server_default=func.now(),
        onupdate=func.now(),
    )

    def __repr__(self) -> str:
        return f"<StoreNode(path={self.path!r})>"
