"""
db/models/variable_index.py

Cached variable discovery results, valid for one survey content hash.
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, String
from sqlalchemy.orm import Mapped, mapped_column

from db.base import SURVEY_ID_LENGTH, Base, JSONType


class VariableIndexRecord(Base):
    __tablename__ = "variable_index"

    survey_id: Mapped[str] = mapped_column(
        String(SURVEY_ID_LENGTH),
        ForeignKey("surveys.id", ondelete="CASCADE"),
        primary_key=True,
    )
    content_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    variables_json: Mapped[list[str]] = mapped_column(JSONType, nullable=False)
    scanned_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
