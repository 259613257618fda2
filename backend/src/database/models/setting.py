"""
Category scoped key/value settings edited from the admin panel.

Gateway credentials live here under the ``stripe``, ``sslcommerz`` and
``payment_methods`` categories.
"""

from sqlalchemy import String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from src.database.base import BaseModel


class Setting(BaseModel):
    __tablename__ = "settings"

    category: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    key: Mapped[str] = mapped_column(String(100), nullable=False)
    value: Mapped[str] = mapped_column(Text, nullable=False, default="")

    __table_args__ = (
        UniqueConstraint("category", "key", name="uq_settings_category_key"),
    )
