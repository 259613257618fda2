"""
Repository for category scoped settings rows.
"""

from sqlalchemy import func, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from src.core.logging import get_logger
from src.database.models.setting import Setting
from src.services.payments.errors import PaymentStorageError

logger = get_logger(__name__)


class SettingsRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_category(self, category: str) -> dict[str, str]:
        """Return every key/value pair stored under ``category``."""
        try:
            result = await self.session.execute(
                select(Setting.key, Setting.value).where(Setting.category == category)
            )
            return {key: value for key, value in result.all()}

        except SQLAlchemyError as e:
            logger.error("Failed to read settings", category=category, error=str(e))
            raise PaymentStorageError(
                f"Failed to read settings: {e}", category=category
            ) from e

    async def upsert_many(self, category: str, values: dict[str, str]) -> None:
        """Insert or overwrite keys under ``category`` and commit."""
        if not values:
            return

        stmt = pg_insert(Setting).values(
            [
                {"category": category, "key": key, "value": value}
                for key, value in values.items()
            ]
        )
        stmt = stmt.on_conflict_do_update(
            constraint="uq_settings_category_key",
            set_={"value": stmt.excluded.value, "updated_at": func.now()},
        )

        try:
            await self.session.execute(stmt)
            await self.session.commit()

        except SQLAlchemyError as e:
            await self.session.rollback()
            logger.error("Failed to write settings", category=category, error=str(e))
            raise PaymentStorageError(
                f"Failed to write settings: {e}", category=category
            ) from e

        logger.info("Settings updated", category=category, keys=sorted(values))
