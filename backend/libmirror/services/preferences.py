"""User preferences stored in the database.

Currently holds the application-wide item sort that folders sorted as
``global`` follow. Changing it broadcasts GLOBAL_SORT_CHANGED so cached
folder covers are recomputed.
"""

from __future__ import annotations

from pydantic import BaseModel, ValidationError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from libmirror.core.config import settings
from libmirror.core.logging import get_logger
from libmirror.db.models import AppSetting, GlobalSortType
from libmirror.services.events import EventBroadcaster, get_event_broadcaster

logger = get_logger(__name__)

GLOBAL_SORT_KEY = "global_sort"


class GlobalSortOption(BaseModel):
    """Application-wide item sort."""

    type: GlobalSortType
    ascending: bool = True


def default_global_sort() -> GlobalSortOption:
    return GlobalSortOption(
        type=GlobalSortType(settings.global_sort_type),
        ascending=settings.global_sort_ascending,
    )


async def load_global_sort(session: AsyncSession) -> GlobalSortOption:
    """Read the global sort, falling back to the configured default."""
    setting = await session.get(AppSetting, GLOBAL_SORT_KEY)
    if setting is None:
        return default_global_sort()
    try:
        return GlobalSortOption.model_validate_json(setting.value)
    except ValidationError:
        logger.warning("global_sort_unreadable", value=setting.value)
        return default_global_sort()


class PreferencesService:
    """Reads and updates user preferences."""

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        broadcaster: EventBroadcaster | None = None,
    ):
        self.session_maker = session_maker
        self.broadcaster = broadcaster or get_event_broadcaster()

    async def get_global_sort(self) -> GlobalSortOption:
        async with self.session_maker() as session:
            return await load_global_sort(session)

    async def set_global_sort(self, option: GlobalSortOption) -> GlobalSortOption:
        """Store the global sort and announce the change.

        Nothing is broadcast when the value is unchanged.
        """
        async with self.session_maker() as session:
            current = await load_global_sort(session)
            setting = await session.get(AppSetting, GLOBAL_SORT_KEY)
            if setting is None:
                setting = AppSetting(key=GLOBAL_SORT_KEY, value="")
                session.add(setting)
            setting.value = option.model_dump_json()
            await session.commit()

        if option == current:
            return option

        await self.broadcaster.broadcast_global_sort_changed()
        logger.info("global_sort_updated", sort_type=option.type.value, ascending=option.ascending)
        return option
