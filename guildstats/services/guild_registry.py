"""
Guild Registry
Read access to the guilds the engine aggregates for
"""
from typing import List
from sqlalchemy import select
from structlog import get_logger

from ..database import DatabaseManager
from ..models import Guild

logger = get_logger()


class GuildRegistry:
    def __init__(self, db: DatabaseManager):
        self.db = db

    async def active_guild_ids(self) -> List[str]:
        async with self.db.session() as session:
            result = await session.execute(
                select(Guild.guild_id).where(Guild.is_active.is_(True)).order_by(Guild.guild_id)
            )
            return list(result.scalars().all())

    async def register(self, guild_id: str, name: str = None, is_active: bool = True):
        """Insert or update a registry row (used by setup tooling and tests)"""
        async with self.db.session() as session:
            guild = await session.get(Guild, guild_id)
            if guild is None:
                session.add(Guild(guild_id=guild_id, name=name, is_active=is_active))
            else:
                guild.name = name or guild.name
                guild.is_active = is_active
        logger.info("Guild registered", guild_id=guild_id, is_active=is_active)
