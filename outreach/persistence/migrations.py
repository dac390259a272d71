from __future__ import annotations
import os
from sqlalchemy.ext.asyncio import AsyncEngine
from outreach.persistence.schema import Base

async def init_db(engine: AsyncEngine) -> None:
    db_dir = os.path.dirname(engine.url.database or "")
    if db_dir:
        os.makedirs(db_dir, exist_ok=True)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
