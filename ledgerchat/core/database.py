from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession
from sqlalchemy.orm import DeclarativeBase
from ledgerchat.core.config import settings

engine = create_async_engine(settings.DATABASE_URL, echo=settings.DB_ECHO)

# Sessions keep loaded attributes after commit so async routes never trigger lazy refreshes
AsyncSessionLocal = async_sessionmaker(
    bind=engine, class_=AsyncSession, expire_on_commit=False
)


# Gives routes and pipeline backends access to postgres
async def get_db():
    async with AsyncSessionLocal() as session:
        yield session


# All the models registered on Base are created by the migrations
class Base(DeclarativeBase):
    pass
