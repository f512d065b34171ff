from contextlib import asynccontextmanager
from typing import Optional

from sqlalchemy import event
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker

from ladder.config import Config
from ladder.database.models import Base
from ladder.utils.logger import setup_logger

class Database:
    def __init__(self, database_url: Optional[str] = None):
        self.logger = setup_logger(__name__)
        self.database_url = Config.get_async_database_url(database_url)
        self.engine = None
        self.async_session = None
        
    async def initialize(self):
        """Initialize the database connection and create tables"""
        self.logger.info("Initializing database...")
        
        self.engine = create_async_engine(
            self.database_url,
            echo=Config.DEBUG,
            future=True
        )
        
        if self.engine.dialect.name == 'sqlite':
            # SQLite leaves foreign keys off unless asked per connection
            @event.listens_for(self.engine.sync_engine, "connect")
            def _enable_sqlite_foreign_keys(dbapi_connection, connection_record):
                cursor = dbapi_connection.cursor()
                cursor.execute("PRAGMA foreign_keys=ON")
                cursor.close()
        
        self.async_session = async_sessionmaker(
            self.engine,
            class_=AsyncSession,
            expire_on_commit=False
        )
        
        # Create all tables
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
            
        self.logger.info("Database initialized successfully")
    
    @property
    def session_factory(self):
        """Session factory handed to the service layer"""
        return self.async_session
    
    @asynccontextmanager
    async def transaction(self):
        """
        Create a transaction boundary for atomic operations.
        
        All operations within the context are committed together on success,
        or rolled back together on failure.
        
        Usage:
            async with db.transaction() as session:
                match = await match_ops.record(..., session=session)
                await ladder_ops.apply_match(match, session=session)
                # Both commit together here
        
        Important: the caller passes the yielded session to every participating
        operation. Exceptions must propagate out of the context for rollback.
        """
        async with self.async_session() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise
            finally:
                await session.close()
    
    async def close(self):
        """Close the database connection"""
        if self.engine:
            await self.engine.dispose()
            self.logger.info("Database connection closed")
