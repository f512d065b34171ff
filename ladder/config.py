import os
from dotenv import load_dotenv

load_dotenv()

class Config:
    """Ladder engine configuration settings"""
    
    # Database settings
    DATABASE_URL = os.getenv('DATABASE_URL', 'sqlite:///ladder.db')
    
    # Runtime settings
    DEBUG = os.getenv('DEBUG', 'False').lower() == 'true'
    LOG_DIR = os.getenv('LOG_DIR', 'logs')
    
    # Locking settings
    REDIS_URL = os.getenv('REDIS_URL', '')
    REDIS_LOCKING = os.getenv('REDIS_LOCKING', 'False').lower() == 'true'
    LOCK_TIMEOUT_SECONDS = float(os.getenv('LOCK_TIMEOUT_SECONDS', 30))
    LOCK_EXPIRY_SECONDS = int(os.getenv('LOCK_EXPIRY_SECONDS', 60))
    LOCK_POLL_INTERVAL = 0.05
    
    # Optimistic concurrency retries for a whole record/adjust call
    MAX_COMMIT_RETRIES = int(os.getenv('MAX_COMMIT_RETRIES', 3))
    
    @classmethod
    def get_async_database_url(cls, database_url: str = None) -> str:
        """Convert a sync sqlite URL to its aiosqlite form"""
        url = database_url or cls.DATABASE_URL
        if url.startswith('sqlite:///'):
            url = url.replace('sqlite:///', 'sqlite+aiosqlite:///')
        return url
    
    @classmethod
    def validate(cls):
        """Validate that numeric settings are usable"""
        if cls.LOCK_TIMEOUT_SECONDS <= 0:
            raise ValueError("LOCK_TIMEOUT_SECONDS must be positive")
        if cls.LOCK_EXPIRY_SECONDS <= 0:
            raise ValueError("LOCK_EXPIRY_SECONDS must be positive")
        if cls.MAX_COMMIT_RETRIES < 1:
            raise ValueError("MAX_COMMIT_RETRIES must be at least 1")
        if cls.REDIS_LOCKING and not cls.REDIS_URL:
            raise ValueError("REDIS_URL is required when REDIS_LOCKING is enabled")
