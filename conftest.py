import os

# Default to a throwaway SQLite file for tests; individual tests override it
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./test_sessionbill.db")
os.environ.setdefault("LOG_SAMPLE_2XX", "1.0")
