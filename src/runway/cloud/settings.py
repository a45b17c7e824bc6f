from __future__ import annotations
import os

DATABASE_URL = os.environ.get("DATABASE_URL", "sqlite+aiosqlite:///./runway.db")
REDIS_URL = os.environ.get("REDIS_URL", "redis://localhost:6379/0")
QUEUE_NAME = os.environ.get("QUEUE_NAME", "runway:queue")
LEASE_SECONDS = int(os.environ.get("LEASE_SECONDS", "600"))
# pipeline every admitted event runs
PIPELINE_PATH = os.environ.get("RUNWAY_PIPELINE", "runway.yml")
