"""
Huey queue backed by Redis (REDIS_URL).

Set HUEY_IMMEDIATE=1 to run tasks in-process (local development without Redis).
"""

import os

from huey import RedisHuey

from extraction.config import REDIS_URL

huey_queue = RedisHuey(
    "exam_extraction",
    url=REDIS_URL,
    immediate=os.getenv("HUEY_IMMEDIATE", "0") == "1",
)
