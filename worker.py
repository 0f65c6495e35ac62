"""
Huey worker for background extraction jobs.

    python worker.py            (EXTRACTION_WORKERS threads, default 2)
"""

import logging
import os

from dotenv import load_dotenv
load_dotenv()

from services.queue import huey_queue
import services.tasks  # noqa: F401  registers extraction_task

logging.basicConfig(level=logging.INFO, format="%(asctime)s  %(levelname)s  %(message)s")

if __name__ == "__main__":
    workers = int(os.getenv("EXTRACTION_WORKERS", "2"))
    print(f"Huey worker listening for extraction jobs ({workers} workers)...")
    huey_queue.create_consumer(workers=workers, worker_type="thread").run()
