"""
Exam Extraction API — Main Application
FastAPI application that ingests exam PDFs and extracts gradeable questions page by page.
"""

from dotenv import load_dotenv
load_dotenv()

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from database.database import engine, Base
from database import models  # noqa: F401  registers tables on Base
from routers import books

logging.basicConfig(level=logging.INFO, format="%(asctime)s  %(levelname)s  %(message)s")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup: create tables."""
    Base.metadata.create_all(bind=engine)
    yield


app = FastAPI(
    title="Exam Extraction API",
    description="Duplicate detection, metadata inference, page-by-page question extraction, retries and cost accounting",
    version="1.0.0",
    lifespan=lifespan,
)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ─── Routers ───────────────────────────────────────────────────────────────────

app.include_router(books.router)                # /books/*


@app.get("/")
def read_root():
    return {"status": "Online", "service": "exam-extraction"}


@app.get("/health")
def health():
    return {"status": "ok"}
