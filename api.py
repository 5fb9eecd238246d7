"""
Question Bank API: Main Application
FastAPI application for weighted exam-question generation.
Manages the API key pool, background generation / solution / validation runs and topic statistics.
"""

from dotenv import load_dotenv
load_dotenv()

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager
import logging
import os

from database.database import engine, Base, SessionLocal
from generation.completion_client import CompletionClient
from generation.key_pool import ApiKeyPool, parse_api_keys
from generation.providers import COMPLETION_PROVIDER, make_provider
from generation.run_manager import RunManager
from generation.schemas import GenerationTimings

from routers import api_keys, generation

logging.basicConfig(level=logging.INFO, format="%(asctime)s  %(levelname)s  %(message)s")
log = logging.getLogger("generation.pipeline")


def _preload_keys(pool: ApiKeyPool) -> None:
    """Configure the pool from GEMINI_API_KEYS / OPENAI_API_KEYS if set."""
    env_name = "OPENAI_API_KEYS" if COMPLETION_PROVIDER.lower().startswith("openai") else "GEMINI_API_KEYS"
    keys = parse_api_keys(os.getenv(env_name, ""))
    if keys:
        pool.configure(keys)
        log.info(f"[KEYS] Loaded {len(keys)} key(s) from {env_name}")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup: create tables + build the key pool, client and run manager."""
    Base.metadata.create_all(bind=engine)

    timings = GenerationTimings()
    pool = ApiKeyPool()
    _preload_keys(pool)

    app.state.timings = timings
    app.state.session_factory = SessionLocal
    app.state.key_pool = pool
    app.state.completion_client = CompletionClient(pool, make_provider())
    app.state.run_manager = RunManager(pause_poll=timings.pause_poll)
    yield


app = FastAPI(
    title="Question Bank API",
    description="Topic-weighted exam question generation with key rotation and validation",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(api_keys.router)
app.include_router(generation.router)


@app.get("/")
def root():
    return {"message": "Question Bank API", "docs": "/docs"}


@app.get("/health")
def health():
    return {"status": "healthy"}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("api:app", host="0.0.0.0", port=int(os.getenv("PORT", "8000")), reload=True)
