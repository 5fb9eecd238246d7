"""
Shared FastAPI dependencies: the process-wide key pool, completion client
and background run manager live on app.state (created in api.py lifespan).
"""

from fastapi import Request

from generation.completion_client import CompletionClient
from generation.key_pool import ApiKeyPool
from generation.run_manager import RunManager


def get_key_pool(request: Request) -> ApiKeyPool:
    return request.app.state.key_pool


def get_completion_client(request: Request) -> CompletionClient:
    return request.app.state.completion_client


def get_run_manager(request: Request) -> RunManager:
    return request.app.state.run_manager
