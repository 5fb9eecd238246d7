"""
API Keys Router: /api-keys

Endpoints:
  POST /api-keys        : replace the key pool (explicit list or pasted text)
  GET  /api-keys        : per-key usage and health (never the keys themselves)
  POST /api-keys/reset  : reactivate every key
"""

import logging

from fastapi import APIRouter, Depends, HTTPException

from generation.errors import ConfigurationError
from generation.key_pool import GEMINI_KEY_PATTERN, ApiKeyPool, parse_api_keys
from generation.schemas import ApiKeysRequest
from routers.deps import get_key_pool

router = APIRouter(prefix="/api-keys", tags=["api-keys"])

log = logging.getLogger("generation.pipeline")


@router.post("")
def configure_keys(body: ApiKeysRequest, pool: ApiKeyPool = Depends(get_key_pool)):
    keys = list(body.keys or [])
    if body.text:
        keys += parse_api_keys(body.text, GEMINI_KEY_PATTERN if body.gemini_pattern else None)

    try:
        count = pool.configure(keys)
    except ConfigurationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"configured": count, "keys": pool.stats()}


@router.get("")
def key_stats(pool: ApiKeyPool = Depends(get_key_pool)):
    return {
        "total": pool.size,
        "active": pool.active_count,
        "keys": pool.stats(),
    }


@router.post("/reset")
def reset_keys(pool: ApiKeyPool = Depends(get_key_pool)):
    if pool.size == 0:
        raise HTTPException(status_code=400, detail="No API keys configured")
    pool.reset()
    log.info(f"[KEYS] All {pool.size} API key(s) reset")
    return {"total": pool.size, "active": pool.active_count}
