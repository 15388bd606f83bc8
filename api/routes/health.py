from __future__ import annotations

import time
from typing import Any, Dict

from fastapi import APIRouter, Request

router = APIRouter(tags=["health"])


@router.get("/health")
async def health(request: Request) -> Dict[str, Any]:
    return {
        "ok": True,
        "service": "flowform-service",
        "store": type(request.app.state.store).__name__,
        "ts": int(time.time() * 1000),
    }
