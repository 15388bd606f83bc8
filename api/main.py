from __future__ import annotations

import logging
import os
import sys
import time
import uuid
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.status import HTTP_422_UNPROCESSABLE_ENTITY, HTTP_500_INTERNAL_SERVER_ERROR


def _repo_root() -> Path:
    # `api/main.py` lives at `<repo>/api/main.py`
    return Path(__file__).resolve().parents[1]


def _ensure_src_on_path() -> None:
    src = _repo_root() / "src"
    if not src.is_dir():
        return
    s = str(src)
    if s not in sys.path:
        sys.path.insert(0, s)


_ensure_src_on_path()

from api.http_logging import install_http_logging  # noqa: E402
from api.routes import conversation, health, workflow  # noqa: E402
from api.sessions import ConversationRegistry, GeneratorFactory  # noqa: E402
from api.supabase_client import get_store  # noqa: E402
from flowform.errors import FlowformError  # noqa: E402
from flowform.persistence import FormStore, InMemoryStore  # noqa: E402

logger = logging.getLogger("api.http")


def _request_id(prefix: str) -> str:
    return f"{prefix}_{int(time.time() * 1000)}_{uuid.uuid4().hex[:8]}"


def _configure_logging() -> None:
    level = (os.getenv("FLOWFORM_LOG_LEVEL") or "INFO").strip().upper()
    logging.basicConfig(level=getattr(logging, level, logging.INFO))
    logging.getLogger().setLevel(getattr(logging, level, logging.INFO))


def create_app(store: Optional[FormStore] = None, generator_factory: Optional[GeneratorFactory] = None) -> FastAPI:
    # Load `.env` + `.env.local` when present (local dev convenience).
    load_dotenv(_repo_root() / ".env", override=False)
    load_dotenv(_repo_root() / ".env.local", override=False)
    _configure_logging()

    if store is None:
        store = get_store()
    if store is None:
        logger.warning("Supabase is not configured; using an in-memory store")
        store = InMemoryStore()

    app = FastAPI(title="flowform-service")
    app.state.store = store
    app.state.conversations = ConversationRegistry(store, generator_factory)

    @app.exception_handler(RequestValidationError)
    async def _validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        request_id = _request_id("val")
        # Keep server logs useful without dumping full bodies.
        logger.info("422 validation_error requestId=%s path=%s errors=%s", request_id, request.url.path, exc.errors())
        return JSONResponse(
            status_code=HTTP_422_UNPROCESSABLE_ENTITY,
            content={
                "ok": False,
                "error": "validation_error",
                "message": "Request body did not match expected schema.",
                "requestId": request_id,
                "details": jsonable_encoder(exc.errors()),
            },
        )

    @app.exception_handler(FlowformError)
    async def _flowform_error_handler(request: Request, exc: FlowformError) -> JSONResponse:
        request_id = _request_id("err")
        logger.info("%s %s requestId=%s path=%s msg=%s", exc.http_status, exc.code, request_id, request.url.path, exc.message)
        return JSONResponse(status_code=exc.http_status, content={**exc.to_payload(), "requestId": request_id})

    @app.exception_handler(Exception)
    async def _unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
        request_id = _request_id("err")
        logger.exception("500 internal_error requestId=%s path=%s", request_id, request.url.path)
        return JSONResponse(
            status_code=HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "ok": False,
                "error": "internal_error",
                "message": "Unhandled server error.",
                "requestId": request_id,
            },
        )

    app.include_router(health.router)
    app.include_router(workflow.router)
    app.include_router(conversation.router)
    install_http_logging(app)
    return app


app = create_app()
