"""HTTP entry point of the sync endpoint."""
from __future__ import annotations

import json
from typing import Optional

from fastapi import APIRouter, Depends, FastAPI, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse

from core.errors import InvalidRequest, SyncError
from core.logs import server_logger
from core.settings import ServerSettings, load_server_settings
from server.auth import IdentityVerifier, bearer_token
from server.db import get_server_engine, init_server_db, session_factory_for
from server.executor import SyncOperationExecutor


SYNC_OPERATION_PATH = "/functions/v1/sync-operation"

router = APIRouter()


def build_executor(settings: ServerSettings) -> SyncOperationExecutor:
    verifier = IdentityVerifier.from_settings(settings)
    engine = get_server_engine(settings)
    init_server_db(engine)
    return SyncOperationExecutor(
        verifier,
        session_factory_for(engine),
        logger=server_logger(),
    )


def get_executor(request: Request) -> SyncOperationExecutor:
    return request.app.state.executor


@router.options(SYNC_OPERATION_PATH)
async def sync_operation_preflight() -> PlainTextResponse:
    return PlainTextResponse("ok")


@router.post(SYNC_OPERATION_PATH)
async def sync_operation(
    request: Request,
    executor: SyncOperationExecutor = Depends(get_executor),
) -> JSONResponse:
    token = bearer_token(request.headers.get("authorization"))
    raw = await request.body()
    try:
        body = json.loads(raw) if raw else None
    except (UnicodeDecodeError, json.JSONDecodeError):
        body = None
    if body is None:
        # the token is still checked first so a bad credential wins over a bad body
        executor.verifier.verify(token)
        raise InvalidRequest("Invalid request payload")
    result = await run_in_threadpool(executor.execute, token, body)
    return JSONResponse(result.to_dict())


async def _sync_error_handler(request: Request, exc: SyncError) -> JSONResponse:
    if exc.status_code >= 500:
        server_logger().error("sync-operation error: %s", exc.message)
    return JSONResponse({"error": exc.message}, status_code=exc.status_code)


def create_app(
    executor: Optional[SyncOperationExecutor] = None,
    settings: Optional[ServerSettings] = None,
) -> FastAPI:
    actual_settings = settings or load_server_settings()
    app = FastAPI(title="IronLog sync")
    app.state.executor = executor or build_executor(actual_settings)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(actual_settings.cors_origins),
        allow_methods=["POST", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "apikey", "x-client-info"],
    )
    app.add_exception_handler(SyncError, _sync_error_handler)
    app.include_router(router)
    return app


__all__ = ["SYNC_OPERATION_PATH", "build_executor", "create_app", "get_executor"]
