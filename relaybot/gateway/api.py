"""Operator control plane (local HTTP API).

Lets an operator inspect and steer a running bot:
- per-scope dispatch state and recent outcomes
- read or atomically replace the permission policy
- resume scopes halted by a fatal completion error
- read and clear captured errors
"""

from __future__ import annotations

import asyncio
from typing import Any

from fastapi import Body, Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from loguru import logger
from starlette.status import HTTP_400_BAD_REQUEST, HTTP_401_UNAUTHORIZED, HTTP_404_NOT_FOUND

from relaybot.agent.dispatcher import Dispatcher
from relaybot.bus.events import Scope
from relaybot.config.loader import ConfigError
from relaybot.logging.error_store import clear_errors, get_errors
from relaybot.permissions.engine import PermissionPolicy, PolicyHolder
from relaybot.session.repository import ConversationRepository, PersistenceError


def _require_token(token: str):
    def _dep(request: Request) -> None:
        auth_header = request.headers.get("Authorization", "")
        if not auth_header.startswith("Bearer "):
            raise HTTPException(status_code=HTTP_401_UNAUTHORIZED, detail="Unauthorized")
        provided = auth_header[len("Bearer ") :].strip()
        if not provided or provided != token:
            raise HTTPException(status_code=HTTP_401_UNAUTHORIZED, detail="Unauthorized")

    return _dep


def _policy_payload(holder: PolicyHolder) -> dict[str, Any]:
    return {"version": holder.version, "policy": holder.current.to_dict()}


def create_control_app(
    dispatcher: Dispatcher,
    policy_holder: PolicyHolder,
    repository: ConversationRepository,
    token: str,
) -> FastAPI:
    app = FastAPI(docs_url=None, redoc_url=None, openapi_url=None)
    require = _require_token(token)

    @app.get("/health")
    async def health() -> JSONResponse:
        return JSONResponse({"ok": True, "connected": dispatcher.gateway.is_connected})

    @app.get("/scopes", dependencies=[Depends(require)])
    async def list_scopes() -> JSONResponse:
        return JSONResponse({"scopes": dispatcher.scope_status()})

    @app.get("/outcomes", dependencies=[Depends(require)])
    async def list_outcomes(limit: int = 100) -> JSONResponse:
        outcomes = dispatcher.recent_outcomes(limit=max(0, limit))
        # Newest first
        return JSONResponse({"outcomes": [o.to_dict() for o in reversed(outcomes)]})

    @app.get("/policy", dependencies=[Depends(require)])
    async def get_policy() -> JSONResponse:
        return JSONResponse(_policy_payload(policy_holder))

    @app.put("/policy", dependencies=[Depends(require)])
    async def put_policy(payload: dict[str, Any] = Body(...)) -> JSONResponse:
        try:
            policy = PermissionPolicy.from_dict(payload)
        except ConfigError as e:
            raise HTTPException(status_code=HTTP_400_BAD_REQUEST, detail=str(e)) from None

        policy_holder.swap(policy)
        logger.info(f"Permission policy replaced (version {policy_holder.version})")

        persisted = True
        try:
            await asyncio.to_thread(repository.save_policy, policy)
        except PersistenceError as e:
            persisted = False
            logger.error(f"Policy applied but not persisted: {e}")
        return JSONResponse({**_policy_payload(policy_holder), "persisted": persisted})

    @app.post("/scopes/{key}/resume", dependencies=[Depends(require)])
    async def resume_scope(key: str) -> JSONResponse:
        try:
            scope = Scope.parse(key)
        except ValueError as e:
            raise HTTPException(status_code=HTTP_400_BAD_REQUEST, detail=str(e)) from None
        if dispatcher.get_runtime(scope) is None:
            raise HTTPException(status_code=HTTP_404_NOT_FOUND, detail="Scope not found")
        return JSONResponse({"ok": True, "resumed": dispatcher.resume(scope)})

    @app.get("/errors", dependencies=[Depends(require)])
    async def list_errors(limit: int = 200) -> JSONResponse:
        return JSONResponse({"errors": get_errors(limit=limit)})

    @app.post("/errors/clear", dependencies=[Depends(require)])
    async def clear_error_log() -> JSONResponse:
        clear_errors()
        return JSONResponse({"ok": True})

    return app
