#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
api.py - iAware OSINT map gateway

Single backend in front of the public feeds drawn as map overlays, plus the
per-user workspace of saved drawings.
Features:
 - one proxy endpoint per upstream feed (aviation, hazards, wikipedia,
   surveillance, military, gdacs, submarine-cables, reverse-geocode)
 - /api/health: per-feed green/yellow/red snapshot
 - groups/features CRUD scoped to the session user (/api/groups, /api/features)
 - /api/auth/user: hashed identity claim, no PII
 - client forwarding headers are stripped from every /api request
Notes:
 - feed endpoints always answer 200; a failing upstream yields an empty payload
   and a red health mark
 - feed data is never stored; only workspace geometry is persisted
"""
from contextlib import asynccontextmanager
from fastapi import FastAPI, Body, HTTPException, Request, Depends
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, RedirectResponse
from typing import Any, Callable, Dict
import logging
import os

# -------------------------
# Logging setup - MUST come first before any code that uses logger
# -------------------------
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("iaware-api")

from database import Base, engine
from feed_adapters import FORWARDING_HEADERS, build_adapters, build_upstream_session
from health_registry import FEED_NAMES, HealthRegistry
from session_auth import SESSION_COOKIE_NAME, SessionUser, require_auth
from workspace_store import (
    WorkspaceError,
    WorkspaceStore,
    validate_feature_payload,
    validate_group_payload,
)

# Ensure all tables exist
Base.metadata.create_all(bind=engine)

AUTH_LOGIN_URL = os.environ.get("AUTH_LOGIN_URL", "/")
AUTH_LOGOUT_URL = os.environ.get("AUTH_LOGOUT_URL", "/")
HOST = os.environ.get("HOST", "0.0.0.0")
PORT = int(os.environ.get("PORT", "5000"))

# -------------------------
# Process-wide collaborators (process start -> process stop)
# -------------------------
health_registry = HealthRegistry(FEED_NAMES)
upstream_session = build_upstream_session()
adapters = build_adapters(health_registry, upstream_session)
workspace_store = WorkspaceStore()


@asynccontextmanager
async def lifespan(application):
    # ---- Startup logic ----
    logger.info(f"Feeds registered: {', '.join(adapters)}")
    logger.info("Startup complete. Health registry at yellow for all feeds.")

    yield

    # ---- Shutdown logic ----
    try:
        upstream_session.close()
    except Exception as e:
        logger.error(f"Error closing upstream session: {e}")


class StripTrackingHeadersMiddleware:
    """Removes client-identifying forwarding headers before any /api handler runs."""

    def __init__(self, app, prefix: str = "/api"):
        self.app = app
        self.prefix = prefix

    async def __call__(self, scope, receive, send):
        if scope["type"] == "http" and scope.get("path", "").startswith(self.prefix):
            scope = dict(scope)
            scope["headers"] = [
                (name, value) for name, value in scope.get("headers", [])
                if name.decode("latin-1").lower() not in FORWARDING_HEADERS
            ]
        await self.app(scope, receive, send)


app = FastAPI(title="iAware OSINT Map Gateway", version="1.0.0", lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
# Added last so it wraps everything else
app.add_middleware(StripTrackingHeadersMiddleware)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    fields = [".".join(str(part) for part in err.get("loc", ())) for err in exc.errors()]
    return JSONResponse(status_code=400, content={"message": "Invalid request", "fields": fields})


# -------------------------
# Feed endpoints
# -------------------------
def serve_feed(feed: str, request: Request) -> Any:
    """Run one adapter; anything unexpected still ends as the feed's empty payload.

    Health is left as the adapter wrote it for this call.
    """
    adapter = adapters[feed]
    try:
        return adapter.fetch(request.query_params)
    except Exception:
        logger.exception(f"Unhandled error in {feed} feed")
        return adapter.empty()


@app.get("/api/aviation")
def get_aviation(request: Request):
    return serve_feed("aviation", request)


@app.get("/api/hazards")
def get_hazards(request: Request):
    return serve_feed("hazards", request)


@app.get("/api/wikipedia")
def get_wikipedia(request: Request):
    return serve_feed("wikipedia", request)


@app.get("/api/surveillance")
def get_surveillance(request: Request):
    return serve_feed("surveillance", request)


@app.get("/api/military")
def get_military(request: Request):
    return serve_feed("military", request)


@app.get("/api/gdacs")
def get_gdacs(request: Request):
    return serve_feed("gdacs", request)


@app.get("/api/submarine-cables")
def get_submarine_cables(request: Request):
    return serve_feed("cables", request)


@app.get("/api/reverse-geocode")
def reverse_geocode(request: Request):
    return serve_feed("geocode", request)


@app.get("/api/health")
def get_health():
    return health_registry.snapshot()


# -------------------------
# Identity (provider is external)
# -------------------------
@app.get("/api/auth/user")
def get_auth_user(user: SessionUser = Depends(require_auth)):
    return user.to_dict()


@app.get("/api/login", include_in_schema=False)
def login():
    return RedirectResponse(AUTH_LOGIN_URL, status_code=302)


@app.get("/api/logout", include_in_schema=False)
def logout():
    response = RedirectResponse(AUTH_LOGOUT_URL, status_code=302)
    response.delete_cookie(SESSION_COOKIE_NAME)
    return response


# -------------------------
# Workspace: groups and saved features
# -------------------------
def workspace_call(action: str, operation: Callable, *args, **kwargs) -> Any:
    try:
        return operation(*args, **kwargs)
    except WorkspaceError as e:
        raise HTTPException(status_code=e.status_code, detail=str(e))
    except Exception:
        logger.exception(f"Workspace error while trying to {action}")
        raise HTTPException(status_code=500, detail=f"Failed to {action}")


@app.get("/api/groups")
def list_groups(user: SessionUser = Depends(require_auth)):
    return workspace_call("list groups", workspace_store.list_groups, user.id)


@app.post("/api/groups", status_code=201)
def create_group(data: dict = Body(...), user: SessionUser = Depends(require_auth)):
    name = workspace_call("create group", validate_group_payload, data)
    return workspace_call("create group", workspace_store.create_group, user.id, name)


@app.delete("/api/groups/{group_id}")
def delete_group(group_id: int, user: SessionUser = Depends(require_auth)):
    removed = workspace_call("delete group", workspace_store.delete_group, user.id, group_id)
    return {"status": "success", "deletedFeatures": removed}


@app.get("/api/groups/{group_id}/features")
def list_group_features(group_id: int, user: SessionUser = Depends(require_auth)):
    return workspace_call("list features", workspace_store.list_features, user.id, group_id)


@app.post("/api/features", status_code=201)
def create_feature(data: dict = Body(...), user: SessionUser = Depends(require_auth)):
    fields: Dict[str, Any] = workspace_call("save feature", validate_feature_payload, data)
    return workspace_call("save feature", workspace_store.create_feature, user.id, **fields)


@app.delete("/api/features/{feature_id}")
def delete_feature(feature_id: int, user: SessionUser = Depends(require_auth)):
    workspace_call("delete feature", workspace_store.delete_feature, user.id, feature_id)
    return {"status": "success"}


if __name__ == "__main__":
    import uvicorn

    logger.info("=" * 60)
    logger.info("  iAware OSINT MAP GATEWAY - Server Starting")
    logger.info("=" * 60)
    logger.info(f"  Server will bind to: {HOST}:{PORT}")
    logger.info("  Forwarding headers are ignored (proxy_headers disabled)")
    logger.info("=" * 60)

    uvicorn.run(
        app,
        host=HOST,
        port=PORT,
        log_level="info",
        proxy_headers=False,
        timeout_keep_alive=30,
    )
