"""API v1 router combining all endpoint routers."""

from fastapi import APIRouter

from registry.api.v1 import checkpoints, commit_log

api_router = APIRouter()

api_router.include_router(checkpoints.router, prefix="/checkpoints", tags=["checkpoints"])
api_router.include_router(commit_log.router, prefix="/commit-log", tags=["commit-log"])
