"""API v1 router aggregating all endpoint routers.

Knowledge:
  /api/v1/knowledge/search, /reembed, /backfill, /missing

Context:
  /api/v1/context/assemble, /turns
"""

from fastapi import APIRouter

from coach_context.api.v1.endpoints import context, knowledge

api_router = APIRouter()

# -------------------------------------------------------------------------
# Knowledge (search and re-embedding)
# -------------------------------------------------------------------------
api_router.include_router(knowledge.router, prefix="/knowledge", tags=["knowledge"])

# -------------------------------------------------------------------------
# Prompt Context
# -------------------------------------------------------------------------
api_router.include_router(context.router, prefix="/context", tags=["context"])
