"""API routes."""

import logging
from fastapi import APIRouter

from app.api.routes import auth, counting, counting_blind

logger = logging.getLogger(__name__)

api_router = APIRouter()

api_router.include_router(auth.router, prefix="/auth", tags=["auth"])
# Blind routes first: counters never reach the supervisor handlers
api_router.include_router(counting_blind.router, prefix="/counting", tags=["counting", "counting-blind"])
api_router.include_router(counting.router, prefix="/counting", tags=["counting", "counting-supervisor"])
