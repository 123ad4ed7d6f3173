"""API routes for Role Approval."""

from fastapi import APIRouter

from .conversations import router as conversations_router

# Main API router
api_router = APIRouter()

api_router.include_router(conversations_router)

__all__ = ["api_router"]
