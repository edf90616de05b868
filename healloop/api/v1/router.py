from fastapi import APIRouter

from healloop.api.v1.endpoints import execution, pain, sandbox
from healloop.core.config import settings

api_router = APIRouter()

api_router.include_router(execution.router)
api_router.include_router(sandbox.router)
api_router.include_router(pain.router)


@api_router.get("/health", tags=["Health"])
async def health_check():
    """Simple health check endpoint for load balancers"""
    return {"status": "healthy", "service": settings.APP_NAME, "version": settings.APP_VERSION}
