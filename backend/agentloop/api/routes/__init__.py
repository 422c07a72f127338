from fastapi import APIRouter

from agentloop.api.routes import autonomous, health, jobs

api_router = APIRouter()

api_router.include_router(health.router, tags=["health"])
api_router.include_router(jobs.router, prefix="/jobs", tags=["jobs"])
api_router.include_router(autonomous.router, prefix="/autonomous", tags=["autonomous"])
