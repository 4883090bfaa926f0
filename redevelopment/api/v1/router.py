from fastapi import APIRouter

from redevelopment.api.v1.health import router as health_router
from redevelopment.api.v1.projects import router as projects_router
from redevelopment.api.v1.projects import voting_router
from redevelopment.api.v1.proposals import router as proposals_router
from redevelopment.api.v1.votes import router as votes_router


v1_router = APIRouter()

# ------------------------------------------------------------------
# SYSTEM / CORE
# ------------------------------------------------------------------
v1_router.include_router(health_router, tags=["health"])

# ------------------------------------------------------------------
# GOVERNANCE
# ------------------------------------------------------------------
v1_router.include_router(projects_router)
v1_router.include_router(voting_router)
v1_router.include_router(proposals_router)
v1_router.include_router(votes_router)
