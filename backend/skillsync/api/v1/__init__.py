from fastapi import APIRouter

from skillsync.api.v1 import integrations, skills, webhooks

# Webhooks authenticate by signature; the admin routers guard themselves per endpoint
api_router = APIRouter()
api_router.include_router(webhooks.router, prefix="/webhooks", tags=["webhooks"])
api_router.include_router(integrations.router, prefix="/integrations", tags=["integrations"])
api_router.include_router(skills.router, prefix="/skills", tags=["skills"])
