from fastapi import APIRouter

from app.api.routes import admin, applications, health, postings

api_router = APIRouter()
api_router.include_router(health.router, tags=["health"])
api_router.include_router(postings.router, prefix="/postings", tags=["postings"])
api_router.include_router(applications.router, prefix="/applications", tags=["applications"])
api_router.include_router(admin.router, prefix="/admin", tags=["admin"])
