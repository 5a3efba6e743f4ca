"""API v1 router configuration."""

from fastapi import APIRouter

from clinic_queue.api.v1.endpoints import appointments, health, jobs, notifications, queue

api_router = APIRouter()

# Include routers
api_router.include_router(health.router, tags=["Health"])
api_router.include_router(appointments.router, prefix="/appointments", tags=["Appointments"])
api_router.include_router(queue.router)
api_router.include_router(jobs.router)
api_router.include_router(notifications.router)
