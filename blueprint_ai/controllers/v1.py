from fastapi import APIRouter

from . import health, jobs, usage

router = APIRouter(prefix="/v1")
router.include_router(health.router)
router.include_router(jobs.router)
router.include_router(usage.router)
