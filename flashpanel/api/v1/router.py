"""
API v1 路由汇总
"""

from fastapi import APIRouter

from flashpanel.api.v1.auth import router as auth_router
from flashpanel.api.v1.catalog import routers as catalog_routers
from flashpanel.api.v1.events import router as events_router
from flashpanel.api.v1.flash import router as flash_router
from flashpanel.api.v1.system import router as system_router
from flashpanel.api.v1.tasks import router as tasks_router

API_PREFIX = "/api/v1"

router = APIRouter(prefix=API_PREFIX)

router.include_router(system_router)
router.include_router(auth_router)
router.include_router(tasks_router)
router.include_router(flash_router)
router.include_router(events_router)
for catalog_router in catalog_routers:
    router.include_router(catalog_router)
