from fastapi import APIRouter

router = APIRouter(prefix="/api/admin", tags=["admin"])

# Sub-routers will be included here
from . import buckets, configs, usage  # noqa: E402

router.include_router(configs.router, prefix="/limits", tags=["admin-limits"])
router.include_router(buckets.router, prefix="/buckets", tags=["admin-buckets"])
router.include_router(usage.router, prefix="/usage", tags=["admin-usage"])
