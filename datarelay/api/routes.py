from fastapi import APIRouter
from datarelay.api.endpoints import payments, admin, webhooks

router = APIRouter()

router.include_router(payments.router, tags=["payments"])
router.include_router(admin.router, tags=["admin"])
router.include_router(webhooks.router, tags=["webhooks"])
