"""API v1 router configuration."""

from fastapi import APIRouter

from uplift.api.v1.endpoints import experiments, storefront

router = APIRouter(prefix="/api/v1")

router.include_router(experiments.router, prefix="/experiments", tags=["experiments"])
router.include_router(storefront.router, prefix="/storefront", tags=["storefront"])
