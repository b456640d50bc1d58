"""API v1 endpoints package."""

from uplift.api.v1.endpoints import experiments, storefront

__all__ = ["experiments", "storefront"]
