from resumate.gateway.api.v1.billing import router as billing_router
from resumate.gateway.api.v1.users import router as users_router

__all__ = ["routers"]
routers = [users_router, billing_router]
