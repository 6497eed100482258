from fastapi import APIRouter

from simshop.api.v1.endpoints import orders, payments, esim, admin


# Create main API router
api_router = APIRouter(prefix="/api/v1")

# ==================== Storefront Orders ====================
api_router.include_router(
    orders.router,
    prefix="/orders",
    tags=["Orders"]
)

# ==================== Payment Gateway ====================
api_router.include_router(
    payments.router,
    prefix="/payments",
    tags=["Payments"]
)

# ==================== eSIM Profiles & Provider Callbacks ====================
api_router.include_router(
    esim.router,
    prefix="/esim",
    tags=["eSIM"]
)

# ==================== Administration ====================
api_router.include_router(
    admin.router,
    prefix="/admin",
    tags=["Admin"]
)
