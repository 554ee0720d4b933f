"""API routes."""

from fastapi import APIRouter

from cylinder_ledger.api.routes import exchange, inventory, orders, plans, reconciliation

api_router = APIRouter()

api_router.include_router(inventory.router, prefix="/inventory", tags=["inventory"])
api_router.include_router(exchange.router, prefix="/exchange", tags=["exchange"])
api_router.include_router(reconciliation.router, prefix="/reconciliation", tags=["reconciliation"])
api_router.include_router(orders.router, prefix="/orders", tags=["orders"])
api_router.include_router(plans.router, prefix="/plans", tags=["plans"])
