"""API routes."""

from usdc_payroll.api.routes.health import router as health_router
from usdc_payroll.api.routes.payroll import router as payroll_router
from usdc_payroll.api.routes.webhooks import router as webhooks_router
from usdc_payroll.api.routes.workers import router as workers_router

__all__ = ["health_router", "payroll_router", "webhooks_router", "workers_router"]
