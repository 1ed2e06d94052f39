"""FastAPI dependencies for dependency injection."""

from typing import Annotated

from fastapi import Depends, Header, Request

from usdc_payroll.errors import ValidationError
from usdc_payroll.services import Services


def get_services(request: Request) -> Services:
    """Service container built by the application lifespan."""
    return request.app.state.services


async def get_admin_id(
    x_admin_id: Annotated[str | None, Header()] = None
) -> str:
    """Extract admin ID from header."""
    if not x_admin_id or not x_admin_id.strip():
        raise ValidationError("X-Admin-ID header is required")
    return x_admin_id.strip()


# Type aliases for cleaner dependency injection
ServicesDep = Annotated[Services, Depends(get_services)]
AdminId = Annotated[str, Depends(get_admin_id)]
