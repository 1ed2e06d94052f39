"""Payroll API endpoints."""

from collections import Counter
from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, File, Path, Query, Request, UploadFile, status
from fastapi.responses import PlainTextResponse

from usdc_payroll.api.dependencies import AdminId, ServicesDep
from usdc_payroll.api.rate_limit import UPLOAD_LIMIT_MESSAGE, limiter, upload_limit
from usdc_payroll.api.schemas import (
    ApiResponse,
    BatchSummaryResponse,
    CreatePayrollRunRequest,
    ErrorResponse,
    ExecuteRunResponse,
    Pagination,
    PayrollItemResponse,
    PayrollRunListResponse,
    PayrollRunResponse,
    PayrollRunSummary,
    UploadResponse,
)
from usdc_payroll.errors import ValidationError
from usdc_payroll.models import PayrollItem, PayrollRun
from usdc_payroll.services.worker_rows import CSV_TEMPLATE, parse_payroll_csv

router = APIRouter(prefix="/payroll", tags=["payroll"])

MAX_CSV_BYTES = 5 * 1024 * 1024


def item_response(item: PayrollItem) -> PayrollItemResponse:
    response = PayrollItemResponse.model_validate(item)
    if item.worker is not None:
        response.worker_name = item.worker.name
        response.worker_email = item.worker.email
    return response


def run_response(run: PayrollRun) -> PayrollRunResponse:
    response = PayrollRunResponse.model_validate(run, from_attributes=True)
    response.items = [item_response(item) for item in run.items]
    return response


def run_summary(run: PayrollRun) -> PayrollRunSummary:
    summary = PayrollRunSummary.model_validate(run)
    summary.status_counts = dict(Counter(item.status for item in run.items))
    return summary


# ============================================================================
# CSV
# ============================================================================


@router.post(
    "/upload",
    response_model=ApiResponse[UploadResponse],
    responses={400: {"model": ErrorResponse}, 429: {"model": ErrorResponse}},
)
@limiter.limit(upload_limit, error_message=UPLOAD_LIMIT_MESSAGE)
async def upload_csv(
    request: Request,
    csv: Annotated[UploadFile, File(description="CSV with columns name,email,amount,chain")],
) -> ApiResponse[UploadResponse]:
    """Parse and validate a payroll CSV without creating anything."""
    filename = csv.filename or ""
    if csv.content_type not in ("text/csv", "application/vnd.ms-excel") and not filename.endswith(".csv"):
        raise ValidationError("Only CSV files are allowed")
    content = await csv.read(MAX_CSV_BYTES + 1)
    if len(content) > MAX_CSV_BYTES:
        raise ValidationError("CSV file exceeds the 5MB limit")

    rows, summary = parse_payroll_csv(content)
    return ApiResponse(
        data=UploadResponse(
            workers=rows,
            summary=BatchSummaryResponse(
                total_workers=summary.total_workers,
                total_amount=summary.total_amount,
                chains=summary.chains,
            ),
        ),
        message="CSV uploaded and validated successfully",
    )


@router.get("/template", response_class=PlainTextResponse)
async def download_template() -> PlainTextResponse:
    """Sample CSV with the expected columns."""
    return PlainTextResponse(
        CSV_TEMPLATE,
        media_type="text/csv",
        headers={"Content-Disposition": 'attachment; filename="payroll-template.csv"'},
    )


# ============================================================================
# Payroll runs
# ============================================================================


@router.post(
    "/runs",
    response_model=ApiResponse[PayrollRunResponse],
    status_code=status.HTTP_201_CREATED,
    responses={400: {"model": ErrorResponse}},
)
async def create_payroll_run(
    services: ServicesDep,
    admin_id: AdminId,
    payload: CreatePayrollRunRequest,
) -> ApiResponse[PayrollRunResponse]:
    """Create a PENDING payroll run from validated worker rows."""
    run = await services.payroll.create_run(admin_id, payload.workers)
    return ApiResponse(data=run_response(run), message="Payroll run created successfully")


@router.get(
    "/runs",
    response_model=ApiResponse[PayrollRunListResponse],
    responses={400: {"model": ErrorResponse}},
)
async def list_payroll_runs(
    services: ServicesDep,
    admin_id: AdminId,
    page: Annotated[int, Query(ge=1)] = 1,
    limit: Annotated[int, Query(ge=1, le=100)] = 10,
) -> ApiResponse[PayrollRunListResponse]:
    """List the admin's payroll runs, newest first."""
    result = await services.payroll.list_runs(admin_id, page=page, limit=limit)
    return ApiResponse(
        data=PayrollRunListResponse(
            runs=[run_summary(run) for run in result.runs],
            pagination=Pagination(page=result.page, limit=result.limit, total=result.total, pages=result.pages),
        )
    )


@router.get(
    "/runs/{run_id}",
    response_model=ApiResponse[PayrollRunResponse],
    responses={404: {"model": ErrorResponse}},
)
async def get_payroll_run(
    services: ServicesDep,
    run_id: Annotated[UUID, Path()],
) -> ApiResponse[PayrollRunResponse]:
    """Get a payroll run with its items."""
    run = await services.payroll.get_run(run_id)
    return ApiResponse(data=run_response(run))


@router.post(
    "/runs/{run_id}/execute",
    response_model=ApiResponse[ExecuteRunResponse],
    responses={400: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
)
async def execute_payroll_run(
    services: ServicesDep,
    run_id: Annotated[UUID, Path()],
) -> ApiResponse[ExecuteRunResponse]:
    """Claim a PENDING run and execute it in the background."""
    await services.payroll.start_execution(run_id)
    return ApiResponse(
        data=ExecuteRunResponse(payroll_run_id=run_id),
        message="Payroll run execution started",
    )
