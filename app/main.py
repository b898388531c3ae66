import logging
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from app.api import billing, payouts, pricing, audit
from app.core.config import settings
from app.core.errors import BillingError
from app.core.log_config import configure_logging

configure_logging()
logger = logging.getLogger(__name__)

app = FastAPI(title="Coach Billing & Payouts API", version="1.0.0")

# CORS middleware - admin dashboard origins
# Note: CORS headers are added even on errors via exception handlers
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.get_allowed_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["*"],
)


def _with_cors(request: Request, response: JSONResponse) -> JSONResponse:
    origin = request.headers.get("origin")
    if origin and origin in settings.get_allowed_origins():
        response.headers["Access-Control-Allow-Origin"] = origin
        response.headers["Access-Control-Allow-Credentials"] = "true"
        response.headers["Access-Control-Allow-Methods"] = "*"
        response.headers["Access-Control-Allow-Headers"] = "*"
    return response


@app.exception_handler(BillingError)
async def billing_error_handler(request: Request, exc: BillingError):
    """Billing errors carry their own status and the context needed to fix the record."""
    if exc.http_status >= 500:
        logger.error(f"[API] {request.method} {request.url.path}: {exc.code}: {exc.message}")
    else:
        logger.info(f"[API] {request.method} {request.url.path}: {exc.code}: {exc.message}")
    return _with_cors(request, JSONResponse(status_code=exc.http_status, content=exc.to_dict()))


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Ensure CORS headers are included even on unhandled exceptions"""
    logger.exception(f"[API] Unhandled exception on {request.method} {request.url.path}")
    response = JSONResponse(
        status_code=500,
        content={"detail": "Internal server error", "error": "internal_error", "context": {}},
    )
    return _with_cors(request, response)


# Include routers
app.include_router(billing.router, prefix="/billing", tags=["billing"])
app.include_router(payouts.router, prefix="/payouts", tags=["payouts"])
app.include_router(pricing.router, prefix="/pricing", tags=["pricing"])
app.include_router(audit.router, prefix="/audit", tags=["audit"])


@app.get("/")
async def root():
    return {"message": "Coach Billing & Payouts API", "version": "1.0.0"}


@app.get("/health")
async def health():
    return {"status": "healthy", "currency": settings.CURRENCY_CODE}
