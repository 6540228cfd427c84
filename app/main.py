from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text

from app.api import prices, quotes
from app.core import errors
from app.core.config import settings
from app.core.logging import get_logger, setup_logging
from app.db.session import SessionLocal, init_db

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events"""
    setup_logging()
    logger.info(f"Starting {settings.APP_NAME} v{settings.APP_VERSION}")
    init_db()
    yield
    logger.info(f"Shutting down {settings.APP_NAME}")


app = FastAPI(
    title=settings.APP_NAME,
    description="RFQ negotiation and catalog price resolution",
    version=settings.APP_VERSION,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization"],
)


async def negotiation_error_handler(request: Request, exc: errors.NegotiationError):
    log = logger.warning if exc.status_code >= 409 else logger.info
    log(f"{exc.kind} on {request.method} {request.url.path}: {exc}")
    return JSONResponse(
        status_code=exc.status_code,
        content=jsonable_encoder({"error": exc.to_dict()}),
    )


async def validation_error_handler(request: Request, exc: RequestValidationError):
    """Malformed request bodies get the same error body as domain validation."""
    problems = [
        {"loc": list(e.get("loc", ())), "msg": e.get("msg"), "type": e.get("type")}
        for e in exc.errors()
    ]
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content=jsonable_encoder({
            "error": {
                "code": errors.INVALID_INPUT,
                "kind": errors.ErrorKind.VALIDATION,
                "message": "Request validation failed",
                "details": {"errors": problems},
            }
        }),
    )


app.add_exception_handler(errors.NegotiationError, negotiation_error_handler)
app.add_exception_handler(RequestValidationError, validation_error_handler)

app.include_router(quotes.router)
app.include_router(prices.router)


@app.get("/health")
async def health():
    """Health check endpoint"""
    db_status = "connected"
    db = SessionLocal()
    try:
        db.execute(text("SELECT 1"))
    except Exception as e:
        logger.error(f"Health check database error: {e}")
        db_status = "unavailable"
    finally:
        db.close()

    return {
        "status": "healthy" if db_status == "connected" else "degraded",
        "service": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "database": db_status,
    }


if __name__ == "__main__":
    uvicorn.run(app, host="0.0.0.0", port=8000)
