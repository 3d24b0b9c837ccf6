import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from imagetrust.api import signatures
from imagetrust.config import settings
from imagetrust.models.registry import RegistryErrorCode
from imagetrust.models.signature import SignatureVerificationError
from imagetrust.services.keys import KeyLoadError
from imagetrust.services.registry import RegistryError

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

API_TITLE = "Image Trust Gateway API"
API_VERSION = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    logger.info("Starting %s", API_TITLE)
    yield
    logger.info("Shutting down %s", API_TITLE)


app = FastAPI(
    title=API_TITLE,
    description="Verifies detached signatures and signed claims of container images",
    version=API_VERSION,
    lifespan=lifespan,
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(signatures.router)


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "message": API_TITLE,
        "version": API_VERSION,
        "status": "running",
    }


@app.get("/health")
async def health():
    """Health check endpoint."""
    return {"status": "healthy"}


# Global exception handlers


@app.exception_handler(SignatureVerificationError)
async def signature_verification_error_handler(
    request: Request, exc: SignatureVerificationError
):
    """
    Handle batch-level verification failures.

    Every per-signature rejection reason is returned in ``failures``.
    """
    logger.warning(f"Signature verification failed: {exc.error_code}")
    content = {
        "error_code": exc.error_code,
        "message": exc.message,
        "detail": exc.remediation,
        "failures": exc.failures,
    }
    return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content=content)


@app.exception_handler(KeyLoadError)
async def key_error_handler(request: Request, exc: KeyLoadError):
    """Handle public key loading errors."""
    logger.warning(f"Key error: {exc}")
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={
            "error_code": "KEY_ERROR",
            "message": str(exc),
            "detail": "Failed to load the verification key. Supply an Ed25519 public key as PEM or base64 DER.",
        },
    )


_REGISTRY_STATUS = {
    RegistryErrorCode.INVALID_REFERENCE: status.HTTP_400_BAD_REQUEST,
    RegistryErrorCode.UNAUTHORIZED: status.HTTP_401_UNAUTHORIZED,
    RegistryErrorCode.NOT_FOUND: status.HTTP_404_NOT_FOUND,
}


@app.exception_handler(RegistryError)
async def registry_error_handler(request: Request, exc: RegistryError):
    """Handle registry access errors."""
    logger.error(f"Registry error: {exc}")
    return JSONResponse(
        status_code=_REGISTRY_STATUS.get(exc.error_code, status.HTTP_502_BAD_GATEWAY),
        content={
            "error_code": exc.error_code.value.upper(),
            "message": exc.message,
            "detail": "Failed to fetch the image descriptor or its signatures from the registry.",
        },
    )


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    """Handle request validation errors."""
    logger.warning(f"Validation error: {exc}")
    errors = exc.errors()
    error_messages = []

    for error in errors:
        field = " -> ".join(str(loc) for loc in error["loc"])
        message = error["msg"]
        error_messages.append(f"{field}: {message}")

    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={
            "error_code": "VALIDATION_ERROR",
            "message": "Invalid request data",
            "detail": "; ".join(error_messages),
        },
    )


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    """
    Handle all other unexpected exceptions.

    Logs detailed error information while returning a user-friendly message.
    """
    logger.error(f"Unexpected error: {exc}", exc_info=True)

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "error_code": "INTERNAL_ERROR",
            "message": "An unexpected error occurred",
            "detail": "The server encountered an unexpected error. Please try again later or contact support if the problem persists.",
        },
    )
