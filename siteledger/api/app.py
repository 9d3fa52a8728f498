"""FastAPI application for the SiteLedger HTTP API."""

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from siteledger import __version__
from siteledger.api.routes import router
from siteledger.errors import ERROR_STATUS_CODES, SiteLedgerError
from siteledger.observability import configure_logging
from siteledger.sdk import SiteLedgerSDK

logger = logging.getLogger(__name__)

configure_logging()

# Singleton SDK instance for the process
sdk = SiteLedgerSDK()

app = FastAPI(
    title="SiteLedger API",
    version=__version__,
    description="HTTP API for SiteLedger - settlement and inventory reconciliation for site groups",
)

# Inject SDK into app state for route access
app.state.sdk = sdk

# Mount routes
app.include_router(router, prefix="/v1")


@app.exception_handler(SiteLedgerError)
async def siteledger_error_handler(request: Request, exc: SiteLedgerError) -> JSONResponse:
    status_code = ERROR_STATUS_CODES.get(exc.error_code, 400)
    logger.warning(
        "Request failed",
        extra={"path": request.url.path, "error_code": exc.error_code, "status_code": status_code},
    )
    return JSONResponse(status_code=status_code, content=exc.to_dict())


@app.get("/health")
def health() -> dict:
    return {"status": "ok", "version": app.version}
