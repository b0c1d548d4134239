# Vault API server - FastAPI app for the local shell
#
# Bound to localhost. The shell fetches the session token from
# /api/session once, then sends it as X-Session-Token on every vault call.

import logging
from datetime import datetime, timezone

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .. import __version__
from ..core import EventSeverity, EventType, get_audit_logger
from .security import session_guard
from .vault_routes import router as vault_router
from .vault_routes import shutdown_vault_manager

logger = logging.getLogger(__name__)

app = FastAPI(
    title="BlackVault API",
    description="Local encrypted credential vault",
    version=__version__,
)

_allowed_origins = [
    "http://localhost:3000", "http://127.0.0.1:3000",
    "http://localhost:8000", "http://127.0.0.1:8000",
]
app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(vault_router)


@app.on_event("startup")
async def startup_event():
    """Generate the session token for this server instance."""
    session_guard.issue()
    get_audit_logger().log_event(
        event_type=EventType.SYSTEM_START,
        severity=EventSeverity.INFO,
        message="BlackVault API server started",
        details={"version": __version__},
    )


@app.on_event("shutdown")
async def shutdown_event():
    """Lock the vault before the process exits."""
    shutdown_vault_manager()
    get_audit_logger().log_event(
        event_type=EventType.SYSTEM_STOP,
        severity=EventSeverity.INFO,
        message="BlackVault API server shutting down",
    )


@app.get("/api/session")
async def get_session():
    """
    Session token for API authentication.

    Unprotected: the shell needs it to authenticate. The token is random,
    changes on every restart and is only reachable on localhost.
    """
    return {"session_token": session_guard.token}


@app.get("/api/health")
async def health_check():
    return {"status": "ok", "timestamp": datetime.now(timezone.utc).isoformat()}


def start_api_server(host: str = "127.0.0.1", port: int = 8000):
    """
    Start the FastAPI server.

    Args:
        host: Host to bind to (default: localhost only)
        port: Port to listen on
    """
    uvicorn.run(app, host=host, port=port, log_level="info")


if __name__ == "__main__":
    start_api_server()
