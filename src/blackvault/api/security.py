# API Security - session guard for the local vault API
#
# A random token is issued when the server starts. Every vault route
# depends on the guard, so a local process that has not read the token
# from the shell cannot reach the vault. Rejected requests are audited.

import secrets
from typing import Optional

from fastapi import Header, HTTPException, status

from ..core import EventSeverity, EventType, get_audit_logger

SESSION_HEADER = "X-Session-Token"


class SessionGuard:
    """
    Holds the per-process session token and checks it on every request.

    Instances are FastAPI dependencies: ``Depends(session_guard)``.
    """

    def __init__(self):
        self._token: Optional[str] = None
        self.rejected = 0

    def issue(self) -> str:
        """Generate a new 256-bit token; the previous one stops working."""
        self._token = secrets.token_urlsafe(32)
        return self._token

    def revoke(self):
        self._token = None

    @property
    def token(self) -> str:
        """
        Raises:
            RuntimeError: No token has been issued yet.
        """
        if self._token is None:
            raise RuntimeError("Session token not issued. Call issue() at startup.")
        return self._token

    def _reject(self, reason: str):
        self.rejected += 1
        get_audit_logger().log_event(
            event_type=EventType.API_ACCESS_DENIED,
            severity=EventSeverity.ALERT,
            message=f"Vault API request rejected: {reason}",
            details={"rejected_total": self.rejected},
        )
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=reason)

    async def __call__(self, x_session_token: Optional[str] = Header(None)) -> str:
        if self._token is None:
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail="Session token not initialized",
            )
        if x_session_token is None:
            self._reject(f"Missing {SESSION_HEADER} header")
        # Constant-time comparison
        if not secrets.compare_digest(x_session_token.encode("utf-8"), self._token.encode("utf-8")):
            self._reject("Invalid session token")
        return x_session_token


session_guard = SessionGuard()
