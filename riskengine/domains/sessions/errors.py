"""Exception types raised by the session risk engine.

Pure computation never raises; it returns sentinels such as NotEvaluable.
These exceptions cover I/O and lookup failures that callers must see.
"""

from typing import Any


class StoreUnavailable(Exception):
    """The session store could not be reached. Retryable."""

    retryable = True

    def __init__(self, operation: str, cause: BaseException | None = None, **context: Any) -> None:
        self.operation = operation
        self.context = context
        self.cause = cause
        detail = f"session store unavailable during {operation}"
        if context:
            detail += " (" + ", ".join(f"{k}={v}" for k, v in sorted(context.items())) + ")"
        if cause is not None:
            detail += f": {cause}"
        super().__init__(detail)


class GeolocationUnavailable(Exception):
    """The geolocation resolver failed at the transport level. Retryable."""

    retryable = True

    def __init__(self, ip_address: str, cause: BaseException | None = None) -> None:
        self.ip_address = ip_address
        self.cause = cause
        super().__init__(f"geolocation lookup failed for {ip_address}: {cause}")


class OperationTimeout(Exception):
    """An on-demand operation exceeded its execution bound."""

    def __init__(self, operation: str, timeout_seconds: float, **context: Any) -> None:
        self.operation = operation
        self.timeout_seconds = timeout_seconds
        self.context = context
        super().__init__(f"{operation} exceeded {timeout_seconds:.1f}s")


class SessionNotFound(LookupError):
    def __init__(self, session_id: str) -> None:
        self.session_id = session_id
        super().__init__(f"Session not found: {session_id}")


class AlertNotFound(LookupError):
    def __init__(self, alert_id: str) -> None:
        self.alert_id = alert_id
        super().__init__(f"Travel alert not found: {alert_id}")


class ThreatNotFound(LookupError):
    def __init__(self, threat_id: str) -> None:
        self.threat_id = threat_id
        super().__init__(f"Threat not found: {threat_id}")
