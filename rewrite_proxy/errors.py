from typing import Optional


class ProxyError(Exception):
    """Base class for failures raised inside the proxy core."""

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class UpstreamRequestFailure(ProxyError):
    """The origin could not be reached or answered with an error status."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


class RewriteFailure(ProxyError):
    """A payload could not be parsed for URL rewriting."""

    def __init__(self, content_type: str, message: str):
        self.content_type = content_type
        super().__init__(message)


class CookieRelayFailure(ProxyError):
    """An upstream Set-Cookie value could not be parsed."""

    def __init__(self, raw: str, message: str = "Malformed Set-Cookie header"):
        self.raw = raw
        super().__init__(message)


class ConnectionCapacityExceeded(ProxyError):
    """The relay registry is full; the upgrade must be refused."""

    close_code = 1008

    def __init__(self, max_connections: int):
        self.max_connections = max_connections
        super().__init__("Server at max capacity")


class RelayConnectionError(ProxyError):
    """Socket level fault on a relay connection."""

    def __init__(self, connection_id: str, message: str):
        self.connection_id = connection_id
        super().__init__(message)
