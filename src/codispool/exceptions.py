"""Exception hierarchy for the Codis client pool."""

from typing import Optional


class CodisPoolError(Exception):
    """Base exception for all codispool errors."""

    def __init__(self, message: str = ""):
        self.message = message
        super().__init__(message)


class ConfigurationError(CodisPoolError):
    """Raised at construction time when the configuration is unusable."""


class SessionTimeoutError(CodisPoolError):
    """Raised when the ZooKeeper session never reaches the connected state."""

    def __init__(self, servers: str, deadline: float):
        self.servers = servers
        self.deadline = deadline
        super().__init__(
            f"ZooKeeper session to {servers} not established within {deadline:.1f}s"
        )


class PoolEmptyError(CodisPoolError):
    """Passed to subscribers when no proxy client is available."""

    def __init__(self, message: str = "Codis client pool is empty."):
        super().__init__(message)


class ProxyDetailError(CodisPoolError):
    """Raised when a proxy node payload cannot be decoded."""

    def __init__(self, proxy_id: str, reason: str = ""):
        self.proxy_id = proxy_id
        msg = f"Invalid detail for proxy {proxy_id}."
        if reason:
            msg += f" Reason: {reason}"
        super().__init__(msg)


class CoordinationError(CodisPoolError):
    """Raised when a ZooKeeper operation fails or the session is closed."""

    def __init__(self, message: str, path: Optional[str] = None):
        self.path = path
        if path:
            message = f"{message} (path: {path})"
        super().__init__(message)
