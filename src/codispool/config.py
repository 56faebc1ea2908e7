"""Pool configuration."""

from dataclasses import dataclass, field, fields
from typing import Any, Callable, Dict, Optional, Union
from pathlib import Path
import yaml

from codispool.exceptions import ConfigurationError
from codispool.pool.factory import ClientVariant

LogSink = Union[bool, Callable[[str], None]]


@dataclass
class PoolConfig:
    """Configuration for a Codis client pool.

    Only ``zk_servers`` and ``zk_proxy_dir`` are required; everything else
    has a default. The configuration is validated on construction so an
    unusable pool never gets created.
    """

    zk_servers: str = ""
    zk_proxy_dir: str = ""
    codis_password: Optional[str] = None

    # Passed straight through to KazooClient / the redis client
    zk_client_options: Dict[str, Any] = field(default_factory=dict)
    redis_client_options: Dict[str, Any] = field(default_factory=dict)

    client_variant: ClientVariant = ClientVariant.ASYNC

    # True/False toggles logging, a callable receives each log line
    log: LogSink = True

    # JSON field of the proxy node payload holding "host:port"
    proxy_address_key: str = "addr"

    session_timeout: float = 30.0
    connection_retries: int = 3

    def __post_init__(self):
        self.validate()

    def validate(self):
        """Check required fields and normalise option types."""
        if not self.zk_servers:
            raise ConfigurationError("The parameter zk_servers is required!")
        if not self.zk_proxy_dir:
            raise ConfigurationError("The parameter zk_proxy_dir is required!")

        try:
            self.client_variant = ClientVariant(self.client_variant)
        except ValueError:
            choices = ", ".join(v.value for v in ClientVariant)
            raise ConfigurationError(
                f"Unknown client_variant {self.client_variant!r}, expected one of: {choices}"
            ) from None

        if not (isinstance(self.log, bool) or callable(self.log)):
            raise ConfigurationError("The parameter log must be a bool or a callable")
        if not self.proxy_address_key:
            raise ConfigurationError("The parameter proxy_address_key must not be empty")
        if self.session_timeout <= 0:
            raise ConfigurationError(
                f"session_timeout must be positive, got {self.session_timeout}"
            )
        if self.connection_retries < 0:
            raise ConfigurationError(
                f"connection_retries must not be negative, got {self.connection_retries}"
            )
        if self.zk_client_options is None:
            self.zk_client_options = {}
        if self.redis_client_options is None:
            self.redis_client_options = {}

    @property
    def session_deadline(self) -> float:
        """Seconds allowed for the ZooKeeper session to establish."""
        return max(self.connection_retries, 1) * self.session_timeout

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PoolConfig":
        """Create config from dictionary, ignoring unknown keys."""
        if data is None:
            data = {}
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})

    @classmethod
    def from_yaml(
        cls, config_path: str, overrides: Optional[Dict[str, Any]] = None
    ) -> "PoolConfig":
        """Load config from a YAML file.

        The options may sit at the top level or under a ``codis`` section.
        Non-None ``overrides`` replace file values before validation.
        """
        path = Path(config_path)
        if not path.exists():
            raise ConfigurationError(f"Config not found at {path}")

        with open(path) as f:
            data = yaml.safe_load(f) or {}

        if not isinstance(data, dict):
            raise ConfigurationError(f"Config at {path} must be a mapping")

        options = dict(data.get("codis", data) or {})
        if overrides:
            options.update({k: v for k, v in overrides.items() if v is not None})
        return cls.from_dict(options)
