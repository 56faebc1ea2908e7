"""Pydantic models for Codis proxy registrations.

Codis dashboards publish one JSON document per proxy under the product's
proxy directory, for example::

    {"token": "1b3f...", "addr": "10.0.0.5:19000", "admin_addr": "10.0.0.5:11080",
     "proto_type": "tcp4", "product_name": "codis-demo", "hostname": "proxy-1"}
"""

import json
from typing import Any, Dict

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from codispool.exceptions import ProxyDetailError


class ProxyDetail(BaseModel):
    """Decoded payload of one proxy node. Replaced wholesale on change."""

    model_config = ConfigDict(frozen=True)

    proxy_id: str
    address: str = Field(min_length=1)
    payload: Dict[str, Any] = Field(default_factory=dict)

    @property
    def url(self) -> str:
        """Redis URL of the proxy."""
        return f"redis://{self.address}"

    @classmethod
    def from_payload(
        cls,
        proxy_id: str,
        raw: bytes,
        address_key: str = "addr",
    ) -> "ProxyDetail":
        """
        Decode a proxy node payload.

        Args:
            proxy_id: Name of the proxy node
            raw: Raw node data (UTF-8 JSON)
            address_key: Field holding the proxy ``host:port``

        Returns:
            Decoded ProxyDetail

        Raises:
            ProxyDetailError: If the payload is not a JSON object or lacks
                the address field
        """
        try:
            data = json.loads(raw.decode("utf-8"))
        except (UnicodeDecodeError, ValueError, AttributeError) as e:
            raise ProxyDetailError(proxy_id, f"malformed payload: {e}") from e

        if not isinstance(data, dict):
            raise ProxyDetailError(proxy_id, "payload is not a JSON object")

        address = data.get(address_key)
        if not isinstance(address, str):
            raise ProxyDetailError(proxy_id, f"missing string field {address_key!r}")

        try:
            return cls(proxy_id=proxy_id, address=address, payload=data)
        except ValidationError as e:
            raise ProxyDetailError(proxy_id, str(e)) from e
