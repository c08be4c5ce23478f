"""Remote-desktop gateway (Apache Guacamole) bridge for vmlab.

Registers VNC endpoints of running nodes as Guacamole connections through the
gateway's REST API and computes the browser-facing URLs for them.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Tuple
from urllib.parse import urlencode

import requests

from vmlab.constants import GATEWAY_ROOT_GROUP, GATEWAY_TIMEOUT, GATEWAY_TOKEN_HEADER
from vmlab.exceptions import (
    AuthFailed,
    ConfigError,
    ConnectionFailed,
    GatewayError,
    GatewayUnavailable,
)
from vmlab.models import GuacamoleConnection, GuacamoleUiDescriptor, QemuInstance
from vmlab.utils import log, random_identifier, sanitize_identifier
from vmlab.vnc import disable_vnc


@dataclass(frozen=True)
class GatewayConfig:
    base_url: str
    api_path: str
    tunnel_path: str
    connection_prefix: str
    username: str
    password: str
    websocket_url: str
    timeout: float = GATEWAY_TIMEOUT

    @property
    def api_url(self) -> str:
        return f"{self.base_url}/{self.api_path}"

    @property
    def tunnel_url(self) -> str:
        return f"{self.base_url}/{self.tunnel_path}"


def compute_websocket_url(base_url: str, tunnel_path: str) -> str:
    if base_url.startswith("https://"):
        scheme, remainder = "wss://", base_url[len("https://"):]
    elif base_url.startswith("http://"):
        scheme, remainder = "ws://", base_url[len("http://"):]
    else:
        scheme, remainder = "ws://", base_url
    return f"{scheme}{remainder.strip('/')}/{tunnel_path.strip('/')}"


def build_gateway_config(
    base_url: str,
    api_path: str,
    tunnel_path: str,
    connection_prefix: str,
    username: str,
    password: str,
    websocket_url: Optional[str] = None,
    timeout: float = GATEWAY_TIMEOUT,
) -> GatewayConfig:
    """Normalize and validate gateway settings once at startup."""
    base = (base_url or "").strip().rstrip("/")
    api = (api_path or "").strip().strip("/")
    tunnel = (tunnel_path or "").strip().strip("/")
    for name, value in (
        ("GUAC_URL", base),
        ("GUAC_API_PATH", api),
        ("GUAC_TUNNEL_PATH", tunnel),
        ("GUAC_ADMIN_USER", username),
        ("GUAC_ADMIN_PASS", password),
    ):
        if not value:
            raise ConfigError(f"{name} must not be empty")
    prefix = sanitize_identifier(connection_prefix or "")
    if not prefix:
        raise ConfigError(
            f"GUAC_CONNECTION_PREFIX '{connection_prefix}' contains no usable characters"
        )
    ws_url = (websocket_url or "").strip() or compute_websocket_url(base, tunnel)
    return GatewayConfig(
        base_url=base,
        api_path=api,
        tunnel_path=tunnel,
        connection_prefix=prefix,
        username=username,
        password=password,
        websocket_url=ws_url,
        timeout=timeout,
    )


def describe_connection(config: GatewayConfig, connection_name: str) -> GuacamoleUiDescriptor:
    key = sanitize_identifier(connection_name)
    if not key:
        key = random_identifier()
        log("DEBUG", f"Connection name '{connection_name}' sanitized to nothing; using {key}")
    client_identifier = f"{config.connection_prefix}-{key}"
    client_url = f"{config.base_url}/#/client/{client_identifier}"
    return GuacamoleUiDescriptor(
        connection_key=key,
        client_identifier=client_identifier,
        api_url=config.api_url,
        websocket_url=config.websocket_url,
        tunnel_url=config.tunnel_url,
        client_url=client_url,
        share_url=f"{client_url}?{urlencode({'share': client_identifier})}",
    )


def _error_detail(response: requests.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        payload = None
    if isinstance(payload, dict) and payload.get("message"):
        return str(payload["message"])
    text = (response.text or "").strip()
    return text or response.reason or f"HTTP {response.status_code}"


class GuacamoleClient:
    """Session lifecycle against the gateway's REST API."""

    def __init__(self, config: GatewayConfig) -> None:
        self.config = config

    def _request(self, session: requests.Session, method: str, url: str, **kwargs) -> requests.Response:
        try:
            return session.request(method, url, timeout=self.config.timeout, **kwargs)
        except requests.RequestException as exc:
            raise GatewayUnavailable(f"Gateway request {method} {url} failed: {exc}") from exc

    def authenticate(self, session: requests.Session) -> Tuple[str, str]:
        """Exchange the admin credentials for ``(auth_token, data_source)``."""
        response = self._request(
            session,
            "POST",
            f"{self.config.api_url}/tokens",
            data={"username": self.config.username, "password": self.config.password},
        )
        if not response.ok:
            detail = _error_detail(response)
            raise AuthFailed(f"Authentication failed: {detail}", status=response.status_code, detail=detail)
        try:
            payload = response.json()
            return payload["authToken"], payload["dataSource"]
        except (ValueError, KeyError, TypeError) as exc:
            raise AuthFailed(f"Malformed authentication response: {exc}", status=response.status_code) from exc

    def create(self, connection_name: str, vnc_host: str, vnc_port: int) -> GuacamoleConnection:
        descriptor = describe_connection(self.config, connection_name)
        body = {
            "name": connection_name,
            "parentIdentifier": GATEWAY_ROOT_GROUP,
            "protocol": "vnc",
            "parameters": {"hostname": vnc_host, "port": str(vnc_port)},
            "attributes": {"max-connections": "", "max-connections-per-user": ""},
        }
        with requests.Session() as session:
            token, data_source = self.authenticate(session)
            response = self._request(
                session,
                "POST",
                f"{self.config.api_url}/session/data/{data_source}/connections",
                headers={GATEWAY_TOKEN_HEADER: token},
                json=body,
            )
            if not response.ok:
                detail = _error_detail(response)
                raise ConnectionFailed(
                    f"Failed to create connection: {detail}", status=response.status_code, detail=detail
                )
            try:
                identifier = str(response.json()["identifier"])
            except (ValueError, KeyError, TypeError) as exc:
                raise GatewayError(f"Malformed create-connection response: {exc}") from exc

        log("INFO", f"Registered gateway connection {identifier} -> {vnc_host}:{vnc_port}")
        return GuacamoleConnection(
            connection_name=connection_name,
            connection_key=descriptor.connection_key,
            connection_id=identifier,
            client_identifier=descriptor.client_identifier,
            api_url=descriptor.api_url,
            client_url=descriptor.client_url,
            share_url=descriptor.share_url,
            websocket_url=descriptor.websocket_url,
            tunnel_url=descriptor.tunnel_url,
            vnc_host=vnc_host,
            vnc_port=vnc_port,
        )

    def delete_by_id(self, connection_id: str) -> None:
        with requests.Session() as session:
            token, data_source = self.authenticate(session)
            response = self._request(
                session,
                "DELETE",
                f"{self.config.api_url}/session/data/{data_source}/connections/{connection_id}",
                headers={GATEWAY_TOKEN_HEADER: token},
            )
            if not response.ok:
                detail = _error_detail(response)
                raise ConnectionFailed(
                    f"Failed to delete connection {connection_id}: {detail}",
                    status=response.status_code,
                    detail=detail,
                )
        log("INFO", f"Deleted gateway connection {connection_id}")

    def delete(self, connection: GuacamoleConnection) -> None:
        self.delete_by_id(connection.connection_id)

    def delete_with_endpoint_disable(self, connection: GuacamoleConnection, instance: QemuInstance) -> None:
        """Delete the gateway record first, then turn VNC off on the instance.

        A failed disable leaves an open VNC port with no gateway record, which
        a later disable_vnc call can still clean up.
        """
        self.delete(connection)
        disable_vnc(instance)
