"""
Proxy service config ⇄ V2Ray-style JSON.

One VMess inbound with one client, one freedom outbound.
"""

from __future__ import annotations

import json
from typing import Any

from pydantic import ValidationError

from provisioner.core.errors import InvalidConfigError
from provisioner.core.models.artifact import ServiceConfig, Transport

_SETTINGS_KEY = {"ws": "wsSettings", "http": "httpSettings", "grpc": "grpcSettings"}


def _stream_settings(transport: Transport) -> dict[str, Any]:
    stream: dict[str, Any] = {"network": transport.type}
    if transport.type == "grpc":
        stream["grpcSettings"] = {"serviceName": transport.path}
    elif transport.type in _SETTINGS_KEY:
        stream[_SETTINGS_KEY[transport.type]] = {"path": transport.path}
    return stream


def render_service(config: ServiceConfig) -> str:
    document = {
        "inbounds": [{
            "port": config.listen_port,
            "protocol": "vmess",
            "settings": {"clients": [{"id": config.client_id, "alterId": 0}]},
            "streamSettings": _stream_settings(config.transport),
        }],
        "outbounds": [{"protocol": "freedom", "settings": {}}],
    }
    return json.dumps(document, indent=2) + "\n"


def parse_service(text: str) -> ServiceConfig:
    try:
        document = json.loads(text)
        inbound = document["inbounds"][0]
        clients = inbound["settings"]["clients"]
        stream = inbound.get("streamSettings", {})
        network = stream.get("network", "tcp")
        if network == "grpc":
            path = stream.get("grpcSettings", {}).get("serviceName", "")
        elif network in _SETTINGS_KEY:
            path = stream.get(_SETTINGS_KEY[network], {}).get("path", "")
        else:
            path = ""
        if len(clients) != 1:
            raise InvalidConfigError(f"service config: expected one client, found {len(clients)}")
        return ServiceConfig(
            client_id=clients[0]["id"],
            listen_port=inbound["port"],
            transport=Transport(type=network, path=path),
        )
    except InvalidConfigError:
        raise
    except (json.JSONDecodeError, KeyError, IndexError, TypeError, AttributeError) as e:
        raise InvalidConfigError(f"service config: malformed document ({e})") from e
    except ValidationError as e:
        raise InvalidConfigError(f"service config: {e}") from e
