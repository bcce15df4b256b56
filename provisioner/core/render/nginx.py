"""
Reverse-proxy virtual host ⇄ nginx server block.

Parsing only understands the subset of nginx syntax the renderer
emits (one server block, one location), which is all a verifier needs.
"""

from __future__ import annotations

import re

from pydantic import ValidationError

from provisioner.core.errors import InvalidConfigError
from provisioner.core.models.artifact import ReverseProxyVHost
from provisioner.core.render.common import MANAGED_HEADER

_TOKEN = re.compile(r"[^;{}]+[;{]|}")


def render_vhost(vhost: ReverseProxyVHost) -> str:
    location = [
        "        proxy_redirect off;",
        f"        proxy_pass {vhost.upstream_url};",
        "        proxy_http_version 1.1;",
    ]
    if vhost.websocket_upgrade:
        location += [
            "        proxy_set_header Upgrade $http_upgrade;",
            '        proxy_set_header Connection "upgrade";',
        ]
    location.append("        proxy_set_header Host $http_host;")

    lines = [
        MANAGED_HEADER,
        "server {",
        f"    listen {vhost.listen_port} ssl;",
        f"    server_name {vhost.server_name};",
        "",
        f"    ssl_certificate {vhost.tls_cert_path};",
        f"    ssl_certificate_key {vhost.tls_key_path};",
        "",
        f"    location {vhost.upstream_path} {{",
        *location,
        "    }",
        "}",
    ]
    return "\n".join(lines) + "\n"


def parse_vhost(text: str) -> ReverseProxyVHost:
    body = "\n".join(
        line for line in text.splitlines() if not line.strip().startswith("#")
    )
    stack: list[str] = []
    server: dict[str, str] = {}
    location_path: str | None = None
    location: list[str] = []

    for token in _TOKEN.findall(body):
        statement = " ".join(token.strip().split())
        if statement == "}":
            if not stack:
                raise InvalidConfigError("vhost: unbalanced '}'")
            stack.pop()
            continue
        if statement.endswith("{"):
            header = statement[:-1].strip()
            if header == "server" and not stack:
                stack.append("server")
            elif header.startswith("location ") and stack == ["server"]:
                if location_path is not None:
                    raise InvalidConfigError("vhost: more than one location block")
                location_path = header.split(None, 1)[1]
                stack.append("location")
            else:
                raise InvalidConfigError(f"vhost: unexpected block {header!r}")
            continue

        directive = statement[:-1].strip()
        if stack == ["server"]:
            name, _, value = directive.partition(" ")
            server[name] = value
        elif stack == ["server", "location"]:
            location.append(directive)
        else:
            raise InvalidConfigError(f"vhost: directive outside server block: {directive!r}")

    if stack:
        raise InvalidConfigError("vhost: unterminated block")
    if location_path is None:
        raise InvalidConfigError("vhost: no location block")

    listen = server.get("listen", "").split()
    upstream = next((d.split(None, 1)[1] for d in location if d.startswith("proxy_pass ")), "")
    try:
        return ReverseProxyVHost(
            listen_port=int(listen[0]) if listen else 0,
            server_name=server.get("server_name", ""),
            tls_cert_path=server.get("ssl_certificate", ""),
            tls_key_path=server.get("ssl_certificate_key", ""),
            upstream_path=location_path,
            upstream_url=upstream,
            websocket_upgrade=any(d.startswith("proxy_set_header Upgrade ") for d in location),
        )
    except (ValueError, ValidationError) as e:
        raise InvalidConfigError(f"vhost: {e}") from e
