"""
Firewall rule set ⇄ rules file.

One line per policy or rule, in order::

    default deny incoming
    default allow outgoing
    allow in 443/tcp
"""

from __future__ import annotations

import re

from provisioner.core.errors import InvalidConfigError
from provisioner.core.models.artifact import FirewallRule, FirewallRuleSet
from provisioner.core.render.common import MANAGED_HEADER, content_lines

_DEFAULT = re.compile(r"^default\s+(allow|deny)\s+(incoming|outgoing)$")
_RULE = re.compile(r"^(allow|deny)\s+(in|out)\s+(\d+)/(tcp|udp)$")


def render_firewall(rules: FirewallRuleSet) -> str:
    lines = [
        MANAGED_HEADER,
        f"default {rules.default_incoming} incoming",
        f"default {rules.default_outgoing} outgoing",
    ]
    lines.extend(f"{r.action} {r.direction} {r.spec}" for r in rules.rules)
    return "\n".join(lines) + "\n"


def parse_firewall(text: str) -> FirewallRuleSet:
    defaults: dict[str, str] = {}
    rules: list[FirewallRule] = []
    for lineno, line in content_lines(text):
        if m := _DEFAULT.match(line):
            defaults[f"default_{m.group(2)}"] = m.group(1)
        elif m := _RULE.match(line):
            rules.append(FirewallRule(
                action=m.group(1),
                direction=m.group(2),
                port=int(m.group(3)),
                protocol=m.group(4),
            ))
        else:
            raise InvalidConfigError(f"firewall rules line {lineno}: cannot parse {line!r}")
    return FirewallRuleSet(rules=rules, **defaults)


def ufw_commands(rules: FirewallRuleSet) -> list[list[str]]:
    """The ufw invocations that enforce ``rules`` (enable not included)."""
    cmds = [
        ["ufw", "default", rules.default_incoming, "incoming"],
        ["ufw", "default", rules.default_outgoing, "outgoing"],
    ]
    cmds.extend(["ufw", r.action, r.direction, r.spec] for r in rules.rules)
    return cmds
