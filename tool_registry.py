"""Tool registry: which known tool does a literal command belong to?

The registry is built once at startup and never mutated afterwards, so one
instance can be shared by any number of concurrently running sessions.
"""

from dataclasses import dataclass
from types import MappingProxyType
from typing import Callable, Iterable, Optional

from agent_models import AgentError, RiskTier
from risk_classifier import parse_command


class UnknownTool(AgentError):
    """The command does not match any registered tool."""

    def __init__(self, command: str):
        self.command = command
        super().__init__(f"no registered tool recognizes command: {command!r}")


@dataclass(frozen=True)
class ToolDescriptor:
    keyword: str
    matches: Callable[[str], bool]
    default_tier: RiskTier = RiskTier.LOW
    domain: str = ""


def binary_predicate(*names: str) -> Callable[[str], bool]:
    """Predicate: the command's first real token (sudo looked through) is one of `names`."""
    accepted = frozenset(names)

    def _match(command_str: str) -> bool:
        return parse_command(command_str).tool in accepted
    return _match


class ToolRegistry:
    """Read-only ordered table of ToolDescriptors. First matching descriptor wins."""

    def __init__(self, descriptors: Iterable[ToolDescriptor]):
        table = {}
        for d in descriptors:
            if d.keyword in table:
                raise ValueError(f"duplicate tool keyword: {d.keyword}")
            table[d.keyword] = d
        self._descriptors = MappingProxyType(table)

    def __contains__(self, keyword: str) -> bool:
        return keyword in self._descriptors

    def __len__(self) -> int:
        return len(self._descriptors)

    @property
    def keywords(self) -> tuple[str, ...]:
        return tuple(self._descriptors)

    def get(self, keyword: str) -> Optional[ToolDescriptor]:
        return self._descriptors.get(keyword)

    def resolve(self, command_str: str) -> ToolDescriptor:
        """Return the descriptor for `command_str` or raise UnknownTool."""
        if not isinstance(command_str, str) or not command_str.strip():
            raise UnknownTool(command_str or "")
        for descriptor in self._descriptors.values():
            if descriptor.matches(command_str):
                return descriptor
        raise UnknownTool(command_str)

    def describe(self) -> str:
        """One line per tool, used in reasoning prompts."""
        return "\n".join(
            f"- {d.keyword}: {d.domain}" for d in self._descriptors.values()
        )


# ---------------------------------------------------------------------------
# Default tool table
# ---------------------------------------------------------------------------

def default_descriptors() -> list[ToolDescriptor]:
    return [
        ToolDescriptor("kubectl", binary_predicate("kubectl"), RiskTier.LOW,
                       "Kubernetes cluster: pods, deployments, services, events"),
        ToolDescriptor("docker", binary_predicate("docker", "docker-compose", "podman"), RiskTier.LOW,
                       "Containers, images, container networks and volumes"),
        ToolDescriptor("nginx", binary_predicate("nginx"), RiskTier.MEDIUM,
                       "nginx web server binary (config test, signals)"),
        ToolDescriptor("apache2", binary_predicate("apachectl", "apache2ctl", "apache2", "httpd"),
                       RiskTier.MEDIUM, "Apache HTTP server control"),
        ToolDescriptor("mysql", binary_predicate("mysql", "mysqladmin", "mysqlshow"), RiskTier.MEDIUM,
                       "MySQL / MariaDB client and admin"),
        ToolDescriptor("systemd", binary_predicate("systemctl", "journalctl", "service"), RiskTier.LOW,
                       "Service manager state and journal logs"),
        ToolDescriptor("network", binary_predicate(
            "lsof", "ss", "netstat", "ping", "dig", "nslookup", "host", "curl", "wget",
            "ip", "ifconfig", "traceroute", "tracepath", "iptables", "ip6tables", "ufw",
            "nc", "telnet", "mtr",
        ), RiskTier.LOW, "Sockets, ports, DNS, routing, firewall, HTTP probes"),
        ToolDescriptor("system", binary_predicate(
            "ps", "pgrep", "top", "uptime", "free", "df", "du", "cat", "tail", "head",
            "less", "grep", "ls", "find", "stat", "whoami", "id", "uname", "hostname",
            "rm", "rmdir", "mv", "cp", "chmod", "chown", "kill", "killall", "pkill",
        ), RiskTier.LOW, "Processes, files, logs and disk usage"),
    ]


def default_registry() -> ToolRegistry:
    return ToolRegistry(default_descriptors())

