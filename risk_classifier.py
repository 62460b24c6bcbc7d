"""Risk classifier: maps a literal command string to a risk tier.

Public API:
    result = classify("kubectl delete pods --all")      # -> Classification(CRITICAL, ...)
    assessment = assess("docker restart web", policy)   # -> RiskAssessment with gate info

Four ordered tiers: LOW (read-only) -> MEDIUM (reversible change) -> HIGH (removal)
-> CRITICAL (removal with a wildcard, --all, substitution, or a catastrophic target).

Classification is a pure function of the string and the rule tables below.
Rule layering for one command:
    1. Tool rules for the command's tool (kubectl, docker, systemctl, ...).
    2. Generic verb rules, consulted only when no tool rule matched.
    3. Critical rules, always consulted.
The highest tier across matched rules wins; on equal tiers the earlier rule wins.
"""

import os
import re
import shlex
from dataclasses import dataclass, field
from typing import Callable, Optional

from agent_models import RiskAssessment, RiskTier


# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

MODE_NONE = "none"
MODE_SIMPLE = "simple"
MODE_TYPED = "typed"

CONFIRMATION_MODES = (MODE_NONE, MODE_SIMPLE, MODE_TYPED)

DEFAULT_CONFIRMATION_MODES = {
    RiskTier.LOW: MODE_NONE,
    RiskTier.MEDIUM: MODE_SIMPLE,
    RiskTier.HIGH: MODE_SIMPLE,
    RiskTier.CRITICAL: MODE_TYPED,
}

# Wrappers looked through when finding the real tool
_PREFIX_COMMANDS = frozenset({"sudo", "doas", "env", "nohup", "time"})


# ---------------------------------------------------------------------------
# Parsed command
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ParsedCommand:
    raw: str
    args: tuple[str, ...]
    tool: str
    positional: tuple[str, ...]   # lower-cased, non-flag args after the tool
    words: frozenset              # every lower-cased word, quoted SQL included

    def has_flag(self, *flags: str) -> bool:
        return any(a == f or a.startswith(f + "=") for a in self.args for f in flags)

    def sub(self, n: int = 0) -> str:
        return self.positional[n] if len(self.positional) > n else ""


def parse_command(command_str: str) -> ParsedCommand:
    command_str = command_str.strip()
    try:
        args = shlex.split(command_str)
    except ValueError:
        # Malformed quoting: fall back to whitespace split
        args = command_str.split()

    rest = list(args)
    while rest and os.path.basename(rest[0]) in _PREFIX_COMMANDS:
        rest.pop(0)
        # sudo -E cmd, env VAR=value cmd
        while rest and (rest[0].startswith("-") or "=" in rest[0]):
            rest.pop(0)
    tool = os.path.basename(rest[0]).lower() if rest else ""

    positional = tuple(a.lower() for a in rest[1:] if not a.startswith("-"))
    words = frozenset(
        w for a in args for w in re.split(r"[\s;,()]+", a.lower()) if w
    )
    return ParsedCommand(
        raw=command_str, args=tuple(args), tool=tool, positional=positional, words=words,
    )


# ---------------------------------------------------------------------------
# Rule table
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class RiskRule:
    name: str
    tier: RiskTier
    matches: Callable[[ParsedCommand], bool]
    tools: frozenset = field(default_factory=frozenset)   # empty = any tool
    alternative: Optional[str] = None


@dataclass(frozen=True)
class Classification:
    tier: RiskTier
    rule: str
    safer_alternative: Optional[str] = None


def _rule(name, tier, matches, tools=(), alternative=None) -> RiskRule:
    return RiskRule(name, tier, matches, frozenset(tools), alternative)


# --- Generic verbs ---

READ_VERBS = frozenset({
    "get", "list", "show", "describe", "inspect", "status", "logs", "view",
    "top", "version", "info", "explain",
})

CHANGE_VERBS = frozenset({
    "create", "update", "restart", "scale", "apply", "start", "reload", "patch",
    "edit", "set", "rollout", "label", "annotate", "run", "build", "push",
    "enable", "disable", "install", "upgrade", "mv", "cp", "chmod", "chown",
})

REMOVE_VERBS = frozenset({
    "delete", "remove", "drop", "rm", "rmi", "rmdir", "stop", "kill", "killall",
    "pkill", "truncate", "purge", "uninstall", "prune", "drain", "destroy",
    "shred", "unlink", "down",
})

GENERIC_RULES = [
    _rule("removal verb", RiskTier.HIGH,
          lambda c: bool(c.words & REMOVE_VERBS) or c.tool in REMOVE_VERBS),
    _rule("state-changing verb", RiskTier.MEDIUM,
          lambda c: bool(c.words & CHANGE_VERBS) or c.tool in CHANGE_VERBS),
    _rule("read-only verb", RiskTier.LOW,
          lambda c: bool(c.words & READ_VERBS)),
]


# --- Critical checks (always applied) ---

_BLOCK_DEVICE_RE = re.compile(
    r"/dev/(?:[shv]d[a-z]\d*|nvme\d+n\d+(?:p\d+)?|xvd[a-z]\d*|mmcblk\d+(?:p\d+)?)"
)
_FORK_BOMB_RE = re.compile(r":\(\)\s*\{.*:\|:.*&.*\}\s*;?\s*:")
_SUBSTITUTION_RE = re.compile(r"`[^`]+`|\$\([^)]+\)|\$\{[^}]+\}")
_BULK_FLAGS = ("--all", "--all-namespaces")


def _is_removal(c: ParsedCommand) -> bool:
    return bool(c.words & REMOVE_VERBS) or c.tool in REMOVE_VERBS


def _has_wildcard(c: ParsedCommand) -> bool:
    return any("*" in a for a in c.args[1:])


def _is_root_wipe(c: ParsedCommand) -> bool:
    if c.tool != "rm":
        return False
    flags = "".join(a for a in c.args if a.startswith("-") and not a.startswith("--"))
    recursive = "r" in flags.lower() or "--recursive" in c.args
    targets = [a for a in c.args[1:] if not a.startswith("-")]
    return recursive and any(t.rstrip("/") == "" or t == "/*" for t in targets)


CRITICAL_RULES = [
    _rule("removal with wildcard", RiskTier.CRITICAL,
          lambda c: _is_removal(c) and _has_wildcard(c),
          alternative="List the matching targets first, then remove them by name"),
    _rule("removal of all resources", RiskTier.CRITICAL,
          lambda c: _is_removal(c) and (c.has_flag(*_BULK_FLAGS) or (c.tool == "kubectl" and c.has_flag("-A"))),
          alternative="Remove the specific resource by name instead of --all"),
    _rule("removal with shell substitution", RiskTier.CRITICAL,
          lambda c: _is_removal(c) and bool(_SUBSTITUTION_RE.search(c.raw)),
          alternative="Run the inner command on its own and review its output before removing"),
    _rule("recursive removal of /", RiskTier.CRITICAL, _is_root_wipe),
    _rule("filesystem format", RiskTier.CRITICAL,
          lambda c: c.tool == "mkfs" or c.tool.startswith("mkfs.")),
    _rule("raw write to block device", RiskTier.CRITICAL,
          lambda c: c.tool == "dd" and any(
              a.startswith("of=") and _BLOCK_DEVICE_RE.match(a[3:]) for a in c.args)),
    _rule("fork bomb", RiskTier.CRITICAL, lambda c: bool(_FORK_BOMB_RE.search(c.raw))),
    _rule("host shutdown", RiskTier.CRITICAL,
          lambda c: c.tool in {"shutdown", "reboot", "halt", "poweroff"}
          or (c.tool == "init" and c.sub() in {"0", "6"})),
]


# --- Tool rules ---

_KUBECTL = ("kubectl",)
_DOCKER = ("docker", "docker-compose", "podman")
_SYSTEMD = ("systemctl", "service")
_APACHE = ("apachectl", "apache2ctl", "apache2", "httpd")
_MYSQL = ("mysql", "mysqladmin")

_KUBECTL_CHANGE = frozenset({
    "apply", "create", "patch", "edit", "scale", "rollout", "label", "annotate",
    "set", "cordon", "uncordon", "taint", "replace", "expose", "autoscale",
})
_KUBECTL_READ = frozenset({
    "get", "describe", "logs", "top", "explain", "version", "api-resources",
    "cluster-info", "config", "auth", "events",
})

_DOCKER_REMOVE = frozenset({"rm", "rmi"})
_DOCKER_CHANGE = frozenset({
    "run", "create", "restart", "stop", "kill", "build", "push", "start",
    "pause", "unpause", "exec", "pull", "up", "tag",
})
_DOCKER_READ = frozenset({
    "ps", "images", "inspect", "logs", "info", "version", "stats", "port",
    "top", "ls", "events", "history", "df",
})

_SYSTEMD_CHANGE = frozenset({
    "start", "stop", "restart", "reload", "enable", "disable", "try-restart",
    "reload-or-restart", "daemon-reload", "kill",
})

_SQL_READ = frozenset({"select", "show", "describe", "explain", "status"})
_SQL_CHANGE = frozenset({"insert", "update", "create", "alter", "grant", "revoke", "flush"})
_SQL_REMOVE = frozenset({"delete", "drop", "truncate"})


def _kubectl_scale_to_zero(c: ParsedCommand) -> bool:
    if c.sub() != "scale":
        return False
    for i, a in enumerate(c.args):
        if a == "--replicas=0":
            return True
        if a == "--replicas" and i + 1 < len(c.args) and c.args[i + 1] == "0":
            return True
    return False


def _curl_method(c: ParsedCommand) -> str:
    for i, a in enumerate(c.args):
        if a in ("-X", "--request") and i + 1 < len(c.args):
            return c.args[i + 1].upper()
        if a.startswith("-X") and len(a) > 2:
            return a[2:].upper()
    return "GET"


def _nginx_signal(c: ParsedCommand) -> str:
    for i, a in enumerate(c.args):
        if a == "-s" and i + 1 < len(c.args):
            return c.args[i + 1].lower()
    return ""


def _iptables_has(c: ParsedCommand, *flags: str) -> bool:
    return any(a in flags for a in c.args)


TOOL_RULES = [
    # kubectl
    _rule("kubectl namespace deletion", RiskTier.CRITICAL,
          lambda c: c.sub() == "delete" and c.sub(1) in {"namespace", "namespaces", "ns"},
          _KUBECTL, "Delete the individual resources inside the namespace instead"),
    _rule("kubectl delete", RiskTier.HIGH, lambda c: c.sub() == "delete", _KUBECTL,
          "Save the resource first: kubectl get <kind> <name> -o yaml > backup.yaml"),
    _rule("kubectl drain", RiskTier.HIGH, lambda c: c.sub() == "drain", _KUBECTL,
          "kubectl cordon <node> stops new scheduling without evicting pods"),
    _rule("kubectl scale to zero", RiskTier.HIGH, _kubectl_scale_to_zero, _KUBECTL,
          "Scale down to one replica instead of zero"),
    _rule("kubectl state change", RiskTier.MEDIUM, lambda c: c.sub() in _KUBECTL_CHANGE, _KUBECTL),
    _rule("kubectl read", RiskTier.LOW, lambda c: c.sub() in _KUBECTL_READ, _KUBECTL),

    # docker
    _rule("docker prune", RiskTier.HIGH,
          lambda c: "prune" in c.positional[:2], _DOCKER,
          "docker system df shows what a prune would reclaim"),
    _rule("docker removal", RiskTier.HIGH,
          lambda c: c.sub() in _DOCKER_REMOVE or c.sub() == "down"
          or (c.sub() in {"volume", "network", "image", "container"} and c.sub(1) in {"rm", "remove"}),
          _DOCKER, "docker stop keeps the container for inspection"),
    _rule("docker state change", RiskTier.MEDIUM, lambda c: c.sub() in _DOCKER_CHANGE, _DOCKER),
    _rule("docker read", RiskTier.LOW,
          lambda c: c.sub() in _DOCKER_READ or c.sub(1) in {"ls", "inspect"}, _DOCKER),

    # systemd: service state changes are reversible
    _rule("systemd mask", RiskTier.HIGH, lambda c: "mask" in c.positional, _SYSTEMD),
    _rule("systemd service change", RiskTier.MEDIUM,
          lambda c: bool(set(c.positional) & _SYSTEMD_CHANGE), _SYSTEMD),
    _rule("systemd read", RiskTier.LOW, lambda c: True, _SYSTEMD),
    _rule("journal read", RiskTier.LOW, lambda c: True, ("journalctl",)),

    # nginx
    _rule("nginx stop", RiskTier.HIGH, lambda c: _nginx_signal(c) in {"stop", "quit"}, ("nginx",),
          "nginx -s reload applies configuration without dropping the server"),
    _rule("nginx reload", RiskTier.MEDIUM, lambda c: _nginx_signal(c) in {"reload", "reopen"}, ("nginx",)),
    _rule("nginx config check", RiskTier.LOW,
          lambda c: c.has_flag("-t", "-T", "-v", "-V"), ("nginx",)),
    _rule("nginx start", RiskTier.MEDIUM,
          lambda c: not _nginx_signal(c) and not c.has_flag("-t", "-T", "-v", "-V"), ("nginx",)),

    # apache
    _rule("apache removal", RiskTier.CRITICAL,
          lambda c: bool(c.words & {"remove", "purge", "uninstall"}), _APACHE),
    _rule("apache stop", RiskTier.HIGH,
          lambda c: bool(c.words & {"stop", "graceful-stop"}), _APACHE,
          "apachectl graceful restarts workers without a full stop"),
    _rule("apache read", RiskTier.LOW,
          lambda c: bool(c.words & {"configtest", "status", "fullstatus"})
          or c.has_flag("-t", "-v", "-V", "-M", "-S"), _APACHE),
    _rule("apache restart", RiskTier.MEDIUM,
          lambda c: bool(c.words & {"graceful", "restart", "reload", "start"}), _APACHE),

    # firewall and interfaces
    _rule("firewall flush", RiskTier.CRITICAL,
          lambda c: _iptables_has(c, "-F", "--flush", "-X", "--delete-chain"),
          ("iptables", "ip6tables"), "iptables -S lists the rules; delete a single rule by spec"),
    _rule("firewall rule change", RiskTier.HIGH,
          lambda c: _iptables_has(c, "-A", "-I", "-D", "-R", "-P",
                                  "--append", "--insert", "--delete", "--replace", "--policy"),
          ("iptables", "ip6tables")),
    _rule("firewall read", RiskTier.LOW, lambda c: True, ("iptables", "ip6tables")),
    _rule("ufw disable", RiskTier.CRITICAL, lambda c: c.sub() in {"disable", "reset"}, ("ufw",)),
    _rule("ufw rule change", RiskTier.HIGH,
          lambda c: c.sub() in {"allow", "deny", "reject", "limit", "delete", "insert"}, ("ufw",)),
    _rule("ufw read", RiskTier.LOW, lambda c: True, ("ufw",)),
    _rule("interface change", RiskTier.HIGH,
          lambda c: c.sub() in {"link", "addr", "address", "route", "r", "a", "l"}
          and bool(set(c.positional[1:3]) & {"set", "add", "del", "delete", "replace", "flush", "change"}),
          ("ip",)),
    _rule("interface read", RiskTier.LOW, lambda c: True, ("ip",)),
    _rule("ifconfig change", RiskTier.HIGH, lambda c: len(c.positional) > 1, ("ifconfig",)),
    _rule("http delete", RiskTier.HIGH, lambda c: _curl_method(c) == "DELETE", ("curl",)),
    _rule("http write", RiskTier.MEDIUM,
          lambda c: _curl_method(c) in {"POST", "PUT", "PATCH"}, ("curl",)),
    _rule("http read", RiskTier.LOW, lambda c: True, ("curl", "wget")),

    # mysql
    _rule("sql database drop", RiskTier.CRITICAL,
          lambda c: "drop" in c.words and bool(c.words & {"database", "schema"}), _MYSQL,
          "mysqldump the database before dropping it"),
    _rule("sql removal", RiskTier.HIGH, lambda c: bool(c.words & _SQL_REMOVE), _MYSQL,
          "Run the matching SELECT first to see which rows are affected"),
    _rule("sql write", RiskTier.MEDIUM, lambda c: bool(c.words & _SQL_CHANGE), _MYSQL),
    _rule("sql read", RiskTier.LOW, lambda c: bool(c.words & _SQL_READ), _MYSQL),

    # files and processes
    _rule("file removal", RiskTier.HIGH, lambda c: True, ("rm", "rmdir", "shred", "unlink"),
          "Move the file aside (mv <file> <file>.bak) instead of deleting it"),
    _rule("recursive permission change", RiskTier.HIGH,
          lambda c: c.has_flag("-R", "--recursive"), ("chmod", "chown")),
    _rule("permission change", RiskTier.MEDIUM, lambda c: True, ("chmod", "chown")),
    _rule("process kill", RiskTier.HIGH, lambda c: True, ("kill", "killall", "pkill"),
          "Restart the owning service through systemctl instead of killing the process"),
]


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------

def classify(command_str: str, default_tier: RiskTier = RiskTier.LOW) -> Classification:
    """Classify a literal command string.

    Returns the winning Classification. `default_tier` (usually the tool's
    registry default) applies only when no rule matches at all.
    """
    cmd = parse_command(command_str)
    if not cmd.args:
        return Classification(RiskTier(default_tier), "empty command")

    matched: list[RiskRule] = []
    tool_matches = [r for r in TOOL_RULES if cmd.tool in r.tools and r.matches(cmd)]
    if tool_matches:
        matched.extend(tool_matches)
    else:
        matched.extend(r for r in GENERIC_RULES if r.matches(cmd))
    matched.extend(r for r in CRITICAL_RULES if r.matches(cmd))

    if not matched:
        return Classification(RiskTier(default_tier), "tool default")

    best = matched[0]
    for r in matched[1:]:
        if r.tier > best.tier:
            best = r
    alternative = best.alternative
    if alternative is None:
        alternative = next((r.alternative for r in matched if r.alternative and r.tier == best.tier), None)
    return Classification(best.tier, best.name, alternative)


# ---------------------------------------------------------------------------
# Confirmation policy
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ConfirmationPolicy:
    """Maps a tier to the confirmation the operator must give.

    `production` escalates Medium to High's mode and High to typed confirmation
    (when `typed_in_production` is set). `confirm_destructive=False` waives
    confirmation for Medium and High; Critical always needs typed confirmation.
    """
    modes: dict = field(default_factory=lambda: dict(DEFAULT_CONFIRMATION_MODES))
    production: bool = False
    typed_in_production: bool = True
    confirm_destructive: bool = True

    def mode_for(self, tier: RiskTier) -> str:
        tier = RiskTier(tier)
        if tier == RiskTier.CRITICAL:
            return MODE_TYPED
        if not self.confirm_destructive and tier in (RiskTier.MEDIUM, RiskTier.HIGH):
            return MODE_NONE

        mode = self.modes.get(tier, MODE_SIMPLE)
        if self.production and tier == RiskTier.MEDIUM:
            mode = _stricter(mode, self.modes.get(RiskTier.HIGH, MODE_SIMPLE))
        if self.production and tier == RiskTier.HIGH and self.typed_in_production:
            mode = MODE_TYPED
        return mode


def _stricter(a: str, b: str) -> str:
    return a if CONFIRMATION_MODES.index(a) >= CONFIRMATION_MODES.index(b) else b


def assess(command_str: str, policy: Optional[ConfirmationPolicy] = None,
           default_tier: RiskTier = RiskTier.LOW) -> RiskAssessment:
    """Classify the command and attach the confirmation it needs under `policy`."""
    policy = policy or ConfirmationPolicy()
    result = classify(command_str, default_tier)
    mode = policy.mode_for(result.tier)
    return RiskAssessment(
        tier=result.tier,
        rule=result.rule,
        requires_confirmation=mode != MODE_NONE,
        confirmation_mode=mode,
        safer_alternative=result.safer_alternative,
    )
