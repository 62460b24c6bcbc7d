"""Pattern matcher: fast path for known error signatures.

Patterns are tried in library order, most specific first. The first pattern
whose regex matches the observation wins; there is no scoring. A conclusive
match is a complete diagnosis. An inconclusive one only enriches the context
handed to the reasoning engine.
"""

import re
from dataclasses import dataclass
from typing import Iterable, Optional

from agent_models import (
    CATEGORY_AUTHENTICATION,
    CATEGORY_CONFIGURATION,
    CATEGORY_DEPENDENCY,
    CATEGORY_NETWORK,
    CATEGORY_PERMISSION,
    CATEGORY_PORT_CONFLICT,
    CATEGORY_RESOURCE_EXHAUSTION,
    CATEGORY_SERVICE_DOWN,
    Observation,
    RemediationOption,
    RiskTier,
    Solution,
)


@dataclass(frozen=True)
class ErrorPattern:
    name: str
    signature: re.Pattern
    category: str
    explanation: str
    suggestions: tuple[RemediationOption, ...] = ()
    conclusive: bool = False
    confidence: int = 80


@dataclass(frozen=True)
class PatternMatch:
    pattern: ErrorPattern
    matched_text: str
    fields: dict

    @property
    def category(self) -> str:
        return self.pattern.category

    def explanation(self) -> str:
        return _fill(self.pattern.explanation, self.fields)

    def suggestions(self) -> tuple[RemediationOption, ...]:
        return tuple(
            RemediationOption(
                description=_fill(s.description, self.fields),
                command=_fill(s.command, self.fields) if s.command else None,
                tier=s.tier,
            )
            for s in self.pattern.suggestions
        )

    def reflection(self) -> str:
        text = f"Known error signature '{self.pattern.name}' ({self.category}): {self.explanation()}"
        steps = [s.command or s.description for s in self.suggestions()]
        if steps:
            text += " Suggested next steps: " + "; ".join(steps)
        return text

    def to_solution(self) -> Solution:
        return Solution(
            root_cause=self.explanation(),
            options=self.suggestions(),
            confidence=self.pattern.confidence,
            category=self.category,
            evidence=(self.matched_text,),
        )


class _KeepMissing(dict):
    def __missing__(self, key):
        return f"<{key}>"


def _fill(template: str, fields: dict) -> str:
    return template.format_map(_KeepMissing({k: v for k, v in fields.items() if v is not None}))


def _merge_groups(m: re.Match) -> dict:
    """Fold alternate groups (port2, image2) into their base name."""
    fields = {}
    for key, value in m.groupdict().items():
        base = key.rstrip("0123456789")
        if value is not None and fields.get(base) is None:
            fields[base] = value
    return fields


class PatternMatcher:
    """Ordered, read-only error-signature library."""

    def __init__(self, patterns: Iterable[ErrorPattern]):
        self._patterns = tuple(patterns)

    @property
    def patterns(self) -> tuple[ErrorPattern, ...]:
        return self._patterns

    def match_text(self, text: str) -> Optional[PatternMatch]:
        if not text:
            return None
        for pattern in self._patterns:
            m = pattern.signature.search(text)
            if m:
                return PatternMatch(pattern=pattern, matched_text=m.group(0), fields=_merge_groups(m))
        return None

    def match(self, observation: Optional[Observation]) -> Optional[PatternMatch]:
        """Match stderr first, then stdout, against the library."""
        if observation is None:
            return None
        return self.match_text(observation.combined_text())


# ---------------------------------------------------------------------------
# Default library (order matters: specific before generic)
# ---------------------------------------------------------------------------

def _opt(description, command=None, tier=RiskTier.LOW) -> RemediationOption:
    return RemediationOption(description, command, tier)


DEFAULT_PATTERNS = (
    ErrorPattern(
        name="port already in use",
        signature=re.compile(
            r"bind\(\) to \S*?:(?P<port>\d+) failed \(98: Address already in use\)"
            r"|(?:port|address) (?:\S*?:)?(?P<port2>\d+)?\s*(?:is )?already in use"
            r"|Address already in use",
            re.IGNORECASE,
        ),
        category=CATEGORY_PORT_CONFLICT,
        explanation="Another process is already listening on the port this service needs.",
        suggestions=(
            _opt("Find the process holding the port", "lsof -i :{port} -P -n"),
            _opt("List listening sockets", "ss -ltnp"),
        ),
        conclusive=False,
        confidence=90,
    ),
    ErrorPattern(
        name="docker daemon unreachable",
        signature=re.compile(r"Cannot connect to the Docker daemon"),
        category=CATEGORY_SERVICE_DOWN,
        explanation="The Docker daemon is not running or its socket is not reachable.",
        suggestions=(
            _opt("Start the Docker daemon", "systemctl start docker", RiskTier.MEDIUM),
            _opt("Check the daemon status", "systemctl status docker"),
            _opt("Confirm the client can reach the daemon", "docker info"),
        ),
        conclusive=True,
        confidence=95,
    ),
    ErrorPattern(
        name="docker image not found",
        signature=re.compile(
            r"Unable to find image '(?P<image>[^']+)'|No such image:?\s*(?P<image2>\S+)?"),
        category=CATEGORY_DEPENDENCY,
        explanation="The requested Docker image is not available locally.",
        suggestions=(
            _opt("Pull the image", "docker pull {image}"),
            _opt("List local images", "docker images"),
        ),
        conclusive=True,
        confidence=90,
    ),
    ErrorPattern(
        name="kubectl context not set",
        signature=re.compile(r"current-context is not set"),
        category=CATEGORY_CONFIGURATION,
        explanation="kubectl has no current context, so it does not know which cluster to talk to.",
        suggestions=(
            _opt("List the available contexts", "kubectl config get-contexts"),
            _opt("Select a context", "kubectl config use-context {context}"),
        ),
        conclusive=True,
        confidence=95,
    ),
    ErrorPattern(
        name="kubernetes rbac forbidden",
        signature=re.compile(
            r"is forbidden: User \"(?P<user>[^\"]+)\" cannot (?P<verb>\S+) resource \"(?P<resource>[^\"]+)\""
            r"|\(Forbidden\)"),
        category=CATEGORY_PERMISSION,
        explanation="The Kubernetes identity lacks RBAC permission for this operation.",
        suggestions=(
            _opt("Check what the identity may do", "kubectl auth can-i {verb} {resource}"),
            _opt("Ask a cluster administrator for the missing role binding"),
        ),
        conclusive=True,
        confidence=90,
    ),
    ErrorPattern(
        name="pod crash loop",
        signature=re.compile(r"(?P<pod>\S+)\s+\d+/\d+\s+CrashLoopBackOff|CrashLoopBackOff"),
        category=CATEGORY_SERVICE_DOWN,
        explanation="A pod keeps crashing shortly after start; its previous logs hold the cause.",
        suggestions=(
            _opt("Read the previous container's logs", "kubectl logs {pod} --previous"),
            _opt("Inspect pod events", "kubectl describe pod {pod}"),
        ),
        conclusive=False,
        confidence=85,
    ),
    ErrorPattern(
        name="image pull failure",
        signature=re.compile(r"(?P<pod>\S+)\s+\d+/\d+\s+(?:ImagePullBackOff|ErrImagePull)"
                             r"|ImagePullBackOff|ErrImagePull"),
        category=CATEGORY_DEPENDENCY,
        explanation="The cluster cannot pull the container image for a pod.",
        suggestions=(
            _opt("See the pull error in pod events", "kubectl describe pod {pod}"),
        ),
        conclusive=False,
        confidence=85,
    ),
    ErrorPattern(
        name="container out of memory",
        signature=re.compile(r"OOMKilled"),
        category=CATEGORY_RESOURCE_EXHAUSTION,
        explanation="A container was killed for exceeding its memory limit.",
        suggestions=(
            _opt("Raise the memory limit in the workload spec", tier=RiskTier.MEDIUM),
            _opt("Check current memory usage", "kubectl top pods"),
        ),
        conclusive=True,
        confidence=90,
    ),
    ErrorPattern(
        name="mysql access denied",
        signature=re.compile(r"ERROR 1045|Access denied for user '(?P<user>[^']*)'"),
        category=CATEGORY_AUTHENTICATION,
        explanation="MySQL rejected the supplied credentials.",
        suggestions=(
            _opt("Verify the username and password in the application config"),
            _opt("Check the account's allowed hosts",
                 "mysql -e \"SELECT user, host FROM mysql.user\""),
        ),
        conclusive=True,
        confidence=90,
    ),
    ErrorPattern(
        name="sql file passed as statement",
        signature=re.compile(r"ERROR\s+1064.*?(?P<filename>[\w./-]+\.(?:mysql|sql))\b", re.IGNORECASE),
        category=CATEGORY_CONFIGURATION,
        explanation="A SQL file name was passed where a SQL statement was expected.",
        suggestions=(
            _opt("Feed the file through stdin", "mysql <database> < {filename}", RiskTier.MEDIUM),
        ),
        conclusive=True,
        confidence=85,
    ),
    ErrorPattern(
        name="sql syntax error",
        signature=re.compile(r"ERROR\s+1064", re.IGNORECASE),
        category=CATEGORY_CONFIGURATION,
        explanation="MySQL could not parse the SQL statement.",
        suggestions=(
            _opt("Check the statement syntax near the reported position"),
            _opt("Quote reserved words used as identifiers with backticks"),
        ),
        conclusive=True,
        confidence=80,
    ),
    ErrorPattern(
        name="mysql server unreachable",
        signature=re.compile(r"ERROR 200[23]|Can't connect to (?:local )?MySQL server"),
        category=CATEGORY_SERVICE_DOWN,
        explanation="The MySQL server is not running or not reachable at the configured address.",
        suggestions=(
            _opt("Check the MySQL service", "systemctl status mysql"),
            _opt("Check the listening port", "ss -ltnp"),
        ),
        conclusive=False,
        confidence=80,
    ),
    ErrorPattern(
        name="no space left",
        signature=re.compile(r"No space left on device"),
        category=CATEGORY_RESOURCE_EXHAUSTION,
        explanation="A filesystem is full.",
        suggestions=(
            _opt("Show filesystem usage", "df -h"),
            _opt("Find the largest directories", "du -xh --max-depth=1 /var"),
        ),
        conclusive=True,
        confidence=90,
    ),
    ErrorPattern(
        name="connection refused",
        signature=re.compile(r"Connection refused|ECONNREFUSED"),
        category=CATEGORY_NETWORK,
        explanation="Nothing is accepting connections at the target address.",
        suggestions=(
            _opt("Check whether the service is listening", "ss -ltnp"),
        ),
        conclusive=False,
        confidence=70,
    ),
    ErrorPattern(
        name="permission denied",
        signature=re.compile(r"Permission denied|EACCES|Operation not permitted"),
        category=CATEGORY_PERMISSION,
        explanation="The process lacks permission for a file, socket or operation.",
        suggestions=(
            _opt("Check ownership and mode of the target", "ls -l {path}"),
        ),
        conclusive=False,
        confidence=60,
    ),
)


def default_matcher() -> PatternMatcher:
    return PatternMatcher(DEFAULT_PATTERNS)
