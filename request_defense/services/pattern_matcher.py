"""
WAF pattern matcher.

Scans the inspectable surfaces of a request (URL, each query parameter,
user agent, capped body) against a table of compiled regex rules. Every
match is reported, not only the first. Patterns are compiled once at load
and every search runs under an execution timeout.
"""

from collections import Counter
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple
from urllib.parse import parse_qsl, urlsplit

import regex
from loguru import logger

from request_defense.models.security import (
    RequestDescriptor, RuleAction, Severity, Violation, WAFRule
)
from request_defense.utils.exceptions import ConfigurationError, MatchTimeout

Surface = Tuple[str, str]

DEFAULT_RULES: List[Dict[str, Any]] = [
    # SQL injection
    {
        "id": "sql_injection_1",
        "name": "SQL Injection - Basic",
        "pattern": r"\b(union|select|insert|update|delete|drop|create|alter|exec|execute)\b.{0,100}?\b(from|into|where|set|values|table)\b",
        "severity": "critical",
        "action": "block",
        "category": "sql_injection",
        "description": "Basic SQL injection pattern detected",
    },
    {
        "id": "sql_injection_2",
        "name": "SQL Injection - Comments",
        "pattern": r"('\s*(--|#)|/\*|\*/|;\s*--)",
        "severity": "high",
        "action": "block",
        "category": "sql_injection",
        "description": "SQL comment injection pattern detected",
    },
    {
        "id": "sql_injection_3",
        "name": "SQL Injection - Quotes",
        "pattern": r"['\"`]\s*\b(or|and)\b\s+['\"`]?\w*['\"`]?\s*=\s*['\"`]?\w*",
        "severity": "high",
        "action": "block",
        "category": "sql_injection",
        "description": "SQL quote injection pattern detected",
    },
    # XSS
    {
        "id": "xss_1",
        "name": "XSS - Script Tags",
        "pattern": r"<script[^>]*>.*?</script>",
        "severity": "critical",
        "action": "block",
        "category": "xss",
        "description": "Script tag injection detected",
    },
    {
        "id": "xss_2",
        "name": "XSS - Event Handlers",
        "pattern": r"\bon(error|load|click|mouseover|mouseout|focus|blur|submit|change|key(up|down|press))\s*=",
        "severity": "high",
        "action": "block",
        "category": "xss",
        "description": "Event handler injection detected",
    },
    {
        "id": "xss_3",
        "name": "XSS - JavaScript Protocol",
        "pattern": r"javascript\s*:",
        "severity": "high",
        "action": "block",
        "category": "xss",
        "description": "JavaScript protocol injection detected",
    },
    {
        "id": "xss_4",
        "name": "XSS - Data URI",
        "pattern": r"data\s*:\s*text/html",
        "severity": "medium",
        "action": "log",
        "category": "xss",
        "description": "Data URI with HTML content detected",
    },
    # Command injection
    {
        "id": "command_injection_1",
        "name": "Command Injection - Chained Command",
        "pattern": r"[;&|`]\s*(ls|cat|pwd|whoami|id|uname|ps|netstat|ifconfig|ping|nslookup|wget|curl|rm|nc|bash|sh)(\s|$)",
        "severity": "critical",
        "action": "block",
        "category": "command_injection",
        "description": "System command injection detected",
    },
    {
        "id": "command_injection_2",
        "name": "Command Injection - Substitution",
        "pattern": r"\$\([^)]{1,200}\)|`[^`]{1,200}`",
        "severity": "high",
        "action": "block",
        "category": "command_injection",
        "description": "Shell command substitution detected",
    },
    # Path traversal
    {
        "id": "path_traversal_1",
        "name": "Path Traversal - Basic",
        "pattern": r"\.\./|\.\.\\",
        "severity": "high",
        "action": "block",
        "category": "path_traversal",
        "description": "Path traversal pattern detected",
    },
    {
        "id": "path_traversal_2",
        "name": "Path Traversal - Encoded",
        "pattern": r"%2e%2e(%2f|%5c|/)",
        "severity": "high",
        "action": "block",
        "category": "path_traversal",
        "description": "Encoded path traversal pattern detected",
    },
    # File upload
    {
        "id": "file_upload_1",
        "name": "File Upload - Executable",
        "pattern": r"\.(exe|bat|cmd|pif|scr|vbs|jar|php|asp|aspx|jsp)$",
        "severity": "high",
        "action": "block",
        "category": "file_upload",
        "description": "Executable file reference detected",
    },
    {
        "id": "file_upload_2",
        "name": "File Upload - Script",
        "pattern": r"\.(cgi|pl|py|rb|sh)$",
        "severity": "medium",
        "action": "log",
        "category": "file_upload",
        "description": "Script file reference detected",
    },
    # LDAP injection
    {
        "id": "ldap_injection_1",
        "name": "LDAP Injection - Filter",
        "pattern": r"\(\s*[|&!]\s*\(|\*\)\s*\(",
        "severity": "medium",
        "action": "log",
        "category": "ldap_injection",
        "description": "LDAP filter injection detected",
    },
    # NoSQL injection
    {
        "id": "nosql_injection_1",
        "name": "NoSQL Injection - MongoDB",
        "pattern": r"\$(where|ne|gt|lt|regex|exists)\b",
        "severity": "high",
        "action": "block",
        "category": "nosql_injection",
        "description": "MongoDB operator injection detected",
    },
    # SSRF
    {
        "id": "ssrf_1",
        "name": "SSRF - Internal Address",
        "pattern": r"\b(127\.0\.0\.1|localhost|0\.0\.0\.0|10\.\d{1,3}\.\d{1,3}\.\d{1,3}|172\.(1[6-9]|2\d|3[01])\.\d{1,3}\.\d{1,3}|192\.168\.\d{1,3}\.\d{1,3}|169\.254\.169\.254)\b",
        "severity": "high",
        "action": "log",
        "category": "ssrf",
        "description": "Internal address access attempt detected",
    },
    # Sensitive data exposure
    {
        "id": "sensitive_data_1",
        "name": "Sensitive Data - Credit Card",
        "pattern": r"\b\d{4}[-\s]?\d{4}[-\s]?\d{4}[-\s]?\d{4}\b",
        "severity": "medium",
        "action": "log",
        "category": "sensitive_data",
        "description": "Credit card number pattern detected",
    },
    {
        "id": "sensitive_data_2",
        "name": "Sensitive Data - SSN",
        "pattern": r"\b\d{3}-\d{2}-\d{4}\b",
        "severity": "medium",
        "action": "log",
        "category": "sensitive_data",
        "description": "SSN pattern detected",
    },
]


def rule_from_dict(data: Dict[str, Any]) -> WAFRule:
    """Build a rule from plain configuration data."""
    try:
        return WAFRule(
            id=data["id"],
            name=data["name"],
            pattern=data["pattern"],
            severity=Severity(data["severity"]),
            action=RuleAction(data.get("action", "block")),
            description=data.get("description", ""),
            category=data.get("category", "generic"),
            enabled=data.get("enabled", True),
        )
    except (KeyError, ValueError) as e:
        raise ConfigurationError(
            f"Invalid WAF rule definition: {e}",
            details={"rule": data.get("id")},
        ) from e


def build_surfaces(descriptor: RequestDescriptor, max_body_bytes: int = 10_000) -> List[Surface]:
    """Extract (location, text) pairs to inspect.

    The URL surface is the raw path and query without scheme or host. Each
    query parameter is added decoded as ``key=value``. The body is cut to
    ``max_body_bytes`` before decoding.
    """
    surfaces: List[Surface] = []

    parts = urlsplit(descriptor.url)
    raw_url = parts.path or descriptor.path
    if parts.query:
        raw_url = f"{raw_url}?{parts.query}"
    surfaces.append(("URL", raw_url))

    params = descriptor.query_params or parse_qsl(parts.query, keep_blank_values=True)
    for key, value in params:
        surfaces.append((f"Query Parameter: {key}", f"{key}={value}"))

    if descriptor.user_agent:
        surfaces.append(("User-Agent", descriptor.user_agent))

    if descriptor.body:
        body = descriptor.body[:max_body_bytes].decode("utf-8", errors="replace")
        if body:
            surfaces.append(("Request Body", body))

    return surfaces


class PatternMatcher:
    """Compiled WAF rule table."""

    def __init__(
        self,
        rules: Optional[Iterable[WAFRule]] = None,
        match_timeout_ms: int = 50,
        max_surface_length: int = 10_000,
    ):
        if rules is None:
            rules = [rule_from_dict(data) for data in DEFAULT_RULES]
        self.match_timeout_ms = match_timeout_ms
        self.max_surface_length = max_surface_length
        self._rules: Dict[str, WAFRule] = {}
        self._compiled: Dict[str, Any] = {}
        self._timed_out_rules: Set[str] = set()
        self.rule_hits: Counter = Counter()
        self.timeouts = 0
        self.evaluations = 0

        for rule in rules:
            self._add_rule(rule)

        logger.info(f"WAF pattern matcher loaded {len(self._rules)} rules")

    def _add_rule(self, rule: WAFRule) -> None:
        if rule.id in self._rules:
            raise ConfigurationError(
                f"Duplicate WAF rule id: {rule.id}", details={"rule": rule.id}
            )
        try:
            compiled = regex.compile(rule.pattern, regex.IGNORECASE)
        except regex.error as e:
            raise ConfigurationError(
                f"WAF rule {rule.id} has an invalid pattern: {e}",
                details={"rule": rule.id, "pattern": rule.pattern},
            ) from e
        self._rules[rule.id] = rule
        self._compiled[rule.id] = compiled

    @property
    def rules(self) -> List[WAFRule]:
        return list(self._rules.values())

    def get_rule(self, rule_id: str) -> Optional[WAFRule]:
        return self._rules.get(rule_id)

    def enable_rule(self, rule_id: str) -> bool:
        return self._set_enabled(rule_id, True)

    def disable_rule(self, rule_id: str) -> bool:
        return self._set_enabled(rule_id, False)

    def _set_enabled(self, rule_id: str, enabled: bool) -> bool:
        rule = self._rules.get(rule_id)
        if rule is None:
            return False
        rule.enabled = enabled
        logger.info(f"WAF rule {rule_id} {'enabled' if enabled else 'disabled'}")
        return True

    def evaluate(self, surfaces: List[Surface]) -> List[Violation]:
        """Test every enabled rule against every surface. Never raises."""
        self.evaluations += 1
        violations: List[Violation] = []

        for rule_id, rule in self._rules.items():
            if not rule.enabled:
                continue
            compiled = self._compiled[rule_id]

            for location, text in surfaces:
                if not text:
                    continue
                try:
                    match = self._search(rule, compiled, text)
                except MatchTimeout as e:
                    self._record_timeout(e)
                    continue

                if match is not None:
                    self.rule_hits[rule_id] += 1
                    violations.append(Violation(
                        rule_id=rule.id,
                        rule_name=rule.name,
                        category=rule.category,
                        severity=rule.severity,
                        action=rule.action,
                        match=match.group(0)[:200],
                        location=location,
                    ))

        return violations

    def _search(self, rule: WAFRule, compiled, text: str):
        try:
            return compiled.search(
                text[:self.max_surface_length],
                timeout=self.match_timeout_ms / 1000.0,
            )
        except TimeoutError as e:
            raise MatchTimeout(rule.id, self.match_timeout_ms) from e

    def _record_timeout(self, error: MatchTimeout) -> None:
        self.timeouts += 1
        if error.rule_id not in self._timed_out_rules:
            self._timed_out_rules.add(error.rule_id)
            logger.warning(f"{error.message}; treating as no match")

    def get_statistics(self) -> Dict[str, Any]:
        """Rule table statistics."""
        enabled = [rule for rule in self._rules.values() if rule.enabled]
        return {
            "total_rules": len(self._rules),
            "enabled_rules": len(enabled),
            "evaluations": self.evaluations,
            "timeouts": self.timeouts,
            "timed_out_rules": sorted(self._timed_out_rules),
            "rule_hits": dict(self.rule_hits),
            "rules_by_severity": dict(Counter(rule.severity.value for rule in enabled)),
        }
