"""Security scanning of node parameters.

Flags hardcoded secrets and shell commands built from workflow data as
errors, and plain-HTTP, loopback and data-driven URLs as warnings. Values
that are expressions (``={{ ... }}``, ``$json`` references) are resolved at
runtime by the host and are never treated as literal secrets.
"""

import re
from collections.abc import Iterator
from typing import Any
from urllib.parse import urlparse

from flowsmith.core.findings import IssueType, ValidationIssue, error, warning

# Parameter keys whose literal value is a secret (matched on the lowercased key suffix)
CREDENTIAL_KEY_PATTERN = re.compile(
    r"(api[_-]?key|password|passwd|secret|token|authorization|access[_-]?key|private[_-]?key)$"
)

CREDENTIAL_VALUE_PATTERNS = {
    "openai_key": re.compile(r"\bsk-[A-Za-z0-9_-]{20,}"),
    "github_token": re.compile(r"\bgh[pousr]_[A-Za-z0-9]{36,}"),
    "aws_access_key": re.compile(r"\bAKIA[0-9A-Z]{16}\b"),
    "slack_token": re.compile(r"\bxox[abposr]-[A-Za-z0-9-]{10,}"),
    "bearer_token": re.compile(r"\bBearer\s+[A-Za-z0-9._~+/-]{20,}"),
}

URL_KEYS = {"url", "baseurl", "endpoint", "uri"}
COMMAND_KEYS = {"command", "cmd"}
COMMAND_NODE_MARKERS = ("executecommand", "ssh")

LOOPBACK_HOSTS = {"localhost", "0.0.0.0", "::1", "[::1]"}

_INTERPOLATION = re.compile(r"\{\{|\$json|\$node|\$env|\$\(|\$\{|`")


def is_expression(value: str) -> bool:
    """Host expressions start with ``=`` or embed ``{{ }}``/``$json`` references."""
    return value.startswith("=") or bool(_INTERPOLATION.search(value))


def _walk(value: Any, path: str = "") -> Iterator[tuple[str, str, Any]]:
    """Yield (dotted path, owning key, value) for every leaf value."""
    if isinstance(value, dict):
        for key, child in value.items():
            child_path = f"{path}.{key}" if path else str(key)
            if isinstance(child, (dict, list)):
                yield from _walk(child, child_path)
            else:
                yield child_path, str(key), child
    elif isinstance(value, list):
        for i, child in enumerate(value):
            child_path = f"{path}[{i}]"
            if isinstance(child, (dict, list)):
                yield from _walk(child, child_path)
            else:
                yield child_path, path.rsplit(".", 1)[-1], child


def _is_loopback(host: str) -> bool:
    return host in LOOPBACK_HOSTS or host.startswith("127.")


def _check_credential(node_id: str, path: str, key: str, value: str) -> ValidationIssue | None:
    if not value or is_expression(value):
        return None

    matched = None
    if CREDENTIAL_KEY_PATTERN.search(key.lower()):
        matched = "credential_key"
    else:
        for name, pattern in CREDENTIAL_VALUE_PATTERNS.items():
            if pattern.search(value):
                matched = name
                break
    if matched is None:
        return None

    return error(
        IssueType.SECURITY_RISK,
        "HARDCODED_CREDENTIAL",
        f"Parameter '{path}' on node '{node_id}' contains a hardcoded credential",
        node_id=node_id,
        parameter=path,
        location={"pattern": matched},
        suggestion="Store the secret in the credential store and reference it from the node",
    )


def _check_url(node_id: str, path: str, key: str, value: str) -> ValidationIssue | None:
    if key.lower() in URL_KEYS and is_expression(value):
        return warning(
            IssueType.SECURITY_WARNING,
            "SSRF_RISK",
            f"URL parameter '{path}' on node '{node_id}' is built from workflow data",
            node_id=node_id,
            parameter=path,
            location={"pattern": "interpolated_url"},
            suggestion="Validate or allowlist the target host before the request",
        )

    lowered = value.lower()
    if not lowered.startswith(("http://", "https://")):
        return None

    try:
        host = (urlparse(value).hostname or "").lower()
    except ValueError:
        host = ""

    if _is_loopback(host):
        return warning(
            IssueType.SECURITY_WARNING,
            "LOCALHOST_URL",
            f"Parameter '{path}' on node '{node_id}' points at a loopback address",
            node_id=node_id,
            parameter=path,
            location={"pattern": host},
            suggestion="Loopback URLs resolve to the execution host, not your machine",
        )

    if lowered.startswith("http://"):
        return warning(
            IssueType.SECURITY_WARNING,
            "INSECURE_HTTP",
            f"Parameter '{path}' on node '{node_id}' uses unencrypted HTTP",
            node_id=node_id,
            parameter=path,
            location={"pattern": "http://"},
            suggestion="Use HTTPS",
        )
    return None


def _check_command(
    node_id: str, node_type: str, path: str, key: str, value: str
) -> ValidationIssue | None:
    command_node = any(marker in node_type.lower() for marker in COMMAND_NODE_MARKERS)
    if key.lower() not in COMMAND_KEYS and not command_node:
        return None
    if not _INTERPOLATION.search(value):
        return None
    return error(
        IssueType.SECURITY_RISK,
        "COMMAND_INJECTION",
        f"Shell command '{path}' on node '{node_id}' interpolates workflow data",
        node_id=node_id,
        parameter=path,
        location={"pattern": _INTERPOLATION.search(value).group(0)},
        suggestion="Pass data as arguments or environment variables instead of interpolating it",
    )


def scan_parameters(node_id: str, node_type: str, parameters: dict[str, Any]) -> list[ValidationIssue]:
    """Return every security finding for one node's parameters."""
    issues: list[ValidationIssue] = []
    for path, key, value in _walk(parameters):
        if not isinstance(value, str):
            continue
        for issue in (
            _check_credential(node_id, path, key, value),
            _check_command(node_id, node_type, path, key, value),
            _check_url(node_id, path, key, value),
        ):
            if issue is not None:
                issues.append(issue)
    return issues


def scan_credentials(node_id: str, credentials: dict[str, str] | None) -> list[ValidationIssue]:
    """Credential references must be ids or names, never raw secrets."""
    issues = []
    for key, value in (credentials or {}).items():
        for name, pattern in CREDENTIAL_VALUE_PATTERNS.items():
            if isinstance(value, str) and pattern.search(value):
                issues.append(
                    error(
                        IssueType.SECURITY_RISK,
                        "HARDCODED_CREDENTIAL",
                        f"Credential reference '{key}' on node '{node_id}' contains a raw secret",
                        node_id=node_id,
                        parameter=f"credentials.{key}",
                        location={"pattern": name},
                    )
                )
                break
    return issues
