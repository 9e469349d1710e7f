"""Validation findings and result models shared by the checkers."""

from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class Severity(str, Enum):
    """Errors block a commit; warnings never do."""

    ERROR = "error"
    WARNING = "warning"


class IssueType(str, Enum):
    """Finding categories reported by the validation pipeline."""

    SCHEMA_VALIDATION = "schema_validation"
    POLICY_VIOLATION = "policy_violation"
    INVALID_NODE_TYPE = "invalid_node_type"
    INVALID_CONNECTION = "invalid_connection"
    INVALID_OPERATION = "invalid_operation"
    DUPLICATE_NODE = "duplicate_node"
    SECURITY_RISK = "security_risk"
    EMPTY_PARAMETER = "empty_parameter"
    MISSING_PARAMETER = "missing_parameter"
    INVALID_PARAMETER = "invalid_parameter"
    HIGH_COMPLEXITY = "high_complexity"
    SECURITY_WARNING = "security_warning"
    INTROSPECTION_UNAVAILABLE = "introspection_unavailable"


class ValidationIssue(BaseModel):
    """A single finding with its machine-readable code and location."""

    type: IssueType
    severity: Severity
    code: str
    message: str
    node_id: str | None = None
    parameter: str | None = None
    location: dict[str, Any] = Field(default_factory=dict)  # op index, pattern, policy details
    suggestion: str | None = None

    @property
    def is_error(self) -> bool:
        return self.severity == Severity.ERROR


class ValidationStats(BaseModel):
    total_checks: int = 0
    passed: int = 0
    failed: int = 0
    warnings: int = 0
    duration_ms: float = 0.0


class ValidationResult(BaseModel):
    """Outcome of a validation run. ``valid`` is true when no error was found."""

    valid: bool
    errors: list[ValidationIssue] = Field(default_factory=list)
    warnings: list[ValidationIssue] = Field(default_factory=list)
    stats: ValidationStats = Field(default_factory=ValidationStats)

    @property
    def issues(self) -> list[ValidationIssue]:
        return [*self.errors, *self.warnings]

    def codes(self) -> list[str]:
        return [issue.code for issue in self.issues]


def error(issue_type: IssueType, code: str, message: str, **kwargs: Any) -> ValidationIssue:
    return ValidationIssue(type=issue_type, severity=Severity.ERROR, code=code, message=message, **kwargs)


def warning(issue_type: IssueType, code: str, message: str, **kwargs: Any) -> ValidationIssue:
    return ValidationIssue(
        type=issue_type, severity=Severity.WARNING, code=code, message=message, **kwargs
    )
