"""Structured error types for VDC lifecycle operations.

Every failure the manager can report is a ``VdcError`` carrying an
``ErrorCategory`` so the CLI can pick an exit code and operators get a
consistent one-line diagnosis with suggested follow-ups.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ErrorCategory(str, Enum):
    """Categories of errors for structured error handling."""
    VALIDATION = "validation"  # Bad arguments, missing file, invalid name
    CONFLICT = "conflict"  # Duplicate name, subnet collision
    RESOURCE_BUSY = "resource_busy"  # Namespace still has live children
    NOT_FOUND = "not_found"  # Unknown VDC
    PROVISIONING = "provisioning"  # Backend failure
    EXHAUSTED = "exhausted"  # No subnets/IPs left
    PARTIAL_FAILURE = "partial_failure"  # Batch op with per-item failures
    LOCK_TIMEOUT = "lock_timeout"  # Registry lock not acquired in time


class VdcError(Exception):
    """Base class for all manager errors."""

    category: ErrorCategory = ErrorCategory.VALIDATION

    def __init__(self, message: str, suggestions: list[str] | None = None):
        super().__init__(message)
        self.message = message
        self.suggestions = suggestions or []
        # Step summary of the command that failed, when there is one
        self.report: Any = None

    def to_error_message(self) -> str:
        """Concise one-line message for diagnostics."""
        parts = [f"[{self.category.value}] {self.message}"]
        if self.suggestions:
            parts.append(f"Try: {'; '.join(self.suggestions)}")
        return " | ".join(parts)


class ValidationError(VdcError):
    """Bad arguments or missing input files."""
    category = ErrorCategory.VALIDATION


class InvalidName(ValidationError):
    """A derived resource name violates backend charset/length rules."""

    def __init__(self, name: str, reason: str):
        self.name = name
        self.reason = reason
        super().__init__(f"Invalid name '{name}': {reason}")


class ConflictError(VdcError):
    """Duplicate name or overlapping subnet."""
    category = ErrorCategory.CONFLICT


class AlreadyExists(ConflictError):
    """A registry record with this name already exists."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"VDC '{name}' already exists")


class NamespaceExists(ConflictError):
    """A network namespace with this id exists and belongs to someone else."""

    def __init__(self, namespace_id: str, owner: str | None = None):
        self.namespace_id = namespace_id
        self.owner = owner
        detail = f"owned by '{owner}'" if owner else "not created by vdc-manager"
        super().__init__(
            f"Namespace '{namespace_id}' already exists ({detail})",
            suggestions=[f"ip netns del {namespace_id}"] if not owner else [],
        )


class ResourceBusyError(VdcError):
    """A shared resource still has live children."""
    category = ErrorCategory.RESOURCE_BUSY


class NamespaceBusy(ResourceBusyError):
    """The namespace still holds interfaces or processes."""

    def __init__(self, namespace_id: str, holders: list[str]):
        self.namespace_id = namespace_id
        self.holders = holders
        super().__init__(
            f"Namespace '{namespace_id}' is still in use by: {', '.join(holders)}",
            suggestions=["tear down VMs and networks first", "re-run destroy"],
        )


class NotFoundError(VdcError):
    """Unknown VDC."""
    category = ErrorCategory.NOT_FOUND

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"VDC '{name}' does not exist", suggestions=["vdc-manager list"])


class ProvisioningError(VdcError):
    """Wraps a provisioning backend failure."""
    category = ErrorCategory.PROVISIONING

    def __init__(self, resource: str, cause: Exception | str):
        self.resource = resource
        self.cause = cause
        super().__init__(
            f"Provisioning failed for '{resource}': {cause}",
            suggestions=["vdc-manager status", "vdc-manager cleanup-orphans"],
        )


class AllocationExhausted(VdcError):
    """No subnets or addresses left to hand out."""
    category = ErrorCategory.EXHAUSTED


class SubnetExhausted(AllocationExhausted):
    """The management /24 cannot hold every device of the topology."""

    def __init__(self, subnet: str, device_count: int):
        self.subnet = subnet
        self.device_count = device_count
        super().__init__(
            f"Subnet {subnet} cannot hold {device_count} devices "
            f"(.1-.10 reserved, .11-.254 available)"
        )


@dataclass
class ItemFailure:
    """One failed item of a batch operation."""
    item: str
    error: str

    def to_dict(self) -> dict[str, Any]:
        return {"item": self.item, "error": self.error}


class PartialFailure(VdcError):
    """Batch operation in which some items failed."""
    category = ErrorCategory.PARTIAL_FAILURE

    def __init__(self, operation: str, failures: list[ItemFailure], succeeded: int = 0):
        self.operation = operation
        self.failures = failures
        self.succeeded = succeeded
        summary = "; ".join(f"{f.item}: {f.error}" for f in failures)
        super().__init__(
            f"{operation}: {len(failures)} failed, {succeeded} succeeded ({summary})",
            suggestions=["re-run the command once the cause is fixed"],
        )


class LockAcquisitionTimeout(VdcError):
    """Raised when the registry lock cannot be acquired within timeout."""
    category = ErrorCategory.LOCK_TIMEOUT

    def __init__(self, path: str, timeout: float):
        self.path = path
        self.timeout = timeout
        super().__init__(
            f"Could not acquire registry lock {path} within {timeout}s",
            suggestions=["another vdc-manager command is running; retry later"],
        )


@dataclass
class StepResult:
    """Outcome of one step of a multi-step command."""
    step: str
    success: bool
    detail: str = ""


@dataclass
class OperationReport:
    """Step-by-step summary every command ends with."""
    operation: str
    vdc_name: str
    steps: list[StepResult] = field(default_factory=list)

    def ok(self, step: str, detail: str = "") -> StepResult:
        result = StepResult(step=step, success=True, detail=detail)
        self.steps.append(result)
        return result

    def fail(self, step: str, detail: str) -> StepResult:
        result = StepResult(step=step, success=False, detail=detail)
        self.steps.append(result)
        return result

    @property
    def success(self) -> bool:
        return all(step.success for step in self.steps)

    @property
    def failures(self) -> list[StepResult]:
        return [step for step in self.steps if not step.success]
