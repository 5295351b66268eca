"""
OperationResult: what every public flasher operation hands back.

Expected failures are folded into the result (exit code, error kind,
payload) so the CLI and library callers report them the same way.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .errors import FlasherError
from .messages import ERROR_EXIT_CODES, ErrorKind, ExitCode


@dataclass
class OperationResult:
    """
    Outcome of one update, deploy or cache operation.

    Attributes:
        ok: False once any blocking error was recorded
        operation: Name of the operation (e.g., "update_runtime")
        exit_code: Stable result code for the CLI layer
        error_kind: Failure category when ok is False
        target: Target name involved in the operation
        version: Firmware version involved in the operation
        warnings: Issues that did not stop the operation (downgrades, fallbacks)
        errors: One-line causes of the failure
        metadata: Operation specific data (addresses, versions, error_payload)
        logs: Log records captured while the operation ran
    """
    ok: bool
    operation: str
    exit_code: ExitCode = ExitCode.OK
    error_kind: Optional[ErrorKind] = None
    target: str = ""
    version: str = ""
    warnings: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)
    logs: List[str] = field(default_factory=list)

    def add_warning(self, message: str) -> None:
        """Record a non-blocking issue."""
        self.warnings.append(message)

    def add_error(self, message: str, kind: Optional[ErrorKind] = None) -> None:
        """Record a failure; the first kind recorded decides the exit code."""
        self.errors.append(message)
        self.ok = False
        if kind is not None:
            self.error_kind = kind
            if self.exit_code == ExitCode.OK:
                self.exit_code = ERROR_EXIT_CODES[kind]

    def to_summary(self) -> str:
        """
        Generate a human-readable summary string.

        The first line after the status carries the one-line cause; kind
        specific payload follows.
        """
        status = "SUCCESS" if self.ok else "FAILED"
        lines = [f"[{status}] {self.operation}"]

        if self.target:
            lines.append(f"  Target: {self.target}")
        if self.version:
            lines.append(f"  Version: {self.version}")
        if not self.ok and self.exit_code != ExitCode.OK:
            lines.append(f"  Exit code: {self.exit_code.name} {self.exit_code.description}")

        if self.warnings:
            lines.append("  Warning(s):")
            for warn in self.warnings:
                lines.append(f"    - {warn}")

        if self.errors:
            lines.append("  Error(s):")
            for err in self.errors:
                lines.append(f"    - {err}")

        payload = self.metadata.get("error_payload")
        if payload:
            for name, value in payload.items():
                if isinstance(value, (list, tuple)):
                    value = ", ".join(str(v) for v in value)
                lines.append(f"  {name}: {value}")

        return "\n".join(lines)

    def to_dict(self) -> Dict[str, Any]:
        """JSON-friendly view; live device handles are left out."""
        return {
            "ok": self.ok,
            "operation": self.operation,
            "exit_code": self.exit_code.value,
            "error_kind": self.error_kind.value if self.error_kind else None,
            "target": self.target,
            "version": self.version,
            "warnings": self.warnings,
            "errors": self.errors,
            "metadata": {k: v for k, v in self.metadata.items() if k != "device"},
            "logs": self.logs,
        }

    @classmethod
    def success(
        cls,
        operation: str,
        target: str = "",
        version: str = "",
        **kwargs,
    ) -> "OperationResult":
        """Result of an operation that completed."""
        return cls(
            ok=True,
            operation=operation,
            target=target,
            version=version,
            **kwargs,
        )

    @classmethod
    def failure(
        cls,
        operation: str,
        error: str,
        exit_code: ExitCode = ExitCode.E2002,
        error_kind: Optional[ErrorKind] = None,
        **kwargs,
    ) -> "OperationResult":
        """Failed result carrying a single error line."""
        result = cls(
            ok=False,
            operation=operation,
            exit_code=exit_code,
            error_kind=error_kind,
            **kwargs,
        )
        result.errors.append(error)
        return result

    @classmethod
    def from_error(cls, operation: str, error: FlasherError, **kwargs) -> "OperationResult":
        """Create a failed result from an expected-failure exception."""
        result = cls.failure(
            operation=operation,
            error=error.message,
            exit_code=error.exit_code,
            error_kind=error.kind,
            **kwargs,
        )
        if error.payload:
            result.metadata["error_payload"] = dict(error.payload)
        return result
