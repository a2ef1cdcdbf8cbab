#!/usr/bin/env python3
"""
Error types for the PXE boot E2E harness.

Every failure the harness can surface maps to one class here so the CLI can
pick a distinct exit code per outcome.
"""

from dataclasses import dataclass
from typing import Any, List, Optional, Sequence


class HarnessError(Exception):
    """Base class for all harness errors."""
    exit_code = 1


class ValidationError(HarnessError, ValueError):
    """Environment spec, config or boot settings are malformed or incomplete."""
    exit_code = 2


class CommandError(HarnessError):
    """A driver command exited with a non-zero status."""

    def __init__(self, cmd: Sequence[str], returncode: int, stdout: str = '', stderr: str = ''):
        self.cmd = list(cmd)
        self.returncode = returncode
        self.stdout = stdout or ''
        self.stderr = stderr or ''
        detail = self.stderr.strip() or self.stdout.strip()
        message = f"Command '{' '.join(self.cmd)}' exited with {returncode}"
        if detail:
            message += f": {detail}"
        super().__init__(message)


class ResourceNotFoundError(HarnessError):
    """The requested resource does not exist."""


class ProvisioningError(HarnessError):
    """A provisioning step failed; prior steps were rolled back."""
    exit_code = 3

    def __init__(self, step: str, cause: BaseException, rollback_error: Optional['TeardownError'] = None):
        self.step = step
        self.cause = cause
        self.rollback_error = rollback_error
        super().__init__(f"{step} failed: {cause}")


@dataclass
class TeardownFailure:
    """One resource that could not be released."""
    resource: str
    handle: str
    cause: BaseException

    def __str__(self) -> str:
        return f"{self.resource} '{self.handle}': {self.cause}"


class TeardownError(HarnessError):
    """Aggregate of every deletion that failed during teardown."""
    exit_code = 4

    def __init__(self, failures: List[TeardownFailure]):
        self.failures = list(failures)
        super().__init__(self.describe())

    @property
    def causes(self) -> List[BaseException]:
        return [failure.cause for failure in self.failures]

    def is_attributable_to(self, cause: Any) -> bool:
        """Check whether any enumerated failure was caused by ``cause``.

        ``cause`` may be an exception instance (matched by identity) or an
        exception class (matched with isinstance). Nested aggregates are
        searched too.
        """
        for item in self.causes:
            if item is cause:
                return True
            if isinstance(cause, type) and isinstance(item, cause):
                return True
            if isinstance(item, TeardownError) and item.is_attributable_to(cause):
                return True
        return False

    def describe(self) -> str:
        lines = [f"teardown failed for {len(self.failures)} resource(s):"]
        lines.extend(f"  - {failure}" for failure in self.failures)
        return '\n'.join(lines)


class TunnelError(HarnessError):
    """Tunnel could not be opened or never became ready."""
    exit_code = 6


class BootValidationError(HarnessError):
    """One or more configured boot phases were not satisfied."""
    exit_code = 5

    def __init__(self, attempt: Any):
        self.attempt = attempt
        failed = [result.phase.value for result in attempt.phases if not result.satisfied]
        super().__init__(
            f"boot validation failed for {attempt.target}: unsatisfied phases: {', '.join(failed)}"
        )


class StoreError(HarnessError):
    """Environment persistence failed."""


class EnvironmentNotFoundError(StoreError):
    """No stored record for the requested environment id."""


class CorruptedRecordError(StoreError):
    """A stored environment record could not be decoded."""
