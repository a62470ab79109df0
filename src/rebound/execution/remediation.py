"""Per-category remediation hooks.

A remediator runs after the engine has decided a job is still eligible for a
retry. It may repair the job payload in place (for example, attach the
previous output for a repair pass) and returns False to veto the retry.

Remediators may be invoked once per failed attempt of the same job, so they
must tolerate repeated calls on the same payload. They may be synchronous or
return an awaitable; the engine bounds awaitables with a timeout and treats
exceptions and timeouts as a veto.
"""

from __future__ import annotations

import re
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from rebound.core.constants import LOG_HOOK_PREVIEW_CHARS
from rebound.core.logging import get_logger

if TYPE_CHECKING:
    from rebound.core.errors.models import FailureInfo, JobFailureContext

_logger = get_logger("remediation")

RemediationResult = bool | Awaitable[bool]


@runtime_checkable
class Remediator(Protocol):
    """Uniform contract for category-specific retry hooks."""

    def attempt(self, error: FailureInfo, context: JobFailureContext) -> RemediationResult:
        """Inspect/repair the job and return whether to proceed with the retry."""
        ...


class CallableRemediator:
    """Adapts a plain function (sync or async) to the Remediator contract."""

    def __init__(
        self,
        func: Callable[[FailureInfo, JobFailureContext], RemediationResult],
        name: str | None = None,
    ) -> None:
        self._func = func
        self.name = name or getattr(func, "__name__", "remediator")

    def attempt(self, error: FailureInfo, context: JobFailureContext) -> RemediationResult:
        return self._func(error, context)

    def __repr__(self) -> str:
        return f"CallableRemediator({self.name})"


_FIXABLE_STRUCTURE_PATTERNS: list[str] = [
    r"missing import",
    r"undefined variable",
    r"missing prop",
    r"invalid jsx",
]


class StructuralRepairRemediator:
    """Allows a retry of a structural validation failure when it looks fixable.

    Looks for the previous output in ``payload["generated_code"]`` or
    ``payload["result"]["code"]``. When present and the error matches a
    fixable pattern, ``payload["retry_context"]`` is (re)written so the next
    attempt runs as a repair pass over the previous output.
    """

    name = "structural_repair"

    def __init__(self, fixable_patterns: list[str] | None = None) -> None:
        patterns = fixable_patterns or _FIXABLE_STRUCTURE_PATTERNS
        self._fixable = [re.compile(p, re.IGNORECASE) for p in patterns]

    @staticmethod
    def _previous_output(payload: dict[str, Any]) -> Any:
        output = payload.get("generated_code")
        if output:
            return output
        result = payload.get("result")
        if isinstance(result, dict):
            return result.get("code")
        return None

    def attempt(self, error: FailureInfo, context: JobFailureContext) -> bool:
        previous_output = self._previous_output(context.payload)
        if not previous_output:
            _logger.warning("structural_repair.no_previous_output")
            return False

        preview = error.message[:LOG_HOOK_PREVIEW_CHARS]
        if not any(p.search(error.message) for p in self._fixable):
            _logger.warning("structural_repair.not_fixable", error_preview=preview)
            return False

        context.payload["retry_context"] = {
            "validation_error": error.message,
            "previous_output": previous_output,
            "fix_attempt": True,
        }
        _logger.info("structural_repair.scheduled", error_preview=preview)
        return True

    def __repr__(self) -> str:
        return "StructuralRepairRemediator()"


# Remediators addressable by name from configuration files
REMEDIATORS: dict[str, Callable[[], Remediator]] = {
    StructuralRepairRemediator.name: StructuralRepairRemediator,
}


def get_remediator(name: str) -> Remediator:
    """Instantiate a named remediator.

    Raises:
        ValueError: If no remediator is registered under ``name``.
    """
    try:
        factory = REMEDIATORS[name]
    except KeyError:
        known = ", ".join(sorted(REMEDIATORS))
        raise ValueError(f"unknown remediator '{name}' (known: {known})") from None
    return factory()


__all__ = [
    "CallableRemediator",
    "REMEDIATORS",
    "Remediator",
    "RemediationResult",
    "StructuralRepairRemediator",
    "get_remediator",
]
