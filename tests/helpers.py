"""Shared test helpers for building engine inputs."""

from __future__ import annotations

from typing import Any

from rebound.core.errors import FailureInfo, JobFailureContext


def make_context(
    message: str,
    attempts_made: int = 0,
    *,
    job_id: str = "job-1",
    queue_name: str = "codegen",
    code: int | str | None = None,
    payload: dict[str, Any] | None = None,
    run_id: str | None = None,
) -> JobFailureContext:
    """Build a JobFailureContext for a failed job."""
    return JobFailureContext(
        job_id=job_id,
        queue_name=queue_name,
        attempts_made=attempts_made,
        error=FailureInfo(message=message, code=code),
        payload=payload if payload is not None else {},
        run_id=run_id,
    )
