"""Runtime configuration for the orchestrator."""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from typing import Any

from pydantic import BaseModel, Field, ValidationError, field_validator

from branchflow.schemas import IntegrateMode

logger = logging.getLogger(__name__)

ENV_PREFIX = "BRANCHFLOW_"


class FlowConfig(BaseModel):
    """Knobs for one orchestrator instance.

    Every field can be set from the environment as ``BRANCHFLOW_<FIELD>``
    (e.g. ``BRANCHFLOW_REMOTE=upstream``).
    """

    remote: str = "origin"
    # Used only when the remote's default-branch pointer cannot be resolved.
    base_branch: str = ""
    track_remote: bool = True
    run_setup: bool = True
    run_tests: bool = True
    integrate_mode: IntegrateMode = IntegrateMode.PR

    # Timeouts in seconds.
    git_timeout: float = 60.0
    network_timeout: float = 120.0
    setup_timeout: float = 900.0
    test_timeout: float = 1800.0
    # Extra attempts for read-only invocations; mutating ones never retry.
    read_only_retries: int = Field(default=1, ge=0, le=3)

    # Staleness policy for feature branches.
    stale_behind_commits: int = Field(default=20, ge=1)
    stale_after_hours: float = Field(default=24.0, gt=0)

    @field_validator("remote", "base_branch")
    @classmethod
    def _strip(cls, value: str) -> str:
        return str(value or "").strip()

    @classmethod
    def from_env(
        cls,
        environ: Mapping[str, str] | None = None,
        **overrides: Any,
    ) -> FlowConfig:
        """Build a config from ``BRANCHFLOW_*`` variables plus explicit overrides.

        Overrides whose value is ``None`` are ignored so CLI flags left unset
        do not mask the environment.
        """
        env = os.environ if environ is None else environ
        values: dict[str, Any] = {}
        for name in cls.model_fields:
            raw = env.get(f"{ENV_PREFIX}{name.upper()}")
            if raw is not None and raw.strip() != "":
                values[name] = raw.strip()
        values.update({k: v for k, v in overrides.items() if v is not None})
        try:
            return cls.model_validate(values)
        except ValidationError:
            logger.error("Invalid branchflow configuration: %s", values)
            raise


__all__ = ["ENV_PREFIX", "FlowConfig"]
