"""Runtime environment detection."""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Mapping, Optional

# Set by the managed fabric host for every hosted service process
FABRIC_ENV_VAR = "Fabric_ApplicationName"


@dataclass(frozen=True)
class RuntimeEnvironmentContext:
    is_in_fabric: bool

    @classmethod
    def resolve(
        cls,
        override: Optional[bool] = None,
        environ: Optional[Mapping[str, str]] = None,
    ) -> "RuntimeEnvironmentContext":
        """Resolve the fabric flag once; an explicit override wins over the probe."""
        if override is not None:
            return cls(is_in_fabric=override)
        env = os.environ if environ is None else environ
        return cls(is_in_fabric=bool((env.get(FABRIC_ENV_VAR) or "").strip()))
