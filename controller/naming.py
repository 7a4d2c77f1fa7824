"""Deterministic naming for application sandboxes.

A sandbox name is a pure function of (app_id, ordinal), so the instances of
an application can always be rediscovered from the container runtime alone.
"""

import re
from typing import Optional, Tuple


class InstanceNaming:
    """Naming convention: {prefix}-app-{app_id}-instance-{ordinal}."""

    def __init__(self, prefix: str = "slipway"):
        self._prefix = prefix
        self._pattern = re.compile(rf"^{re.escape(prefix)}-app-(\d+)-instance-(\d+)$")

    @property
    def prefix(self) -> str:
        return self._prefix

    def instance_id(self, app_id: int, ordinal: int) -> str:
        """Short instance id used to tag log lines."""
        return f"app-{app_id}-instance-{ordinal}"

    def container_name(self, app_id: int, ordinal: int) -> str:
        return f"{self._prefix}-{self.instance_id(app_id, ordinal)}"

    def app_prefix(self, app_id: int) -> str:
        """Name prefix shared by every instance of one application.

        The trailing "-instance-" keeps app 4 from matching app 42.
        """
        return f"{self._prefix}-app-{app_id}-instance-"

    def parse(self, container_name: str) -> Optional[Tuple[int, int]]:
        """Return (app_id, ordinal) for a managed name, None otherwise."""
        match = self._pattern.match(container_name.lstrip("/"))
        if not match:
            return None
        return int(match.group(1)), int(match.group(2))
