"""Protocols for the external collaborators the optimizer reads and writes.

The optimizer never talks to a registry instance directly: every call goes
through a ``GroupRegistry``, which normalises response envelopes once so that
the rest of the package only ever sees plain payloads.
"""

from typing import Any, Protocol

from model_group_optimizer.models import Group, GroupSpec, InstanceConfig, LogEntry


class RegistryError(Exception):
    """A registry call failed (HTTP error, error envelope, or transport)."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code

    @property
    def is_conflict(self) -> bool:
        """True when the registry reports that the operation is already running."""
        return self.status_code == 409


class InitializationError(RuntimeError):
    """The control loop could not build its initial model mapping."""


class GroupRegistry(Protocol):
    """Abstract group registry.

    Implementations must be async.  Group documents are returned as ``Group``
    models tagged with the ``instance_id`` they live on; statistics and detail
    documents are returned as plain dicts with the envelope already removed.
    """

    async def list_groups(self) -> list[Group]:
        """List groups across every reachable instance."""
        ...

    async def get_group_stats(self, group_id: int, instance_id: str) -> dict[str, Any]:
        """Return ``key_stats`` / ``hourly_stats`` / ``daily_stats`` / ``weekly_stats``."""
        ...

    async def get_group_detail(self, group_id: int, instance_id: str) -> dict[str, Any]:
        """Return the raw group detail document."""
        ...

    async def create_group(self, instance_id: str, spec: GroupSpec) -> Group: ...

    async def update_group(self, group_id: int, instance_id: str, fields: dict[str, Any]) -> None: ...

    async def delete_group(self, group_id: int, instance_id: str) -> None: ...

    async def add_api_keys(self, instance_id: str, group_id: int, keys: list[str]) -> None: ...

    async def toggle_key_status(self, group_id: int, instance_id: str, status: str) -> None:
        """Set every key of a group to ``active`` or ``disabled``."""
        ...

    async def trigger_validation(self, group_id: int, instance_id: str) -> None:
        """Start key validation.  An already-running validation is not an error."""
        ...

    async def get_logs(self, group_name: str, instance_id: str, time_range_hours: float) -> list[LogEntry]: ...

    async def close(self) -> None:
        """Release any resources held by the registry client."""
        ...


class InstanceDirectory(Protocol):
    """Resolves registry instances by id or by the site they should serve."""

    def get_instance(self, instance_id: str) -> InstanceConfig | None: ...

    def list_instances(self) -> list[InstanceConfig]: ...

    async def select_best_instance(self, target_url: str = "") -> InstanceConfig | None: ...


class ModelPolicy(Protocol):
    """Opaque allow/deny gate for model names."""

    def is_model_allowed(self, name: str) -> bool: ...

    def filter_models(self, names: list[str]) -> list[str]: ...


class AllowAllModelPolicy:
    """Default policy: every model is allowed."""

    def is_model_allowed(self, name: str) -> bool:
        return bool(name)

    def filter_models(self, names: list[str]) -> list[str]:
        return [n for n in names if self.is_model_allowed(n)]
