"""In-memory group registry for testing and embedded usage."""

from typing import Any

from model_group_optimizer.models import Group, GroupSpec, LogEntry
from model_group_optimizer.registry.base import RegistryError


class MemoryGroupRegistry:
    """Ephemeral registry.  Records every write so tests can assert on them.

    Failures can be injected per method name via ``fail_on``; the value is a
    set of group ids to fail for, or ``None`` to fail every call.
    """

    def __init__(self, groups: list[Group] | None = None) -> None:
        # (instance_id, group_id) -> Group
        self._groups: dict[tuple[str, int], Group] = {}
        # (instance_id, group_id) -> stats payload
        self._stats: dict[tuple[str, int], dict[str, Any]] = {}
        # (instance_id, group_id) -> extra detail fields
        self._details: dict[tuple[str, int], dict[str, Any]] = {}
        # (instance_id, group_name) -> log rows
        self._logs: dict[tuple[str, str], list[LogEntry]] = {}
        self._keys: dict[tuple[str, int], list[str]] = {}
        self._next_id = 1
        self.calls: list[tuple[str, tuple[Any, ...]]] = []
        self.updates: list[tuple[int, str, dict[str, Any]]] = []
        self.key_status_changes: list[tuple[int, str, str]] = []
        self.validations: list[tuple[int, str]] = []
        self.fail_on: dict[str, set[int] | None] = {}
        for g in groups or []:
            self.add_group(g)

    # -- Seeding -----------------------------------------------------------

    def add_group(self, group: Group, stats: dict[str, Any] | None = None) -> Group:
        self._groups[group.key] = group
        self._next_id = max(self._next_id, group.id + 1)
        if stats is not None:
            self._stats[group.key] = stats
        return group

    def set_stats(self, group: Group, stats: dict[str, Any]) -> None:
        self._stats[group.key] = stats

    def set_detail(self, group: Group, detail: dict[str, Any]) -> None:
        self._details[group.key] = detail

    def set_logs(self, group_name: str, instance_id: str, logs: list[LogEntry]) -> None:
        self._logs[(instance_id, group_name)] = logs

    def get(self, group_id: int, instance_id: str) -> Group | None:
        return self._groups.get((instance_id, group_id))

    def keys_for(self, group_id: int, instance_id: str) -> list[str]:
        return list(self._keys.get((instance_id, group_id), []))

    # -- GroupRegistry -----------------------------------------------------

    async def list_groups(self) -> list[Group]:
        self._record("list_groups")
        self._maybe_fail("list_groups")
        return list(self._groups.values())

    async def get_group_stats(self, group_id: int, instance_id: str) -> dict[str, Any]:
        self._record("get_group_stats", group_id, instance_id)
        self._maybe_fail("get_group_stats", group_id)
        return dict(self._stats.get((instance_id, group_id), {}))

    async def get_group_detail(self, group_id: int, instance_id: str) -> dict[str, Any]:
        self._record("get_group_detail", group_id, instance_id)
        self._maybe_fail("get_group_detail", group_id)
        group = self._require(group_id, instance_id)
        detail = group.model_dump(mode="json")
        detail.update(self._details.get(group.key, {}))
        return detail

    async def create_group(self, instance_id: str, spec: GroupSpec) -> Group:
        self._record("create_group", instance_id, spec.name)
        self._maybe_fail("create_group")
        if any(g.name == spec.name and g.instance_id == instance_id for g in self._groups.values()):
            raise RegistryError(f"Group {spec.name} already exists", status_code=400)
        group = Group.model_validate({**spec.model_dump(), "id": self._next_id, "instance_id": instance_id})
        self._next_id += 1
        self._groups[group.key] = group
        return group

    async def update_group(self, group_id: int, instance_id: str, fields: dict[str, Any]) -> None:
        self._record("update_group", group_id, instance_id, fields)
        self._maybe_fail("update_group", group_id)
        group = self._require(group_id, instance_id)
        self.updates.append((group_id, instance_id, dict(fields)))
        self._groups[group.key] = Group.model_validate({**group.model_dump(), **fields})

    async def delete_group(self, group_id: int, instance_id: str) -> None:
        self._record("delete_group", group_id, instance_id)
        self._maybe_fail("delete_group", group_id)
        self._require(group_id, instance_id)
        del self._groups[(instance_id, group_id)]
        self._stats.pop((instance_id, group_id), None)

    async def add_api_keys(self, instance_id: str, group_id: int, keys: list[str]) -> None:
        self._record("add_api_keys", instance_id, group_id)
        self._maybe_fail("add_api_keys", group_id)
        self._keys.setdefault((instance_id, group_id), []).extend(keys)

    async def toggle_key_status(self, group_id: int, instance_id: str, status: str) -> None:
        self._record("toggle_key_status", group_id, instance_id, status)
        self._maybe_fail("toggle_key_status", group_id)
        if status not in ("active", "disabled"):
            raise ValueError(f"Invalid key status {status!r}")
        self.key_status_changes.append((group_id, instance_id, status))

    async def trigger_validation(self, group_id: int, instance_id: str) -> None:
        self._record("trigger_validation", group_id, instance_id)
        self._maybe_fail("trigger_validation", group_id)
        self.validations.append((group_id, instance_id))

    async def get_logs(self, group_name: str, instance_id: str, time_range_hours: float) -> list[LogEntry]:
        self._record("get_logs", group_name, instance_id, time_range_hours)
        self._maybe_fail("get_logs")
        return list(self._logs.get((instance_id, group_name), []))

    async def close(self) -> None:
        """No-op for in-memory registry."""

    # -- Internals ---------------------------------------------------------

    def _record(self, method: str, *args: Any) -> None:
        self.calls.append((method, args))

    def call_count(self, method: str) -> int:
        return sum(1 for name, _ in self.calls if name == method)

    def _maybe_fail(self, method: str, group_id: int | None = None) -> None:
        if method not in self.fail_on:
            return
        ids = self.fail_on[method]
        if ids is None or (group_id is not None and group_id in ids):
            raise RegistryError(f"injected failure in {method}", status_code=500)

    def _require(self, group_id: int, instance_id: str) -> Group:
        group = self._groups.get((instance_id, group_id))
        if group is None:
            raise RegistryError(f"Group {group_id} not found on {instance_id}", status_code=404)
        return group
