"""httpx-based client for gpt-load style group registry instances.

Each registry instance exposes its admin API under ``<url>/api``.  Responses
arrive either raw or wrapped in a ``{code, message, data}`` envelope; both are
normalised here by :func:`unwrap_envelope`.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any

import httpx
from pydantic import ValidationError

from model_group_optimizer.models import Group, GroupSpec, InstanceConfig, LogEntry
from model_group_optimizer.registry.base import InstanceDirectory, RegistryError

logger = logging.getLogger(__name__)

# Methods retried on transport errors
IDEMPOTENT_METHODS = frozenset({"GET", "PUT", "DELETE"})


# ------------------------------------------------------------------
# Envelope handling
# ------------------------------------------------------------------


def unwrap_envelope(payload: Any) -> Any:
    """Strip a ``{code, message, data}`` envelope, raising on ``code != 0``."""
    if isinstance(payload, dict) and isinstance(payload.get("code"), int) and not isinstance(payload["code"], bool):
        if payload["code"] != 0:
            raise RegistryError(str(payload.get("message") or f"registry error code {payload['code']}"))
        return payload.get("data")
    return payload


def extract_group_list(payload: Any) -> list[dict[str, Any]] | None:
    """Pull a group list out of the shapes ``GET /groups`` is known to return."""
    if isinstance(payload, list):
        return payload
    if isinstance(payload, dict):
        for field in ("data", "groups"):
            if isinstance(payload.get(field), list):
                return payload[field]
    return None


# ------------------------------------------------------------------
# Instance directory
# ------------------------------------------------------------------


class StaticInstanceDirectory:
    """Instances from configuration, ordered by ascending ``priority``.

    Remembers which instance was chosen for a site URL so later groups for
    the same site land on the same instance.
    """

    def __init__(self, instances: list[InstanceConfig]) -> None:
        self._instances = sorted(instances, key=lambda i: i.priority)
        self._by_id = {i.id: i for i in self._instances}
        self._site_assignments: dict[str, str] = {}

    def get_instance(self, instance_id: str) -> InstanceConfig | None:
        return self._by_id.get(instance_id)

    def list_instances(self) -> list[InstanceConfig]:
        return list(self._instances)

    async def select_best_instance(self, target_url: str = "") -> InstanceConfig | None:
        if target_url:
            assigned = self._site_assignments.get(target_url)
            if assigned and assigned in self._by_id:
                return self._by_id[assigned]
        if not self._instances:
            logger.error("No registry instances configured")
            return None
        instance = self._instances[0]
        if target_url:
            self._site_assignments[target_url] = instance.id
        return instance


# ------------------------------------------------------------------
# Registry client
# ------------------------------------------------------------------


class HttpGroupRegistry:
    """Async registry client speaking to one or more gpt-load instances."""

    def __init__(
        self,
        directory: InstanceDirectory,
        *,
        timeout: float = 20.0,
        max_retries: int = 2,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.directory = directory
        self.timeout = timeout
        self.max_retries = max_retries
        self._transport = transport
        self._clients: dict[str, httpx.AsyncClient] = {}

    async def close(self) -> None:
        for client in self._clients.values():
            await client.aclose()
        self._clients.clear()

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        await self.close()

    # -- Groups ------------------------------------------------------------

    async def list_groups(self) -> list[Group]:
        instances = self.directory.list_instances()
        groups: list[Group] = []
        failures = 0
        for instance in instances:
            try:
                payload = await self._request(instance.id, "GET", "/groups")
            except RegistryError as exc:
                failures += 1
                logger.error("Failed to list groups on instance %s: %s", instance.id, exc)
                continue
            raw_groups = extract_group_list(payload)
            if raw_groups is None:
                logger.warning("Instance %s returned an unknown group list format", instance.id)
                continue
            for raw in raw_groups:
                try:
                    groups.append(Group.model_validate({**raw, "instance_id": instance.id}))
                except (TypeError, ValidationError) as exc:
                    logger.warning("Skipping malformed group on instance %s: %s", instance.id, exc)
        if instances and failures == len(instances):
            raise RegistryError("No registry instance could list groups")
        return groups

    async def get_group_stats(self, group_id: int, instance_id: str) -> dict[str, Any]:
        return await self._request(instance_id, "GET", f"/groups/{group_id}/stats") or {}

    async def get_group_detail(self, group_id: int, instance_id: str) -> dict[str, Any]:
        return await self._request(instance_id, "GET", f"/groups/{group_id}") or {}

    async def create_group(self, instance_id: str, spec: GroupSpec) -> Group:
        payload = await self._request(instance_id, "POST", "/groups", json=spec.model_dump(exclude_none=True))
        if not isinstance(payload, dict):
            raise RegistryError(f"Unexpected create response for group {spec.name}")
        return Group.model_validate({**payload, "instance_id": instance_id})

    async def update_group(self, group_id: int, instance_id: str, fields: dict[str, Any]) -> None:
        await self._request(instance_id, "PUT", f"/groups/{group_id}", json=fields)

    async def delete_group(self, group_id: int, instance_id: str) -> None:
        await self._request(instance_id, "DELETE", f"/groups/{group_id}")

    # -- Keys --------------------------------------------------------------

    async def add_api_keys(self, instance_id: str, group_id: int, keys: list[str]) -> None:
        keys = [k.strip() for k in keys if k and k.strip()]
        if not keys:
            return
        await self._request(
            instance_id,
            "POST",
            "/keys/add-multiple",
            json={"group_id": group_id, "keys_text": "\n".join(keys)},
        )

    async def toggle_key_status(self, group_id: int, instance_id: str, status: str) -> None:
        if status == "active":
            await self._request(instance_id, "POST", "/keys/restore-all-invalid", json={"group_id": group_id})
        elif status == "disabled":
            await self.trigger_validation(group_id, instance_id)
        else:
            raise ValueError(f'Invalid key status {status!r}, expected "active" or "disabled"')

    async def trigger_validation(self, group_id: int, instance_id: str) -> None:
        try:
            await self._request(instance_id, "POST", "/keys/validate-group", json={"group_id": group_id})
        except RegistryError as exc:
            if not exc.is_conflict:
                raise
            logger.info("Validation for group %s already running", group_id)

    # -- Logs --------------------------------------------------------------

    async def get_logs(self, group_name: str, instance_id: str, time_range_hours: float) -> list[LogEntry]:
        end = datetime.now(timezone.utc)
        start = end - timedelta(hours=time_range_hours)
        params = {
            "group_name": group_name,
            "start_time": start.isoformat(),
            "end_time": end.isoformat(),
            "page": 1,
            "page_size": 1000,
        }
        payload = await self._request(instance_id, "GET", "/logs", params=params)
        items = payload.get("items") if isinstance(payload, dict) else payload
        if not isinstance(items, list):
            return []
        return [LogEntry.model_validate(item) for item in items]

    # -- Internals ---------------------------------------------------------

    def _client(self, instance_id: str) -> httpx.AsyncClient:
        client = self._clients.get(instance_id)
        if client is not None:
            return client
        instance = self.directory.get_instance(instance_id)
        if instance is None:
            raise RegistryError(f"Registry instance {instance_id} not found")
        headers = {"User-Agent": "model-group-optimizer"}
        if instance.token:
            headers["Authorization"] = f"Bearer {instance.token}"
        client = httpx.AsyncClient(
            base_url=f"{instance.url.rstrip('/')}/api",
            headers=headers,
            timeout=httpx.Timeout(self.timeout),
            transport=self._transport,
        )
        self._clients[instance_id] = client
        return client

    async def _request(self, instance_id: str, method: str, path: str, **kwargs: Any) -> Any:
        resp = await self._send_with_retry(instance_id, method, path, **kwargs)
        if resp.status_code >= 400:
            raise RegistryError(_error_message(resp), status_code=resp.status_code)
        if not resp.content:
            return None
        try:
            payload = resp.json()
        except ValueError as exc:
            raise RegistryError(f"Invalid JSON from {method} {path}: {exc}", status_code=resp.status_code) from exc
        return unwrap_envelope(payload)

    async def _send_with_retry(self, instance_id: str, method: str, path: str, **kwargs: Any) -> httpx.Response:
        client = self._client(instance_id)
        retries = self.max_retries if method in IDEMPOTENT_METHODS else 0
        last_exc: Exception | None = None
        for attempt in range(1 + retries):
            try:
                return await client.request(method, path, **kwargs)
            except httpx.TransportError as exc:
                last_exc = exc
                if attempt < retries:
                    logger.warning(
                        "Registry transport error on %s %s (attempt %d/%d): %s",
                        method,
                        path,
                        attempt + 1,
                        retries + 1,
                        exc,
                    )
        raise RegistryError(f"{method} {path} on instance {instance_id} failed: {last_exc}") from last_exc


def _error_message(resp: httpx.Response) -> str:
    try:
        body = resp.json()
    except ValueError:
        return f"HTTP {resp.status_code}: {resp.text[:200]}"
    if isinstance(body, dict):
        return str(body.get("message") or body.get("error") or f"HTTP {resp.status_code}")
    return f"HTTP {resp.status_code}"
