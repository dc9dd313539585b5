"""Model to group mapping and the three-layer group hierarchy.

Layer 1 site groups talk to an external provider, layer 2 model-channel
groups scope one model to one site, and layer 3 aggregate groups fan out to
every model-channel group of a model.  The model mapping is rebuilt as a new
dict and swapped in whole; readers never see a partially built mapping.
"""

import logging
import re
from collections.abc import Iterable, Mapping
from types import MappingProxyType
from typing import Any, Protocol

from model_group_optimizer.models import (
    Group,
    GroupSpec,
    LayersConfig,
    Layer,
    TopologyBuildResult,
    Upstream,
)
from model_group_optimizer.registry.base import (
    AllowAllModelPolicy,
    GroupRegistry,
    InstanceDirectory,
    ModelPolicy,
)

logger = logging.getLogger(__name__)

GroupKey = tuple[str, int]
ModelGroupMapping = Mapping[str, tuple[Group, ...]]

_PROXY_PATH = re.compile(r"/proxy/([^/?#]+)")
_VIA_NAME = re.compile(r"^(.+)-via-(.+)$")

_MODEL_PATTERNS = [
    re.compile(r"(?:^|[^a-z])" + p, re.IGNORECASE)
    for p in (
        r"(gpt-4o?(?:-\w+)*)",
        r"(gpt-3\.?5(?:-\w+)*)",
        r"(chatgpt[\w-]*)",
        r"(claude-(?:opus|sonnet|haiku)(?:-[\w-]*)?)",
        r"(claude-3(?:\.5)?(?:-\w+)*)",
        r"(deepseek(?:-[\w-]*)?)",
        r"(qwen(?:\d+)?(?:\.?\d+)?(?:-\w+)*)",
        r"(gemini-\d+(?:\.\d+)?(?:-\w+)*)",
        r"(llama-[\w-]+)",
        r"(mixtral-[\w-]+)",
        r"(mistral-[\w-]+)",
    )
]

_MODEL_PROVIDERS = (
    ("chatgpt", "openai"),
    ("gpt", "openai"),
    ("claude", "anthropic"),
    ("gemini", "google"),
    ("deepseek", "deepseek"),
    ("qwen", "alibaba"),
    ("llama", "meta"),
    ("mixtral", "mistral"),
    ("mistral", "mistral"),
)

_SITE_PROVIDERS = (
    (("openai", "gpt"), "openai"),
    (("claude", "anthropic"), "anthropic"),
    (("google", "gemini"), "google"),
    (("deepseek",), "deepseek"),
    (("qwen", "alibaba"), "alibaba"),
    (("meta", "llama"), "meta"),
    (("mistral",), "mistral"),
)


# ------------------------------------------------------------------
# Naming helpers
# ------------------------------------------------------------------


def sanitize_model_name(model: str) -> str:
    return re.sub(r"-+", "-", re.sub(r"[^a-z0-9-]", "-", model.lower()))


def model_channel_name(model: str, site: str) -> str:
    return f"{sanitize_model_name(model)}-via-{site}".lower()


def proxy_path_name(url: str) -> str | None:
    """Group name embedded in a ``.../proxy/<name>`` upstream URL."""
    match = _PROXY_PATH.search(url)
    return match.group(1) if match else None


def channel_of(group: Group) -> str:
    """Channel (site) a group routes to.

    Resolution order: proxy path of the first upstream, then the
    ``<model>-via-<site>`` name suffix, then the group's own name for site
    groups, then ``"unknown"``.
    """
    if group.upstreams:
        name = proxy_path_name(group.upstreams[0].url)
        if name:
            return name
    match = _VIA_NAME.match(group.name)
    if match:
        return match.group(2)
    if group.layer == Layer.SITE:
        return group.name
    return "unknown"


def model_of(group: Group) -> str | None:
    match = _VIA_NAME.match(group.name)
    if match:
        return match.group(1)
    return group.test_model


def match_model_patterns(text: str) -> list[str]:
    """Every model name the provider pattern library finds in ``text``."""
    found: list[str] = []
    for pattern in _MODEL_PATTERNS:
        for match in pattern.finditer(text):
            name = match.group(1).lower()
            if name not in found:
                found.append(name)
    return found


def model_provider(model: str) -> str | None:
    lowered = model.lower()
    for prefix, provider in _MODEL_PROVIDERS:
        if prefix in lowered:
            return provider
    return None


def site_provider(site_name: str) -> str | None:
    lowered = site_name.lower()
    for needles, provider in _SITE_PROVIDERS:
        if any(n in lowered for n in needles):
            return provider
    return None


def channel_accepts_model(channel_type: str | None, model: str) -> bool:
    lowered = model.lower()
    if channel_type == "anthropic":
        return "claude" in lowered
    if channel_type == "gemini":
        return "gemini" in lowered
    return "claude" not in lowered and "gemini" not in lowered


def site_supports_model(site: Group, model: str) -> bool:
    lowered = model.lower()
    if site.validated_models is not None:
        return lowered in {m.lower() for m in site.validated_models}
    if lowered in site.name.lower():
        return True
    if site.test_model and site.test_model.lower() == lowered:
        return True
    # an unrecognised model matches a site whose provider is unrecognised too
    return model_provider(model) == site_provider(site.name) and channel_accepts_model(site.channel_type, model)


# ------------------------------------------------------------------
# Model extraction strategies
# ------------------------------------------------------------------


class ModelMatcher(Protocol):
    def match(self, group: Group) -> list[str]: ...


class NamePatternMatcher:
    """Provider patterns applied to the model part of the group name."""

    def match(self, group: Group) -> list[str]:
        via = _VIA_NAME.match(group.name)
        return match_model_patterns(via.group(1) if via else group.name)


class ExplicitModelsMatcher:
    def match(self, group: Group) -> list[str]:
        return [m.lower() for m in group.models or [] if m]


class TestModelMatcher:
    def match(self, group: Group) -> list[str]:
        return [group.test_model.lower()] if group.test_model else []


class ProxyPathMatcher:
    def match(self, group: Group) -> list[str]:
        found: list[str] = []
        for upstream in group.upstreams:
            name = proxy_path_name(upstream.url)
            if name:
                via = _VIA_NAME.match(name)
                found.extend(match_model_patterns(via.group(1) if via else name))
        return found


def default_matchers() -> list[ModelMatcher]:
    return [NamePatternMatcher(), ExplicitModelsMatcher(), TestModelMatcher(), ProxyPathMatcher()]


# ------------------------------------------------------------------
# Topology manager
# ------------------------------------------------------------------


class TopologyManager:
    """Owns the model mapping and builds the three-layer hierarchy."""

    def __init__(
        self,
        registry: GroupRegistry,
        directory: InstanceDirectory,
        policy: ModelPolicy | None = None,
        *,
        layers: LayersConfig | None = None,
        test_model: str | None = None,
        default_proxy_url: str = "http://localhost:3001",
        matchers: list[ModelMatcher] | None = None,
    ) -> None:
        self.registry = registry
        self.directory = directory
        self.policy = policy or AllowAllModelPolicy()
        self.layers = layers or LayersConfig()
        self.default_proxy_url = default_proxy_url
        self.test_model = test_model
        self.matchers = matchers if matchers is not None else default_matchers()
        self._mapping: ModelGroupMapping = MappingProxyType({})
        self._groups: tuple[Group, ...] = ()
        self.incompatible: set[str] = set()

    # -- Mapping -----------------------------------------------------------

    @property
    def mapping(self) -> ModelGroupMapping:
        return self._mapping

    @property
    def groups(self) -> tuple[Group, ...]:
        """Every group seen by the most recent listing."""
        return self._groups

    def models(self) -> list[str]:
        return sorted(self._mapping)

    def groups_for(self, model: str) -> list[Group]:
        return list(self._mapping.get(model, ()))

    def find_group(self, key: GroupKey) -> Group | None:
        for groups in self._mapping.values():
            for g in groups:
                if g.key == key:
                    return g
        for g in self._groups:
            if g.key == key:
                return g
        return None

    def find_group_by_name(self, name: str) -> Group | None:
        return next((g for g in self._groups if g.name == name), None)

    def extract_models(self, group: Group) -> list[str]:
        """Union of every matcher's models.

        The configured test model is only a fallback for groups no matcher
        recognises.
        """
        found: list[str] = []
        for matcher in self.matchers:
            for model in matcher.match(group):
                if model and model not in found:
                    found.append(model)
        if not found and self.test_model:
            found.append(self.test_model.lower())
        return found

    async def refresh_groups(self) -> tuple[Group, ...]:
        groups = tuple(await self.registry.list_groups())
        self._groups = groups
        return groups

    async def load_mapping(self) -> ModelGroupMapping:
        """Rebuild the model mapping from the registry and swap it in."""
        groups = await self.refresh_groups()
        building: dict[str, list[Group]] = {}
        for group in groups:
            if group.layer == Layer.SITE:
                continue
            try:
                models = self.extract_models(group)
            except Exception:
                logger.exception("Failed to extract models from group %s", group.name)
                continue
            for model in models:
                building.setdefault(model, []).append(group)

        self._mapping = MappingProxyType(
            {model: tuple(sorted(gs, key=lambda g: (g.priority, g.name))) for model, gs in building.items()}
        )
        logger.info("Loaded mapping: %d models over %d groups", len(self._mapping), len(groups))
        return self._mapping

    def replace_group(self, group: Group) -> None:
        """Swap in an updated copy of a group wherever it appears."""
        self._mapping = MappingProxyType(
            {
                model: tuple(group if g.key == group.key else g for g in gs)
                for model, gs in self._mapping.items()
            }
        )
        self._groups = tuple(group if g.key == group.key else g for g in self._groups)

    def clear(self) -> None:
        self._mapping = MappingProxyType({})
        self._groups = ()
        self.incompatible = set()

    # -- Layers ------------------------------------------------------------

    def site_groups(self, groups: Iterable[Group] | None = None) -> list[Group]:
        return [g for g in (self._groups if groups is None else groups) if g.layer == Layer.SITE]

    def model_channel_groups(self, groups: Iterable[Group] | None = None) -> list[Group]:
        return [g for g in (self._groups if groups is None else groups) if g.layer == Layer.MODEL_CHANNEL]

    def aggregate_groups(self, groups: Iterable[Group] | None = None) -> list[Group]:
        return [g for g in (self._groups if groups is None else groups) if g.layer == Layer.AGGREGATE]

    def layer_summary(self) -> dict[str, Any]:
        layers = {
            "site": self.site_groups(),
            "model_channel": self.model_channel_groups(),
            "aggregate": self.aggregate_groups(),
        }
        return {name: {"count": len(gs), "groups": [g.name for g in gs]} for name, gs in layers.items()}

    def discover_models(self, sites: list[Group]) -> list[str]:
        """Union of every site's validated models, filtered by the model policy."""
        found: list[str] = []
        for site in sites:
            for model in self.policy.filter_models(list(site.validated_models or [])):
                if model not in found:
                    found.append(model)
        return found

    # -- Three-layer build -------------------------------------------------

    async def build_three_layer_topology(self, models: list[str] | None = None) -> TopologyBuildResult:
        """Create or reuse model-channel and aggregate groups for ``models``.

        Per model/site failures are logged and recorded as incompatible; the
        rest of the build continues.
        """
        groups = await self.refresh_groups()
        by_name = {g.name: g for g in groups}
        sites = self.site_groups(groups)
        if models is None:
            models = self.discover_models(sites)
        models = [m for m in models if self.policy.is_model_allowed(m)]

        result = TopologyBuildResult(site_groups=len(sites), total_models=len(models))
        for model in models:
            channel_groups: list[Group] = []
            for site in sites:
                try:
                    if not site_supports_model(site, model):
                        continue
                    channel_groups.append(await self._ensure_model_channel_group(model, site, by_name))
                except Exception:
                    logger.exception("Failed to set up %s via %s", model, site.name)
                    self.incompatible.add(f"{model}:{site.name}")
                    result.failed += 1
            result.model_channel_groups += len(channel_groups)
            if not channel_groups:
                logger.warning("Model %s has no supporting channels", model)
                continue
            try:
                await self._ensure_aggregate_group(model, channel_groups, by_name)
                result.aggregate_groups += 1
            except Exception:
                logger.exception("Failed to set up aggregate group for %s", model)
                result.failed += 1

        result.incompatible = sorted(self.incompatible)
        logger.info(
            "Topology build: %d models, %d model-channel groups, %d aggregate groups, %d failures",
            result.total_models,
            result.model_channel_groups,
            result.aggregate_groups,
            result.failed,
        )
        await self.load_mapping()
        return result

    async def _ensure_model_channel_group(self, model: str, site: Group, by_name: dict[str, Group]) -> Group:
        name = model_channel_name(model, site.name)
        existing = by_name.get(name)
        if existing is not None:
            return existing

        site_url = self._instance_url(site.instance_id)
        instance = await self.directory.select_best_instance(site_url)
        if instance is None:
            raise RuntimeError("No registry instance available")
        layer = self.layers.model_channel
        spec = GroupSpec(
            name=name,
            display_name=f"{model} @ {site.name}",
            description=f"{model} routed through the {site.name} channel",
            upstreams=[Upstream(url=f"{site_url}/proxy/{site.name}", weight=1)],
            sort=layer.sort,
            channel_type=site.channel_type or "openai",
            test_model=model,
            validation_endpoint=site.validation_endpoint,
            config=layer.group_config(),
            tags=["layer-2", "model-channel", model, site.name],
        )
        created = await self.registry.create_group(instance.id, spec)
        if instance.token:
            await self.registry.add_api_keys(instance.id, created.id, [instance.token])
        by_name[name] = created
        logger.info("Created model-channel group %s", name)
        return created

    async def _ensure_aggregate_group(self, model: str, channel_groups: list[Group], by_name: dict[str, Group]) -> Group:
        name = sanitize_model_name(model)
        upstreams = [
            Upstream(url=f"{self._instance_url(cg.instance_id)}/proxy/{cg.name}", weight=1) for cg in channel_groups
        ]
        existing = by_name.get(name)
        if existing is not None:
            await self.registry.update_group(
                existing.id, existing.instance_id, {"upstreams": [u.model_dump() for u in upstreams]}
            )
            logger.info("Updated upstreams of aggregate group %s", name)
            return existing.model_copy(update={"upstreams": upstreams})

        instance = await self.directory.select_best_instance()
        if instance is None:
            raise RuntimeError("No registry instance available")
        layer = self.layers.aggregate
        spec = GroupSpec(
            name=name,
            display_name=f"{model} (aggregate)",
            description=f"Aggregate entry point for {model} over {len(upstreams)} channels",
            upstreams=upstreams,
            sort=layer.sort,
            channel_type=channel_groups[0].channel_type or "openai",
            test_model=model,
            validation_endpoint=channel_groups[0].validation_endpoint,
            config=layer.group_config(),
            tags=["layer-3", "model-aggregate", model],
        )
        created = await self.registry.create_group(instance.id, spec)
        if instance.token:
            await self.registry.add_api_keys(instance.id, created.id, [instance.token])
        by_name[name] = created
        logger.info("Created aggregate group %s with %d upstreams", name, len(upstreams))
        return created

    def _instance_url(self, instance_id: str) -> str:
        instance = self.directory.get_instance(instance_id)
        return (instance.url if instance else self.default_proxy_url).rstrip("/")
