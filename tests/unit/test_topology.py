"""Tests for model extraction, channel resolution and the three-layer build."""

import pytest
from model_group_optimizer.models import Group, Layer, Upstream
from model_group_optimizer.registry.memory_registry import MemoryGroupRegistry
from model_group_optimizer.topology import (
    TopologyManager,
    channel_of,
    match_model_patterns,
    model_channel_name,
    sanitize_model_name,
    site_supports_model,
)

from .conftest import INSTANCE, site_group


class TestNaming:
    def test_sanitize(self):
        assert sanitize_model_name("Qwen/Qwen2.5 72B") == "qwen-qwen2-5-72b"
        assert sanitize_model_name("gpt--4o") == "gpt-4o"

    def test_model_channel_name(self):
        assert model_channel_name("GPT-4o", "OpenAI-Main") == "gpt-4o-via-openai-main"


class TestPatterns:
    def test_collects_every_match(self):
        found = match_model_patterns("gpt-4o+claude-3-opus")
        assert "gpt-4o" in found
        assert "claude-3-opus" in found

    @pytest.mark.parametrize(
        "text,model",
        [
            ("deepseek-chat", "deepseek-chat"),
            ("gemini-1.5-pro", "gemini-1.5-pro"),
            ("llama-3-70b", "llama-3-70b"),
            ("GPT-4o-mini", "gpt-4o-mini"),
            ("mistral-large", "mistral-large"),
        ],
    )
    def test_providers(self, text, model):
        assert model in match_model_patterns(text)

    def test_no_match(self):
        assert match_model_patterns("backup-site") == []


class TestChannelResolution:
    def test_proxy_path_wins_over_name(self):
        g = Group(id=1, name="gpt-4o-via-a", upstreams=[Upstream(url="http://x/proxy/b")])
        assert channel_of(g) == "b"

    def test_falls_back_to_name(self):
        assert channel_of(Group(id=1, name="gpt-4o-via-a")) == "a"

    def test_unknown(self):
        assert channel_of(Group(id=1, name="odd", sort=15)) == "unknown"


class TestLayerDetection:
    def test_tags_take_precedence(self):
        assert Group(id=1, name="x", sort=20, tags=["layer-3"]).layer == Layer.AGGREGATE
        assert Group(id=1, name="x", sort=20, tags=["model-channel"]).layer == Layer.MODEL_CHANNEL

    def test_sort_fallback(self):
        assert Group(id=1, name="x", sort=20).layer == Layer.SITE
        assert Group(id=1, name="x", sort=15).layer == Layer.MODEL_CHANNEL
        assert Group(id=1, name="x", sort=37).layer is None


class TestSiteSupport:
    def test_validated_models_are_authoritative(self):
        site = site_group(1, "claude-hub", validated_models=["GPT-4o"])
        assert site_supports_model(site, "gpt-4o")
        assert not site_supports_model(site, "claude-3-opus")

    def test_provider_heuristic(self):
        site = site_group(1, "anthropic-proxy", channel_type="anthropic")
        assert site_supports_model(site, "claude-3-opus")
        assert not site_supports_model(site, "gpt-4o")

    def test_channel_type_must_accept_model(self):
        site = site_group(1, "anthropic-proxy", channel_type="openai")
        assert not site_supports_model(site, "claude-3-opus")

    def test_test_model_match(self):
        site = site_group(1, "generic", test_model="deepseek-chat")
        assert site_supports_model(site, "deepseek-chat")

    def test_unrecognised_model_on_generic_site(self):
        site = site_group(1, "openrouter", channel_type="openai")
        assert site_supports_model(site, "kimi-k2")
        assert not site_supports_model(site, "claude-3-opus")


class TestLoadMapping:
    @pytest.mark.asyncio
    async def test_skips_site_groups(self, topology):
        mapping = await topology.load_mapping()
        assert list(mapping) == ["gpt-4o"]
        assert {g.id for g in mapping["gpt-4o"]} == {10, 11, 20}
        assert [g.priority for g in mapping["gpt-4o"]] == sorted(g.priority for g in mapping["gpt-4o"])

    @pytest.mark.asyncio
    async def test_mapping_is_swapped_not_mutated(self, topology):
        old = await topology.load_mapping()
        group = topology.groups_for("gpt-4o")[0]
        topology.replace_group(group.model_copy(update={"sort": 42}))
        assert old["gpt-4o"][0].sort == group.sort
        assert topology.find_group(group.key).sort == 42

    @pytest.mark.asyncio
    async def test_configured_test_model_is_only_a_fallback(self, registry, directory):
        registry.add_group(Group(id=30, name="mystery-channel", sort=15, instance_id="local", tags=["layer-2"]))
        topo = TopologyManager(registry, directory, test_model="gpt-4o-mini")

        mapping = await topo.load_mapping()

        assert [g.id for g in mapping["gpt-4o-mini"]] == [30]
        assert {g.id for g in mapping["gpt-4o"]} == {10, 11, 20}

    @pytest.mark.asyncio
    async def test_configured_test_model_does_not_join_other_models(self, directory):
        reg = MemoryGroupRegistry(
            [
                Group(id=1, name="claude-3-5-sonnet-via-anthropic", sort=15, instance_id="local", tags=["layer-2"]),
                Group(id=2, name="gemini-2.5-pro-via-google", sort=15, instance_id="local", tags=["layer-2"]),
            ]
        )
        topo = TopologyManager(reg, directory, test_model="gpt-4o-mini")

        mapping = await topo.load_mapping()

        assert "gpt-4o-mini" not in mapping
        assert [g.id for g in mapping["claude-3-5-sonnet"]] == [1]
        assert [g.id for g in mapping["gemini-2.5-pro"]] == [2]

    @pytest.mark.asyncio
    async def test_explicit_models_field(self, directory):
        reg = MemoryGroupRegistry([Group(id=5, name="mixed", sort=15, instance_id="local", models=["Qwen-Max"])])
        topo = TopologyManager(reg, directory)
        mapping = await topo.load_mapping()
        assert [g.id for g in mapping["qwen-max"]] == [5]

    @pytest.mark.asyncio
    async def test_listing_failure_propagates(self, registry, topology):
        registry.fail_on["list_groups"] = None
        with pytest.raises(Exception):
            await topology.load_mapping()


class TestBuildThreeLayerTopology:
    @pytest.mark.asyncio
    async def test_builds_channels_and_aggregate(self, directory):
        reg = MemoryGroupRegistry(
            [
                site_group(1, "site-a", validated_models=["claude-3-opus", "gpt-4o"]),
                site_group(2, "site-b", validated_models=["gpt-4o"]),
            ]
        )
        topo = TopologyManager(reg, directory)

        result = await topo.build_three_layer_topology()

        assert result.total_models == 2
        assert result.model_channel_groups == 3
        assert result.aggregate_groups == 2
        names = {g.name for g in await reg.list_groups()}
        assert {"gpt-4o-via-site-a", "gpt-4o-via-site-b", "claude-3-opus-via-site-a", "gpt-4o", "claude-3-opus"} <= names

        channel = next(g for g in await reg.list_groups() if g.name == "gpt-4o-via-site-a")
        assert channel.sort == 15
        assert channel.test_model == "gpt-4o"
        assert channel.upstreams[0].url == f"{INSTANCE.url}/proxy/site-a"
        assert channel.tags == ["layer-2", "model-channel", "gpt-4o", "site-a"]
        assert reg.keys_for(channel.id, "local") == [INSTANCE.token]

        aggregate = next(g for g in await reg.list_groups() if g.name == "gpt-4o")
        assert aggregate.sort == 10
        assert {u.url for u in aggregate.upstreams} == {
            f"{INSTANCE.url}/proxy/gpt-4o-via-site-a",
            f"{INSTANCE.url}/proxy/gpt-4o-via-site-b",
        }
        assert set(topo.mapping) == {"gpt-4o", "claude-3-opus"}

    @pytest.mark.asyncio
    async def test_rebuild_is_idempotent(self, directory):
        reg = MemoryGroupRegistry([site_group(1, "site-a", validated_models=["gpt-4o"])])
        topo = TopologyManager(reg, directory)

        await topo.build_three_layer_topology(["gpt-4o"])
        count = len(await reg.list_groups())
        await topo.build_three_layer_topology(["gpt-4o"])

        assert len(await reg.list_groups()) == count
        assert reg.call_count("create_group") == 2
        # aggregate reuse rewrites its upstreams
        assert reg.updates[-1][2] == {"upstreams": [{"url": f"{INSTANCE.url}/proxy/gpt-4o-via-site-a", "weight": 1}]}

    @pytest.mark.asyncio
    async def test_creation_failure_is_isolated(self, directory):
        reg = MemoryGroupRegistry(
            [
                site_group(1, "site-a", validated_models=["gpt-4o"]),
                site_group(2, "site-b", validated_models=["gpt-4o"]),
            ]
        )
        # first create (gpt-4o via site-a) fails, the rest go through
        original = reg.create_group
        calls = {"n": 0}

        async def flaky_create(instance_id, spec):
            calls["n"] += 1
            if calls["n"] == 1:
                raise RuntimeError("boom")
            return await original(instance_id, spec)

        reg.create_group = flaky_create
        topo = TopologyManager(reg, directory)

        result = await topo.build_three_layer_topology()

        assert result.failed == 1
        assert result.incompatible == ["gpt-4o:site-a"]
        assert result.aggregate_groups == 1
