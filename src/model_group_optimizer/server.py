"""FastAPI application factory and CLI entrypoint for model-group-optimizer."""

import argparse
import logging
import os
from contextlib import asynccontextmanager
from typing import Any

import yaml
from fastapi import FastAPI, Query, Request
from fastapi.responses import JSONResponse

from model_group_optimizer._version import __version__
from model_group_optimizer.models import OptimizerConfig
from model_group_optimizer.monitor import EventHandler, HealthMonitor
from model_group_optimizer.registry.base import GroupRegistry, InstanceDirectory, ModelPolicy
from model_group_optimizer.registry.http_registry import HttpGroupRegistry, StaticInstanceDirectory
from model_group_optimizer.topology import TopologyManager

logger = logging.getLogger(__name__)


# ------------------------------------------------------------------
# Model policy loader
# ------------------------------------------------------------------


def _load_policy(dotted_path: str) -> ModelPolicy:
    """Import a class by dotted path, e.g. ``my_pkg.policies.WhitelistPolicy``."""
    module_path, _, cls_name = dotted_path.rpartition(".")
    if not module_path:
        raise ValueError(f"Invalid policy path: {dotted_path}")
    import importlib

    mod = importlib.import_module(module_path)
    return getattr(mod, cls_name)()


# ------------------------------------------------------------------
# App factory
# ------------------------------------------------------------------


def create_app(
    config: OptimizerConfig | None = None,
    registry: GroupRegistry | None = None,
    directory: InstanceDirectory | None = None,
    policy: ModelPolicy | None = None,
    event_handler: EventHandler | None = None,
) -> FastAPI:
    """Create and return a fully configured FastAPI application."""
    if config is None:
        config = OptimizerConfig()

    if directory is None:
        directory = StaticInstanceDirectory(config.instances)

    if registry is None:
        registry = HttpGroupRegistry(directory, timeout=config.request_timeout, max_retries=config.max_retries)

    if policy is None and config.model_policy:
        policy = _load_policy(config.model_policy)

    topology = TopologyManager(
        registry,
        directory,
        policy,
        layers=config.layers,
        test_model=config.test_model,
        default_proxy_url=config.default_proxy_url,
    )
    monitor = HealthMonitor.from_config(config, registry, topology, event_handler=event_handler)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if config.start_monitor:
            await monitor.start()
        yield
        await monitor.stop()
        await registry.close()

    app = FastAPI(title="model-group-optimizer", version=__version__, lifespan=lifespan)

    def _unknown_model(model: str) -> JSONResponse | None:
        if model in topology.mapping:
            return None
        return JSONResponse(status_code=404, content={"error": f"Model {model} not found"})

    # -- Health endpoints --------------------------------------------------

    @app.get("/health")
    async def health():
        return {"status": "ok", "monitor_running": monitor.running}

    @app.get("/status")
    async def status():
        return monitor.architecture_status()

    # -- Model endpoints ---------------------------------------------------

    @app.get("/models")
    async def list_models():
        return {
            model: [{"id": g.id, "name": g.name, "instance_id": g.instance_id, "priority": g.priority} for g in groups]
            for model, groups in sorted(topology.mapping.items())
        }

    @app.get("/models/{model}/health")
    async def model_health(model: str):
        missing = _unknown_model(model)
        if missing is not None:
            return missing
        report = await monitor.check_model_health(model)
        return report.model_dump()

    @app.post("/models/{model}/optimize")
    async def optimize_model(model: str):
        missing = _unknown_model(model)
        if missing is not None:
            return missing
        summary = await monitor.optimize_model(model)
        return summary.model_dump()

    @app.post("/models/{model}/validate")
    async def validate_model(model: str):
        missing = _unknown_model(model)
        if missing is not None:
            return missing
        triggered = await monitor.trigger_model_validation(model)
        return {"model": model, "triggered": triggered}

    @app.get("/models/{model}/best-group")
    async def best_group(model: str):
        missing = _unknown_model(model)
        if missing is not None:
            return missing
        best = await monitor.best_group(model)
        if best is None:
            return JSONResponse(status_code=404, content={"error": f"No usable group for model {model}"})
        return best.model_dump()

    # -- Sweep endpoints ---------------------------------------------------

    @app.post("/optimize")
    async def optimize_all():
        summaries = await monitor.optimize_all()
        return [s.model_dump() for s in summaries]

    @app.get("/report")
    async def report():
        result = await monitor.optimization_report()
        return result.model_dump()

    @app.post("/topology/build")
    async def build_topology(request: Request):
        body = await _safe_json(request)
        models = body.get("models")
        if models is not None and not isinstance(models, list):
            return JSONResponse(status_code=400, content={"error": "models must be a list"})
        result = await topology.build_three_layer_topology(models)
        return result.model_dump()

    @app.post("/weights/optimize")
    async def optimize_weights():
        result = await monitor.weights.optimize()
        return result.model_dump()

    # -- Recovery endpoints ------------------------------------------------

    @app.get("/recovery")
    async def recovery_overview():
        return [s.model_dump() for s in monitor.recovery.statuses()]

    @app.get("/recovery/{model}/{channel}")
    async def recovery_status(model: str, channel: str):
        return monitor.recovery.status(model, channel).model_dump()

    @app.post("/recovery/{model}/{channel}")
    async def manual_recovery(model: str, channel: str):
        result = await monitor.recovery.manual_recovery(model, channel)
        return result.model_dump()

    # -- Log endpoints -----------------------------------------------------

    @app.get("/logs/{group_name}")
    async def channel_logs(
        group_name: str,
        instance_id: str = Query(...),
        hours: float = Query(24.0, gt=0),
    ):
        summary = await monitor.analyze_channel_logs(group_name, instance_id, hours)
        return summary.model_dump()

    # Store references on app for external access
    app.state.config = config  # type: ignore[attr-defined]
    app.state.registry = registry  # type: ignore[attr-defined]
    app.state.topology = topology  # type: ignore[attr-defined]
    app.state.monitor = monitor  # type: ignore[attr-defined]

    return app


# ------------------------------------------------------------------
# Helpers
# ------------------------------------------------------------------


async def _safe_json(request: Request) -> dict[str, Any]:
    try:
        body = await request.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {}


# ------------------------------------------------------------------
# Config loading
# ------------------------------------------------------------------


def _load_config(args: argparse.Namespace) -> OptimizerConfig:
    """Build an ``OptimizerConfig`` from CLI args, env vars, and optional YAML file."""
    data: dict[str, Any] = {}

    # 1. YAML file (lowest priority)
    config_path = getattr(args, "config", None)
    if config_path:
        with open(config_path) as f:
            data.update(yaml.safe_load(f) or {})

    # 2. Env vars
    env_map = {
        "MGO_HOST": "host",
        "MGO_PORT": "port",
        "MGO_LOG_LEVEL": "log_level",
        "MGO_TEST_MODEL": "test_model",
        "MGO_DEFAULT_PROXY_URL": "default_proxy_url",
        "MGO_FULL_OPTIMIZE_INTERVAL": "full_optimize_interval",
    }
    for env_key, config_key in env_map.items():
        val = os.environ.get(env_key)
        if val is not None:
            if config_key == "port":
                data[config_key] = int(val)
            elif config_key == "full_optimize_interval":
                data[config_key] = float(val)
            else:
                data[config_key] = val

    # 3. CLI args (highest priority)
    if getattr(args, "host", None) is not None:
        data["host"] = args.host
    if getattr(args, "port", None) is not None:
        data["port"] = args.port
    if getattr(args, "log_level", None) is not None:
        data["log_level"] = args.log_level
    if getattr(args, "no_monitor", False):
        data["start_monitor"] = False

    # Registry instances from CLI --instance flags
    instance_urls = getattr(args, "instance", None) or []
    if instance_urls:
        data["instances"] = [
            {"id": str(i), "name": f"instance-{i}", "url": url, "priority": i + 1} for i, url in enumerate(instance_urls)
        ]

    return OptimizerConfig(**data)


# ------------------------------------------------------------------
# CLI entrypoint
# ------------------------------------------------------------------


def main() -> None:
    parser = argparse.ArgumentParser(description="model-group-optimizer: passive health control loop for group registries")
    parser.add_argument("--host", type=str, default=None)
    parser.add_argument("--port", type=int, default=None)
    parser.add_argument("--config", type=str, default=None, help="Path to YAML config")
    parser.add_argument(
        "--instance",
        type=str,
        action="append",
        help="Registry instance URL (can be repeated)",
    )
    parser.add_argument("--log-level", type=str, default=None)
    parser.add_argument("--no-monitor", action="store_true", help="Serve the API without starting the sweeps")

    args = parser.parse_args()
    config = _load_config(args)

    logging.basicConfig(level=getattr(logging, config.log_level.upper(), logging.INFO))

    app = create_app(config)

    import uvicorn

    uvicorn.run(app, host=config.host, port=config.port, log_level=config.log_level.lower())


if __name__ == "__main__":
    main()
