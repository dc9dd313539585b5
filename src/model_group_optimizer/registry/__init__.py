from model_group_optimizer.registry.base import (
    AllowAllModelPolicy,
    GroupRegistry,
    InitializationError,
    InstanceDirectory,
    ModelPolicy,
    RegistryError,
)
from model_group_optimizer.registry.http_registry import HttpGroupRegistry, StaticInstanceDirectory, unwrap_envelope
from model_group_optimizer.registry.memory_registry import MemoryGroupRegistry

__all__ = [
    "AllowAllModelPolicy",
    "GroupRegistry",
    "HttpGroupRegistry",
    "InitializationError",
    "InstanceDirectory",
    "MemoryGroupRegistry",
    "ModelPolicy",
    "RegistryError",
    "StaticInstanceDirectory",
    "unwrap_envelope",
]
