"""Provider implementations for the container runtime, registry, and release catalog."""
from __future__ import annotations

from .docker import DockerRuntime
from .registry import LayerSizes, Platform, RegistryClient, RemoteDigest
from .releases import Release, ReleaseCatalog, ReleaseCatalogClient
from .runtime import (
    ContainerInfo,
    ContainerRuntime,
    ContainerSpec,
    LocalImage,
    PullResult,
    RuntimeEnvironment,
    VolumeInfo,
    parse_docker_host,
)

__all__ = [
    "ContainerInfo",
    "ContainerRuntime",
    "ContainerSpec",
    "DockerRuntime",
    "LayerSizes",
    "LocalImage",
    "Platform",
    "PullResult",
    "RegistryClient",
    "Release",
    "ReleaseCatalog",
    "ReleaseCatalogClient",
    "RemoteDigest",
    "RuntimeEnvironment",
    "VolumeInfo",
    "parse_docker_host",
]
