"""Cluster protocols — the narrow surfaces the engine needs from the API server."""

from __future__ import annotations

from collections.abc import Sequence
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

from ipsecverify.traffic.models import PodRef


@runtime_checkable
class NetworkConfigSource(Protocol):
    """Read and optimistically replace the cluster network operator config."""

    def get_network(self) -> dict[str, Any]:
        """Return the current object, including metadata.resourceVersion."""
        ...

    def replace_network(self, network: dict[str, Any]) -> dict[str, Any]:
        """Write the object back. Raises ConflictError on a stale resourceVersion."""
        ...


@runtime_checkable
class ClusterStatusSource(Protocol):
    """Read-only rollout and health status."""

    def list_machine_config_pools(self) -> list[dict[str, Any]]: ...

    def list_cluster_operators(self) -> list[dict[str, Any]]: ...

    def get_daemonset(self, namespace: str, name: str) -> dict[str, Any] | None:
        """Return the DaemonSet, or None when it does not exist."""
        ...


@runtime_checkable
class PodExecutor(Protocol):
    """Run a command inside a pod and return its stdout."""

    def exec_in_pod(
        self, pod: PodRef, command: Sequence[str], timeout: float | None = None
    ) -> str:
        """Raises CommandError when the command exits non-zero."""
        ...


@runtime_checkable
class ObjectManager(Protocol):
    """Create, apply and delete cluster objects."""

    def create(self, manifest: dict[str, Any]) -> dict[str, Any]: ...

    def apply_file(self, path: Path) -> None: ...

    def delete_file(self, path: Path) -> None: ...

    def delete(self, kind: str, name: str, namespace: str | None = None) -> None: ...

    def get_yaml(self, kind: str, name: str, namespace: str | None = None) -> str: ...

    def get_pod(self, namespace: str, name: str) -> dict[str, Any]: ...

    def list_nodes(self) -> list[dict[str, Any]]: ...

    def node_bridge_interface(self, node: str, bridge: str) -> str: ...
