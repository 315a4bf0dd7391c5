"""OcClient — drives the cluster through the oc (or kubectl) binary.

Every call is a synchronous subprocess with its own timeout. Failures are
classified from stderr so callers can tell a missing object, a lost
optimistic-concurrency race and a dropped API connection apart.
"""

from __future__ import annotations

import json
import logging
import subprocess
from collections.abc import Sequence
from pathlib import Path
from typing import Any

from ipsecverify.errors import (
    AlreadyExistsError,
    CommandError,
    ConflictError,
    IpsecVerifyError,
    NotFoundError,
    TransientInfrastructureError,
)
from ipsecverify.traffic.models import PodRef

logger = logging.getLogger(__name__)

NETWORK_OPERATOR_RESOURCE = "network.operator.openshift.io"
NETWORK_OPERATOR_NAME = "cluster"

_NOT_FOUND_MARKERS = ("(NotFound)", "not found")
_EXISTS_MARKERS = ("(AlreadyExists)", "already exists")
_CONFLICT_MARKERS = ("(Conflict)", "the object has been modified")
_TRANSIENT_MARKERS = (
    "connection reset by peer",
    "http2: client connection lost",
)


def classify_failure(
    command: Sequence[str], returncode: int | None, stderr: str
) -> CommandError:
    """Map a failed command to the most specific CommandError subclass."""
    if any(marker in stderr for marker in _TRANSIENT_MARKERS):
        return TransientInfrastructureError(command, returncode, stderr)
    if any(marker in stderr for marker in _CONFLICT_MARKERS):
        return ConflictError(command, returncode, stderr)
    if any(marker in stderr for marker in _EXISTS_MARKERS):
        return AlreadyExistsError(command, returncode, stderr)
    if any(marker in stderr for marker in _NOT_FOUND_MARKERS):
        return NotFoundError(command, returncode, stderr)
    return CommandError(command, returncode, stderr)


class OcClient:
    """Thin subprocess wrapper satisfying all of the cluster protocols."""

    def __init__(
        self,
        binary: str = "oc",
        kubeconfig: str | None = None,
        timeout: float = 60.0,
    ) -> None:
        self._binary = binary
        self._kubeconfig = kubeconfig
        self._timeout = timeout

    def run(
        self,
        args: Sequence[str],
        input: str | None = None,
        timeout: float | None = None,
    ) -> str:
        """Run one oc command and return stdout, raising on non-zero exit."""
        cmd = [self._binary]
        if self._kubeconfig:
            cmd += ["--kubeconfig", self._kubeconfig]
        cmd += list(args)

        logger.debug("Running: %s", " ".join(cmd))
        try:
            result = subprocess.run(
                cmd,
                input=input,
                capture_output=True,
                text=True,
                timeout=timeout if timeout is not None else self._timeout,
            )
        except subprocess.TimeoutExpired as exc:
            stderr = exc.stderr or ""
            if isinstance(stderr, bytes):
                stderr = stderr.decode("utf-8", errors="replace")
            raise CommandError(cmd, None, stderr) from exc
        except FileNotFoundError as exc:
            raise CommandError(cmd, 127, f"{self._binary}: not found") from exc

        if result.returncode != 0:
            raise classify_failure(cmd, result.returncode, result.stderr)
        return result.stdout

    def get_json(
        self, kind: str, name: str | None = None, namespace: str | None = None
    ) -> dict[str, Any]:
        args = ["get", kind]
        if name:
            args.append(name)
        args += _namespace_args(namespace)
        args += ["-o", "json"]
        return json.loads(self.run(args))

    # -- NetworkConfigSource ------------------------------------------------

    def get_network(self) -> dict[str, Any]:
        return self.get_json(NETWORK_OPERATOR_RESOURCE, NETWORK_OPERATOR_NAME)

    def replace_network(self, network: dict[str, Any]) -> dict[str, Any]:
        # replace (not apply) keeps resourceVersion as the concurrency guard
        out = self.run(["replace", "-f", "-", "-o", "json"], input=json.dumps(network))
        return json.loads(out)

    # -- ClusterStatusSource ------------------------------------------------

    def list_machine_config_pools(self) -> list[dict[str, Any]]:
        return self.get_json("machineconfigpools").get("items", [])

    def list_cluster_operators(self) -> list[dict[str, Any]]:
        return self.get_json("clusteroperators").get("items", [])

    def get_daemonset(self, namespace: str, name: str) -> dict[str, Any] | None:
        try:
            return self.get_json("daemonset", name, namespace)
        except NotFoundError:
            return None

    # -- PodExecutor ----------------------------------------------------------

    def exec_in_pod(
        self, pod: PodRef, command: Sequence[str], timeout: float | None = None
    ) -> str:
        return self.run(
            ["exec", pod.name, "-n", pod.namespace, "--", *command],
            timeout=timeout,
        )

    # -- ObjectManager --------------------------------------------------------

    def create(self, manifest: dict[str, Any]) -> dict[str, Any]:
        out = self.run(["create", "-f", "-", "-o", "json"], input=json.dumps(manifest))
        return json.loads(out)

    def apply_file(self, path: Path) -> None:
        self.run(["apply", "-f", str(path)])

    def delete_file(self, path: Path) -> None:
        self.run(["delete", "-f", str(path), "--ignore-not-found"])

    def delete(self, kind: str, name: str, namespace: str | None = None) -> None:
        self.run(
            ["delete", kind, name, *_namespace_args(namespace), "--ignore-not-found", "--wait=true"]
        )

    def get_yaml(self, kind: str, name: str, namespace: str | None = None) -> str:
        return self.run(["get", f"{kind}/{name}", *_namespace_args(namespace), "-o", "yaml"])

    def get_pod(self, namespace: str, name: str) -> dict[str, Any]:
        return self.get_json("pod", name, namespace)

    def list_nodes(self) -> list[dict[str, Any]]:
        return self.get_json("nodes").get("items", [])

    def node_bridge_interface(self, node: str, bridge: str) -> str:
        """Return the physical port attached to an OVS bridge on the node."""
        out = self.run(
            ["debug", f"node/{node}", "--", "chroot", "/host", "ovs-vsctl", "list-ports", bridge]
        )
        for line in out.splitlines():
            port = line.strip()
            # patch ports connect br-ex to br-int, they are not physical
            if port and not port.startswith("patch-"):
                return port
        raise IpsecVerifyError(f"No physical interface found on {bridge} of node {node}")


def _namespace_args(namespace: str | None) -> list[str]:
    return ["-n", namespace] if namespace else []
