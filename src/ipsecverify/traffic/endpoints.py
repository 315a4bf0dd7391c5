"""Trial pair lifecycle — pick two nodes, attach test pods, tear them down."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from typing import Any

from ipsecverify.cluster import manifests
from ipsecverify.cluster.base import ObjectManager
from ipsecverify.errors import AlreadyExistsError, ConvergenceTimeout, IpsecVerifyError
from ipsecverify.rollout.models import ConvergenceDeadline
from ipsecverify.rollout.poller import poll_until
from ipsecverify.traffic.models import NodeEndpoint, PodRef, TrialPair
from ipsecverify.traffic.tasks import raise_first, run_together

logger = logging.getLogger(__name__)

EXTERNAL_BRIDGE = "br-ex"
POD_READY_DEADLINE = ConvergenceDeadline(interval=2.0, max_wait=180.0)

_BLOCKING_TAINTS = {"NoSchedule", "NoExecute"}


def _node_ready(node: dict[str, Any]) -> bool:
    for cond in (node.get("status") or {}).get("conditions") or []:
        if cond.get("type") == "Ready":
            return cond.get("status") == "True"
    return False


def node_schedulable(node: dict[str, Any]) -> bool:
    """Ready, not cordoned, and not tainted against ordinary pods."""
    spec = node.get("spec") or {}
    if spec.get("unschedulable"):
        return False
    if any(t.get("effect") in _BLOCKING_TAINTS for t in spec.get("taints") or []):
        return False
    return _node_ready(node)


def node_internal_ip(node: dict[str, Any]) -> str:
    for address in (node.get("status") or {}).get("addresses") or []:
        if address.get("type") == "InternalIP":
            return address.get("address", "")
    return ""


class TrialPairFactory:
    """Creates TrialPairs on two distinct schedulable nodes."""

    def __init__(
        self,
        manager: ObjectManager,
        namespace: str,
        network_tools_image: str,
        exec_image: str,
        *,
        pod_ready_deadline: ConvergenceDeadline = POD_READY_DEADLINE,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._manager = manager
        self._namespace = namespace
        self._network_tools_image = network_tools_image
        self._exec_image = exec_image
        self._pod_ready_deadline = pod_ready_deadline
        self._sleep = sleep
        self._clock = clock

    def prepare_namespace(self) -> None:
        """Create the trial namespace, allowing privileged host-networked pods."""
        try:
            self._manager.create(manifests.privileged_namespace(self._namespace))
            logger.info("Created namespace %s", self._namespace)
        except AlreadyExistsError:
            logger.debug("Namespace %s already exists", self._namespace)

    def select_nodes(self) -> TrialPair:
        """Choose two different nodes and resolve their IP and primary interface."""
        nodes = [n for n in self._manager.list_nodes() if node_schedulable(n)]
        if len(nodes) < 2:
            raise IpsecVerifyError(
                f"Need two schedulable nodes for a trial, found {len(nodes)}"
            )
        pair = TrialPair(src=self._endpoint(nodes[0]), dst=self._endpoint(nodes[1]))
        logger.info(
            "Selected nodes %s (%s, %s) and %s (%s, %s)",
            pair.src.node_name,
            pair.src.node_ip,
            pair.src.interface,
            pair.dst.node_name,
            pair.dst.node_ip,
            pair.dst.interface,
        )
        return pair

    def attach(self, pair: TrialPair) -> None:
        """Launch capture and ping pods on both nodes concurrently."""
        errors = run_together(
            {
                "source": lambda: self._attach(pair.src, "ipsec-test-srcpod-"),
                "destination": lambda: self._attach(pair.dst, "ipsec-test-dstpod-"),
            }
        )
        raise_first(errors)

    def detach(self, pair: TrialPair) -> None:
        """Delete every pod attached to the pair, reporting the first failure."""
        failures: list[Exception] = []
        for endpoint in pair.endpoints:
            for pod in (endpoint.ping_pod, endpoint.capture_pod):
                if pod is None:
                    continue
                try:
                    self._manager.delete("pod", pod.name, pod.namespace)
                except IpsecVerifyError as exc:
                    logger.error("Failed to delete pod %s/%s: %s", pod.namespace, pod.name, exc)
                    failures.append(exc)
            endpoint.detach()
        if failures:
            raise failures[0]

    @contextmanager
    def attached(self, pair: TrialPair, keep_on_failure: bool = False) -> Iterator[TrialPair]:
        """Attach pods for the duration of the block.

        On failure the pods are left in place for inspection when
        `keep_on_failure` is set; otherwise they are always removed.
        """
        try:
            self.attach(pair)
            yield pair
        except Exception:
            if keep_on_failure:
                pair.leaked = True
                logger.warning(
                    "Trial failed — leaving pods on %s and %s for inspection",
                    pair.src.node_name,
                    pair.dst.node_name,
                )
            else:
                self._detach_quietly(pair)
            raise
        self.detach(pair)

    def _detach_quietly(self, pair: TrialPair) -> None:
        try:
            self.detach(pair)
        except IpsecVerifyError as exc:
            logger.error("Cleanup after failed trial also failed: %s", exc)

    def _endpoint(self, node: dict[str, Any]) -> NodeEndpoint:
        name = node["metadata"]["name"]
        node_ip = node_internal_ip(node)
        if not node_ip:
            raise IpsecVerifyError(f"Node {name} has no InternalIP address")
        return NodeEndpoint(
            node_name=name,
            interface=self._manager.node_bridge_interface(name, EXTERNAL_BRIDGE),
            node_ip=node_ip,
        )

    def _attach(self, endpoint: NodeEndpoint, prefix: str) -> None:
        # record each pod before waiting on it; detach only deletes recorded pods
        endpoint.capture_pod = self._create(
            manifests.host_capture_pod(
                endpoint.node_name,
                self._network_tools_image,
                self._namespace,
                "ipsec-tcpdump-hostpod-",
            )
        )
        endpoint.capture_pod = self._wait_running(endpoint.capture_pod)
        endpoint.ping_pod = self._create(
            manifests.exec_pod(endpoint.node_name, self._exec_image, self._namespace, prefix)
        )
        endpoint.ping_pod = self._wait_running(endpoint.ping_pod)

    def _create(self, manifest: dict[str, Any]) -> PodRef:
        created = self._manager.create(manifest)
        meta = created["metadata"]
        return PodRef(name=meta["name"], namespace=meta.get("namespace", self._namespace))

    def _wait_running(self, pod: PodRef) -> PodRef:
        name, namespace = pod.name, pod.namespace
        pod_ip = ""

        def running() -> bool:
            nonlocal pod_ip
            status = self._manager.get_pod(namespace, name).get("status") or {}
            pod_ip = status.get("podIP", "")
            return status.get("phase") == "Running" and bool(pod_ip)

        deadline = self._pod_ready_deadline
        if not poll_until(
            deadline.interval, deadline.max_wait, running, sleep=self._sleep, clock=self._clock
        ):
            raise ConvergenceTimeout(f"pod {namespace}/{name} running", deadline.max_wait)
        logger.debug("Pod %s/%s running with IP %s", namespace, name, pod_ip)
        return PodRef(name=name, namespace=namespace, ip=pod_ip)
