"""Shared test fixtures — an in-memory cluster that satisfies every cluster protocol."""

from __future__ import annotations

import copy
import itertools
import threading
from collections import defaultdict
from collections.abc import Sequence
from pathlib import Path
from typing import Any

import pytest
import yaml

from ipsecverify.errors import AlreadyExistsError, CommandError, ConflictError
from ipsecverify.rollout.convergence import (
    FleetConvergenceChecker,
    IPSEC_DAEMONSET,
    IPSEC_EXTENSIONS,
    IPSEC_NAMESPACE,
)
from ipsecverify.rollout.coordinator import RolloutCoordinator
from ipsecverify.rollout.mode_store import ModeStore, mode_from_network
from ipsecverify.rollout.models import ConvergenceDeadline, SecurityMode
from ipsecverify.rollout.provisioning import (
    NMSTATE_HANDLER,
    NMSTATE_NAMESPACE,
    POLICY_CONFIGURED_MARKER,
    NorthSouthProvisioner,
)
from ipsecverify.traffic.endpoints import TrialPairFactory
from ipsecverify.traffic.models import NodeEndpoint, PodRef, Signature, TrialPair
from ipsecverify.traffic.oracle import TrafficOracle

CERT_MC_NAME = "99-worker-north-south-ipsec-config"


# ---------------------------------------------------------------------------
# Object builders
# ---------------------------------------------------------------------------

def make_network(ipsec_config: dict | None = None, version: str = "1") -> dict[str, Any]:
    ovn: dict[str, Any] = {"genevePort": 6081}
    if ipsec_config is not None:
        ovn["ipsecConfig"] = ipsec_config
    return {
        "apiVersion": "operator.openshift.io/v1",
        "kind": "Network",
        "metadata": {"name": "cluster", "resourceVersion": version},
        "spec": {"defaultNetwork": {"type": "OVNKubernetes", "ovnKubernetesConfig": ovn}},
    }


def make_pool(
    name: str,
    configs: Sequence[str] = ("00-base",),
    machines: int = 3,
    updated: int | None = None,
    ready: int | None = None,
    degraded: int = 0,
    updating: bool = False,
) -> dict[str, Any]:
    return {
        "metadata": {"name": name},
        "status": {
            "machineCount": machines,
            "updatedMachineCount": machines if updated is None else updated,
            "readyMachineCount": machines if ready is None else ready,
            "degradedMachineCount": degraded,
            "configuration": {
                "name": f"rendered-{name}-abc",
                "source": [{"kind": "MachineConfig", "name": c} for c in configs],
            },
            "conditions": [
                {"type": "Updating", "status": "True" if updating else "False"},
                {"type": "Updated", "status": "False" if updating else "True"},
            ],
        },
    }


def make_operator(
    name: str, available: bool = True, progressing: bool = False, degraded: bool = False
) -> dict[str, Any]:
    def flag(value: bool) -> str:
        return "True" if value else "False"

    return {
        "metadata": {"name": name},
        "status": {
            "conditions": [
                {"type": "Available", "status": flag(available)},
                {"type": "Progressing", "status": flag(progressing)},
                {"type": "Degraded", "status": flag(degraded)},
            ]
        },
    }


def make_daemonset(desired: int = 3, ready: int = 3) -> dict[str, Any]:
    return {"status": {"desiredNumberScheduled": desired, "numberReady": ready}}


def make_node(name: str, ip: str, ready: bool = True, unschedulable: bool = False) -> dict:
    node: dict[str, Any] = {
        "metadata": {"name": name},
        "spec": {},
        "status": {
            "addresses": [
                {"type": "Hostname", "address": name},
                {"type": "InternalIP", "address": ip},
            ],
            "conditions": [{"type": "Ready", "status": "True" if ready else "False"}],
        },
    }
    if unschedulable:
        node["spec"]["unschedulable"] = True
    return node


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------

class FakeClock:
    """Monotonic clock that only moves when something sleeps."""

    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


class FakeCluster:
    """In-memory cluster: network config, rollout status, objects, and pod exec.

    Rollout status follows the requested mode immediately unless `stall()`
    froze it. Wire traffic between nodes is ESP in Full mode, or once both
    north-south policies are configured; otherwise it is Geneve.
    """

    def __init__(self, ipsec_config: dict | None = None) -> None:
        self._lock = threading.Lock()
        self.network = make_network(ipsec_config)
        self.writes = 0
        self.before_write: list = []
        self.stalled_mode: SecurityMode | None = None
        self.operators = [make_operator("network"), make_operator("machine-config")]
        self.nodes = [
            make_node("worker-a", "10.0.0.1"),
            make_node("worker-b", "10.0.0.2"),
            make_node("worker-c", "10.0.0.3", ready=False),
        ]
        self.namespaces: set[str] = set()
        self.pods: dict[tuple[str, str], dict[str, Any]] = {}
        self.deleted_pods: list[str] = []
        self.machine_configs: set[str] = set()
        self.policies: dict[str, dict[str, Any]] = {}
        self.nmstate_deployed = False
        self.silent_nodes: set[str] = set()
        self.ping_fails = False
        self.wire_override: Signature | None = None
        self.exec_log: list[tuple[str, list[str]]] = []
        self._faults: dict[tuple[str, int], Exception] = {}
        self._calls: defaultdict[str, int] = defaultdict(int)
        self._ids = itertools.count(1)

    # -- test controls ----------------------------------------------------------

    @property
    def mode(self) -> SecurityMode:
        return mode_from_network(self.network)

    def stall(self) -> None:
        """Freeze rollout status at the current mode."""
        self.stalled_mode = self.mode

    def fail_at(self, method: str, call: int, exc: Exception) -> None:
        self._faults[(method, call)] = exc

    def _tick(self, method: str) -> Exception | None:
        with self._lock:
            self._calls[method] += 1
            return self._faults.pop((method, self._calls[method]), None)

    def _maybe_fail(self, method: str) -> None:
        exc = self._tick(method)
        if exc is not None:
            raise exc

    @property
    def status_mode(self) -> SecurityMode:
        return self.stalled_mode or self.mode

    @property
    def wire(self) -> Signature:
        if self.wire_override is not None:
            return self.wire_override
        if self.mode is SecurityMode.FULL:
            return Signature.ESP
        if self.nmstate_deployed and len(self.policies) == 2:
            return Signature.ESP
        return Signature.GENEVE

    # -- NetworkConfigSource ----------------------------------------------------

    def get_network(self) -> dict[str, Any]:
        self._maybe_fail("get_network")
        with self._lock:
            return copy.deepcopy(self.network)

    def replace_network(self, network: dict[str, Any]) -> dict[str, Any]:
        fault = self._tick("replace_network")
        while self.before_write:
            self.before_write.pop(0)()
        with self._lock:
            current = self.network["metadata"]["resourceVersion"]
            if network["metadata"]["resourceVersion"] != current:
                raise ConflictError(
                    ["oc", "replace"],
                    1,
                    "Operation cannot be fulfilled: the object has been modified",
                )
            updated = copy.deepcopy(network)
            updated["metadata"]["resourceVersion"] = str(int(current) + 1)
            self.network = updated
            self.writes += 1
        if fault is not None:
            raise fault
        return copy.deepcopy(updated)

    # -- ClusterStatusSource ----------------------------------------------------

    def list_machine_config_pools(self) -> list[dict[str, Any]]:
        self._maybe_fail("list_machine_config_pools")
        mode = self.status_mode
        pools = []
        for pool, extension in IPSEC_EXTENSIONS.items():
            configs = [f"00-{pool}"]
            if mode.installs_ipsec:
                configs.append(extension)
            if pool == "worker":
                configs.extend(sorted(self.machine_configs))
            pools.append(make_pool(pool, configs))
        return pools

    def list_cluster_operators(self) -> list[dict[str, Any]]:
        self._maybe_fail("list_cluster_operators")
        return copy.deepcopy(self.operators)

    def get_daemonset(self, namespace: str, name: str) -> dict[str, Any] | None:
        self._maybe_fail("get_daemonset")
        if (namespace, name) == (IPSEC_NAMESPACE, IPSEC_DAEMONSET):
            return make_daemonset() if self.status_mode is SecurityMode.FULL else None
        if (namespace, name) == (NMSTATE_NAMESPACE, NMSTATE_HANDLER):
            return make_daemonset() if self.nmstate_deployed else None
        return None

    # -- ObjectManager ----------------------------------------------------------

    def list_nodes(self) -> list[dict[str, Any]]:
        self._maybe_fail("list_nodes")
        return copy.deepcopy(self.nodes)

    def node_bridge_interface(self, node: str, bridge: str) -> str:
        return "ens5"

    def create(self, manifest: dict[str, Any]) -> dict[str, Any]:
        self._maybe_fail("create")
        meta = manifest["metadata"]
        if manifest["kind"] == "Namespace":
            with self._lock:
                if meta["name"] in self.namespaces:
                    raise AlreadyExistsError(["oc", "create"], 1, "(AlreadyExists)")
                self.namespaces.add(meta["name"])
            return copy.deepcopy(manifest)

        n = next(self._ids)
        name = f"{meta['generateName']}{n}"
        pod = copy.deepcopy(manifest)
        pod["metadata"]["name"] = name
        node = pod["spec"]["nodeName"]
        if pod["spec"].get("hostNetwork"):
            ip = next(
                a["address"]
                for nd in self.nodes
                if nd["metadata"]["name"] == node
                for a in nd["status"]["addresses"]
                if a["type"] == "InternalIP"
            )
        else:
            ip = f"10.128.{n}.5"
        pod["status"] = {"phase": "Running", "podIP": ip}
        with self._lock:
            self.pods[(meta["namespace"], name)] = pod
        return copy.deepcopy(pod)

    def get_pod(self, namespace: str, name: str) -> dict[str, Any]:
        return copy.deepcopy(self.pods[(namespace, name)])

    def delete(self, kind: str, name: str, namespace: str | None = None) -> None:
        self._maybe_fail("delete")
        with self._lock:
            if kind == "pod":
                self.pods.pop((namespace, name), None)
                self.deleted_pods.append(name)
            elif kind == "machineconfig":
                self.machine_configs.discard(name)

    def apply_file(self, path: Path) -> None:
        self._maybe_fail("apply_file")
        obj = yaml.safe_load(Path(path).read_text(encoding="utf-8"))
        kind, name = obj["kind"], obj["metadata"]["name"]
        if kind == "MachineConfig":
            self.machine_configs.add(name)
        elif kind == "NodeNetworkConfigurationPolicy":
            self.policies[name] = obj
        else:
            self.nmstate_deployed = True

    def delete_file(self, path: Path) -> None:
        self._maybe_fail("delete_file")
        obj = yaml.safe_load(Path(path).read_text(encoding="utf-8"))
        kind, name = obj["kind"], obj["metadata"]["name"]
        if kind == "MachineConfig":
            self.machine_configs.discard(name)
        elif kind == "NodeNetworkConfigurationPolicy":
            self.policies.pop(name, None)
        else:
            self.nmstate_deployed = False

    def get_yaml(self, kind: str, name: str, namespace: str | None = None) -> str:
        policy = copy.deepcopy(self.policies.get(name) or {"metadata": {"name": name}})
        if name in self.policies and self.nmstate_deployed:
            policy["status"] = {
                "conditions": [{"type": "Available", "message": POLICY_CONFIGURED_MARKER}]
            }
        return yaml.safe_dump(policy)

    # -- PodExecutor ------------------------------------------------------------

    def exec_in_pod(
        self, pod: PodRef, command: Sequence[str], timeout: float | None = None
    ) -> str:
        command = list(command)
        fault = self._tick("exec_in_pod")
        with self._lock:
            self.exec_log.append((pod.name, command))
        if fault is not None:
            raise fault

        node = self.pods[(pod.namespace, pod.name)]["spec"]["nodeName"]
        if command[0] == "ping":
            if self.ping_fails:
                raise CommandError(command, 1, "100% packet loss")
            return "3 packets transmitted, 3 received"

        expression = command[-1]
        if node not in self.silent_nodes and expression.startswith(self.wire.bpf):
            return "1 packet captured"
        raise CommandError(command, 124, "0 packets captured")


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def cluster() -> FakeCluster:
    return FakeCluster()


@pytest.fixture
def deadline() -> ConvergenceDeadline:
    return ConvergenceDeadline(interval=60.0, max_wait=1200.0)


@pytest.fixture
def checker(cluster: FakeCluster, deadline: ConvergenceDeadline, clock: FakeClock):
    return FleetConvergenceChecker(cluster, deadline, sleep=clock.sleep, clock=clock)


@pytest.fixture
def manifest_dir(tmp_path: Path) -> Path:
    directory = tmp_path / "manifests"
    directory.mkdir()
    (directory / "ipsec-nsconfig-machine-config.yaml").write_text(
        yaml.safe_dump(
            {
                "apiVersion": "machineconfiguration.openshift.io/v1",
                "kind": "MachineConfig",
                "metadata": {
                    "name": CERT_MC_NAME,
                    "labels": {"machineconfiguration.openshift.io/role": "worker"},
                },
            }
        )
    )
    (directory / "nmstate.yaml").write_text(
        yaml.safe_dump(
            {"apiVersion": "nmstate.io/v1", "kind": "NMState", "metadata": {"name": "nmstate"}}
        )
    )
    return directory


@pytest.fixture
def make_coordinator(cluster, checker, clock, manifest_dir, tmp_path):
    def build(**kwargs) -> RolloutCoordinator:
        provisioner = NorthSouthProvisioner(
            manager=cluster,
            status=cluster,
            checker=checker,
            cert_machine_config=manifest_dir / "ipsec-nsconfig-machine-config.yaml",
            nmstate_manifest=manifest_dir / "nmstate.yaml",
            work_dir=tmp_path / "rendered",
        )
        pairs = TrialPairFactory(
            cluster, "ipsec-test", "network-tools", "agnhost", sleep=clock.sleep, clock=clock
        )
        return RolloutCoordinator(
            store=ModeStore(cluster, retry_wait=0),
            checker=checker,
            oracle=TrafficOracle(cluster),
            pairs=pairs,
            provisioner=provisioner,
            **kwargs,
        )

    return build


@pytest.fixture
def trial_pair(cluster: FakeCluster) -> TrialPair:
    """A pair already attached to pods living in the fake cluster."""
    refs = {}
    for node, ip, hostnet, prefix in (
        ("worker-a", "10.0.0.1", True, "cap-a-"),
        ("worker-a", "", False, "ping-a-"),
        ("worker-b", "10.0.0.2", True, "cap-b-"),
        ("worker-b", "", False, "ping-b-"),
    ):
        manifest = {
            "kind": "Pod",
            "metadata": {"generateName": prefix, "namespace": "ipsec-test"},
            "spec": {"nodeName": node, "hostNetwork": hostnet},
        }
        pod = cluster.create(manifest)
        refs[prefix] = PodRef(pod["metadata"]["name"], "ipsec-test", pod["status"]["podIP"])
    return TrialPair(
        src=NodeEndpoint("worker-a", "ens5", "10.0.0.1", refs["ping-a-"], refs["cap-a-"]),
        dst=NodeEndpoint("worker-b", "ens5", "10.0.0.2", refs["ping-b-"], refs["cap-b-"]),
    )
