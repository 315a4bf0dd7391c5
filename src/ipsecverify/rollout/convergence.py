"""Fleet convergence — composable readiness probes for an IPsec mode rollout.

Each probe is a plain `() -> bool` callable that can be handed to
`poll_until`. The structural check for a mode always runs first; cluster
operator health is only consulted once structure reports ready, since
operators flap while nodes are still rebooting.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from typing import Any

from ipsecverify.cluster.base import ClusterStatusSource
from ipsecverify.errors import ConvergenceTimeout
from ipsecverify.rollout.models import ConvergenceDeadline, SecurityMode
from ipsecverify.rollout.poller import Probe, poll_until

logger = logging.getLogger(__name__)

IPSEC_NAMESPACE = "openshift-ovn-kubernetes"
IPSEC_DAEMONSET = "ovn-ipsec-host"

# MachineConfig carrying the libreswan/NSS extensions, per pool.
IPSEC_EXTENSIONS = {
    "master": "80-ipsec-master-extensions",
    "worker": "80-ipsec-worker-extensions",
}

Stage = tuple[str, Probe]


def _condition_is(obj: dict[str, Any], cond_type: str, status: str) -> bool:
    for cond in (obj.get("status") or {}).get("conditions") or []:
        if cond.get("type") == cond_type:
            return cond.get("status") == status
    return False


def pool_rolled_out(pool: dict[str, Any]) -> bool:
    """No node in the pool is mid-update and none is degraded."""
    status = pool.get("status") or {}
    count = status.get("machineCount", 0)
    if status.get("updatedMachineCount") != count:
        return False
    if status.get("readyMachineCount") != count:
        return False
    if status.get("degradedMachineCount", 0) != 0:
        return False
    return not _condition_is(pool, "Updating", "True")


def pool_has_config(pool: dict[str, Any], config_name: str) -> bool:
    """Whether the pool's rendered configuration includes a MachineConfig."""
    sources = ((pool.get("status") or {}).get("configuration") or {}).get("source") or []
    return any(src.get("name") == config_name for src in sources)


def operator_healthy(operator: dict[str, Any]) -> bool:
    return (
        _condition_is(operator, "Available", "True")
        and _condition_is(operator, "Progressing", "False")
        and _condition_is(operator, "Degraded", "False")
    )


class FleetConvergenceChecker:
    """Answers "has the fleet converged on mode M", one probe at a time."""

    def __init__(
        self,
        source: ClusterStatusSource,
        deadline: ConvergenceDeadline | None = None,
        *,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._source = source
        self._deadline = deadline or ConvergenceDeadline()
        self._sleep = sleep
        self._clock = clock

    @property
    def deadline(self) -> ConvergenceDeadline:
        return self._deadline

    # -- individual probes ----------------------------------------------------

    def operators_ready(self) -> bool:
        unhealthy = [
            (op.get("metadata") or {}).get("name", "?")
            for op in self._source.list_cluster_operators()
            if not operator_healthy(op)
        ]
        if unhealthy:
            logger.debug("Cluster operators not ready: %s", ", ".join(unhealthy))
            return False
        return True

    def machine_config_probe(self, mode: SecurityMode) -> bool:
        """IPsec extensions rolled out (or removed) on master and worker pools."""
        pools = {
            (p.get("metadata") or {}).get("name"): p
            for p in self._source.list_machine_config_pools()
        }
        for pool_name, extension in IPSEC_EXTENSIONS.items():
            pool = pools.get(pool_name)
            if pool is None:
                logger.debug("MachineConfigPool %s not found yet", pool_name)
                return False
            if pool_has_config(pool, extension) != mode.installs_ipsec:
                logger.debug(
                    "Pool %s has not %s %s yet",
                    pool_name,
                    "picked up" if mode.installs_ipsec else "dropped",
                    extension,
                )
                return False
            if not pool_rolled_out(pool):
                logger.debug("Pool %s still rolling out", pool_name)
                return False
        return self.operators_ready()

    def workload_presence_probe(self) -> bool:
        """ovn-ipsec-host has a ready pod on every node it should."""
        ds = self._source.get_daemonset(IPSEC_NAMESPACE, IPSEC_DAEMONSET)
        if ds is None:
            return False
        status = ds.get("status") or {}
        desired = status.get("desiredNumberScheduled", 0)
        ready = status.get("numberReady", 0)
        if desired != ready:
            logger.debug("%s: %d/%d ready", IPSEC_DAEMONSET, ready, desired)
            return False
        return self.operators_ready()

    def workload_absence_probe(self) -> bool:
        """ovn-ipsec-host is gone; "not found" is the success signal here."""
        if self._source.get_daemonset(IPSEC_NAMESPACE, IPSEC_DAEMONSET) is not None:
            logger.debug("%s still present", IPSEC_DAEMONSET)
            return False
        return self.operators_ready()

    def worker_pools_ready(self, config_name: str, present: bool) -> bool:
        """Worker pool finished rolling out with `config_name` applied (or removed)."""
        for pool in self._source.list_machine_config_pools():
            if (pool.get("metadata") or {}).get("name") != "worker":
                continue
            return pool_has_config(pool, config_name) == present and pool_rolled_out(pool)
        return False

    # -- composition ----------------------------------------------------------

    def stages_for(self, mode: SecurityMode) -> list[Stage]:
        stages: list[Stage] = [
            (f"machine-config rollout ({mode.value})", lambda: self.machine_config_probe(mode)),
        ]
        if mode is SecurityMode.FULL:
            stages.append((f"{IPSEC_DAEMONSET} ready", self.workload_presence_probe))
        elif mode is SecurityMode.DISABLED:
            stages.append((f"{IPSEC_DAEMONSET} removed", self.workload_absence_probe))
        return stages

    def is_converged(self, mode: SecurityMode) -> bool:
        """Evaluate every stage once, without waiting."""
        return all(probe() for _, probe in self.stages_for(mode))

    def wait_for(self, stage: str, probe: Probe, deadline: ConvergenceDeadline | None = None) -> None:
        """Poll one probe; raise ConvergenceTimeout if it never reports ready."""
        deadline = deadline or self._deadline
        logger.info("Waiting for %s (every %gs, up to %gs)", stage, deadline.interval, deadline.max_wait)
        converged = poll_until(
            deadline.interval,
            deadline.max_wait,
            probe,
            sleep=self._sleep,
            clock=self._clock,
        )
        if not converged:
            raise ConvergenceTimeout(stage, deadline.max_wait)
        logger.info("%s converged", stage)

    def wait_for_mode(self, mode: SecurityMode) -> None:
        for stage, probe in self.stages_for(mode):
            self.wait_for(stage, probe)
