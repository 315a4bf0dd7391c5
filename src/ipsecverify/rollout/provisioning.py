"""North-south provisioning — host-to-host IPsec outside the pod overlay.

External mode leaves pod traffic unencrypted; host tunnels are requested
per node through nmstate. The certificates those tunnels authenticate with
are shipped to the workers in a MachineConfig, so provisioning layers a
second, independent convergence wait on top of the mode rollout.
"""

from __future__ import annotations

import logging
from datetime import datetime
from pathlib import Path

from ipsecverify.cluster import manifests
from ipsecverify.cluster.base import ClusterStatusSource, ObjectManager
from ipsecverify.errors import ExpiredPrerequisite, IpsecVerifyError
from ipsecverify.rollout.convergence import FleetConvergenceChecker
from ipsecverify.rollout.models import ConvergenceDeadline
from ipsecverify.traffic.models import TrialPair

logger = logging.getLogger(__name__)

LEFT_POLICY_NAME = "left-node-ipsec-policy"
RIGHT_POLICY_NAME = "right-node-ipsec-policy"
LEFT_POLICY_FILE = "ipsec-left-node.yaml"
RIGHT_POLICY_FILE = "ipsec-right-node.yaml"
LEFT_CERT_NAME = "left_server"
RIGHT_CERT_NAME = "right_server"

POLICY_KIND = "NodeNetworkConfigurationPolicy"
POLICY_CONFIGURED_MARKER = "1/1 nodes successfully configured"
POLICY_DEADLINE = ConvergenceDeadline(interval=2.0, max_wait=30.0)

NMSTATE_NAMESPACE = "openshift-nmstate"
NMSTATE_HANDLER = "nmstate-handler"
HANDLER_DEADLINE = ConvergenceDeadline(interval=10.0, max_wait=600.0)


def check_certificate_validity(now: datetime, expiration: datetime) -> None:
    """Refuse to start when the bundled certificates have expired.

    Expired certificates surface later as a bare "no ESP traffic" trial
    failure, which hides the real cause.
    """
    if now >= expiration:
        raise ExpiredPrerequisite(
            f"North-south IPsec certificates expired on {expiration:%Y-%m-%d}; "
            "regenerate the certificate machine config"
        )


class NorthSouthProvisioner:
    """Creates and removes the certificate, handler and per-node policies."""

    def __init__(
        self,
        manager: ObjectManager,
        status: ClusterStatusSource,
        checker: FleetConvergenceChecker,
        cert_machine_config: Path,
        nmstate_manifest: Path,
        work_dir: Path,
    ) -> None:
        self._manager = manager
        self._status = status
        self._checker = checker
        self._cert_machine_config = cert_machine_config
        self._nmstate_manifest = nmstate_manifest
        self._work_dir = work_dir
        self._cert_name: str | None = None
        self._handler_deployed = False
        self._policy_files: list[Path] = []

    @property
    def has_resources(self) -> bool:
        return bool(self._cert_name or self._handler_deployed or self._policy_files)

    def provision_certificates(self) -> None:
        """Ship the node certificates and wait for the worker pool to take them."""
        name = manifests.load_manifest(self._cert_machine_config)["metadata"]["name"]
        logger.info("Creating certificate MachineConfig %s", name)
        self._manager.apply_file(self._cert_machine_config)
        self._cert_name = name
        self._checker.wait_for(
            f"worker pool with {name}",
            lambda: self._checker.worker_pools_ready(name, True),
        )

    def deploy_handler(self) -> None:
        """Install the nmstate handler that renders NodeNetworkConfigurationPolicies."""
        if not self._nmstate_manifest.is_file():
            raise IpsecVerifyError(f"nmstate manifest not found: {self._nmstate_manifest}")
        logger.info("Deploying nmstate handler from %s", self._nmstate_manifest)
        self._manager.apply_file(self._nmstate_manifest)
        self._handler_deployed = True
        self._checker.wait_for(f"{NMSTATE_HANDLER} ready", self._handler_ready, HANDLER_DEADLINE)

    def apply_policies(self, pair: TrialPair) -> None:
        """Request a transport tunnel on each node of the pair, pointing at the other."""
        sides = (
            (LEFT_POLICY_NAME, LEFT_POLICY_FILE, LEFT_CERT_NAME, pair.src, pair.dst),
            (RIGHT_POLICY_NAME, RIGHT_POLICY_FILE, RIGHT_CERT_NAME, pair.dst, pair.src),
        )
        for name, filename, cert, local, remote in sides:
            policy = manifests.node_ipsec_policy(
                name, local.node_name, local.node_ip, cert, remote.node_ip
            )
            path = manifests.write_manifest(policy, self._work_dir / filename)
            logger.info("Desired %s:\n%s", name, manifests.render(policy))
            self._manager.apply_file(path)
            self._policy_files.append(path)

    def wait_for_policies(self) -> None:
        self._checker.wait_for(
            "north-south policies configured", self.policies_configured, POLICY_DEADLINE
        )

    def policies_configured(self) -> bool:
        for name in (LEFT_POLICY_NAME, RIGHT_POLICY_NAME):
            out = self._manager.get_yaml(POLICY_KIND, name)
            logger.debug("Rendered %s:\n%s", name, out)
            if POLICY_CONFIGURED_MARKER not in out:
                return False
        return True

    def teardown(self) -> list[Exception]:
        """Remove whatever was provisioned, newest first; return the failures."""
        failures: list[Exception] = []

        for path in reversed(self._policy_files):
            try:
                self._manager.delete_file(path)
            except IpsecVerifyError as exc:
                logger.error("Failed to remove policy %s: %s", path.name, exc)
                failures.append(exc)
        self._policy_files.clear()

        if self._handler_deployed:
            try:
                self._manager.delete_file(self._nmstate_manifest)
                self._handler_deployed = False
            except IpsecVerifyError as exc:
                logger.error("Failed to undeploy nmstate handler: %s", exc)
                failures.append(exc)

        if self._cert_name:
            name = self._cert_name
            try:
                self._manager.delete("machineconfig", name)
                self._checker.wait_for(
                    f"worker pool without {name}",
                    lambda: self._checker.worker_pools_ready(name, False),
                )
                self._cert_name = None
            except IpsecVerifyError as exc:
                logger.error("Failed to remove certificate MachineConfig %s: %s", name, exc)
                failures.append(exc)

        return failures

    def _handler_ready(self) -> bool:
        ds = self._status.get_daemonset(NMSTATE_NAMESPACE, NMSTATE_HANDLER)
        if ds is None:
            return False
        status = ds.get("status") or {}
        desired = status.get("desiredNumberScheduled", 0)
        return desired > 0 and status.get("numberReady", 0) == desired
