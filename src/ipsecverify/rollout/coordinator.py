"""Rollout coordinator — drives one scenario from request to verified, then restores.

    Idle -> ModeRequested -> Converging -> ModeConverged
         -> [CertProvisioned -> PolicyApplied] -> Verified -> Idle

Teardown runs on every exit path: the pre-scenario mode is written back and
waited on, and any north-south resources are removed. A teardown failure
never replaces the error that ended the scenario.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone

from ipsecverify.cluster.client import OcClient
from ipsecverify.config import DEFAULT_CERT_EXPIRATION, IpsecVerifyConfig
from ipsecverify.errors import IllegalTransition, IpsecVerifyError, TeardownError
from ipsecverify.rollout.convergence import FleetConvergenceChecker
from ipsecverify.rollout.mode_store import ModeStore
from ipsecverify.rollout.models import ALLOWED_TRANSITIONS, ScenarioState, SecurityMode
from ipsecverify.rollout.provisioning import NorthSouthProvisioner, check_certificate_validity
from ipsecverify.traffic.endpoints import TrialPairFactory
from ipsecverify.traffic.models import TrialPair
from ipsecverify.traffic.oracle import TrafficOracle

logger = logging.getLogger(__name__)

CERT_MACHINE_CONFIG_FILE = "ipsec-nsconfig-machine-config.yaml"
NMSTATE_MANIFEST_FILE = "nmstate.yaml"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class ScenarioResult:
    """What a finished scenario did."""

    target: SecurityMode
    restored_to: SecurityMode
    states: list[ScenarioState] = field(default_factory=list)
    nodes: tuple[str, str] = ("", "")


class RolloutCoordinator:
    """Sequences ModeStore, FleetConvergenceChecker and TrafficOracle."""

    def __init__(
        self,
        store: ModeStore,
        checker: FleetConvergenceChecker,
        oracle: TrafficOracle,
        pairs: TrialPairFactory,
        provisioner: NorthSouthProvisioner | None = None,
        *,
        keep_on_failure: bool = False,
        cert_expiration: datetime = DEFAULT_CERT_EXPIRATION,
        now: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._store = store
        self._checker = checker
        self._oracle = oracle
        self._pairs = pairs
        self._provisioner = provisioner
        self._keep_on_failure = keep_on_failure
        self._cert_expiration = cert_expiration
        self._now = now
        self._state = ScenarioState.IDLE
        self._history: list[ScenarioState] = [ScenarioState.IDLE]
        self._saved_mode: SecurityMode | None = None
        self._pair: TrialPair | None = None

    @classmethod
    def from_config(
        cls, config: IpsecVerifyConfig, client: OcClient | None = None
    ) -> RolloutCoordinator:
        """Wire every collaborator against one oc client."""
        client = client or OcClient(
            binary=config.oc_binary,
            kubeconfig=config.kubeconfig,
            timeout=config.command_timeout,
        )
        checker = FleetConvergenceChecker(client, config.deadline)
        provisioner = NorthSouthProvisioner(
            manager=client,
            status=client,
            checker=checker,
            cert_machine_config=config.manifest_dir / CERT_MACHINE_CONFIG_FILE,
            nmstate_manifest=config.manifest_dir / NMSTATE_MANIFEST_FILE,
            work_dir=config.work_dir,
        )
        return cls(
            store=ModeStore(client),
            checker=checker,
            oracle=TrafficOracle(client, config.capture_timeout, config.ping_count),
            pairs=TrialPairFactory(
                client, config.namespace, config.network_tools_image, config.exec_image
            ),
            provisioner=provisioner,
            keep_on_failure=config.keep_on_failure,
            cert_expiration=config.cert_expiration,
        )

    @property
    def state(self) -> ScenarioState:
        return self._state

    @property
    def history(self) -> list[ScenarioState]:
        return list(self._history)

    def transition(self, new: ScenarioState) -> None:
        if new not in ALLOWED_TRANSITIONS[self._state]:
            raise IllegalTransition(self._state.value, new.value)
        logger.info("Scenario: %s -> %s", self._state.value, new.value)
        self._state = new
        self._history.append(new)

    # -- steps ------------------------------------------------------------------

    def request_mode(self, mode: SecurityMode) -> None:
        self.transition(ScenarioState.MODE_REQUESTED)
        if not self._store.set_mode(mode):
            logger.info("IPsec mode already %s", mode.value)

    def await_convergence(self, mode: SecurityMode) -> None:
        """Block until the fleet reports `mode`; a timeout ends the scenario."""
        self.transition(ScenarioState.CONVERGING)
        self._checker.wait_for_mode(mode)
        self.transition(ScenarioState.MODE_CONVERGED)

    def verify_traffic(self, mode: SecurityMode) -> None:
        """Check pod traffic on fresh trial pods carries the signature for `mode`."""
        pair = self._require_pair()
        with self._pairs.attached(pair, keep_on_failure=self._keep_on_failure):
            self._oracle.verify_mode(pair, mode)

    def verify_north_south(self) -> None:
        pair = self._require_pair()
        with self._pairs.attached(pair, keep_on_failure=self._keep_on_failure):
            self._oracle.verify_encrypted(pair)

    # -- scenarios ----------------------------------------------------------------

    def run_mode_scenario(self, mode: SecurityMode) -> ScenarioResult:
        """Switch the cluster to `mode`, prove pod traffic matches, then restore."""
        self._require_idle()
        error: BaseException | None = None
        try:
            saved = self._begin()
            self.verify_traffic(saved)
            self.request_mode(mode)
            self.await_convergence(mode)
            self.verify_traffic(mode)
            self.transition(ScenarioState.VERIFIED)
            return self._result(mode)
        except BaseException as exc:
            error = exc
            raise
        finally:
            self.teardown(error)

    def run_north_south_scenario(self) -> ScenarioResult:
        """External mode plus host-to-host tunnels; node traffic must become ESP."""
        if self._provisioner is None:
            raise IpsecVerifyError("North-south scenario needs a provisioner")
        self._require_idle()
        check_certificate_validity(self._now(), self._cert_expiration)

        error: BaseException | None = None
        try:
            saved = self._begin()
            self.verify_traffic(saved)

            self.request_mode(SecurityMode.EXTERNAL)
            self.await_convergence(SecurityMode.EXTERNAL)
            self.verify_traffic(SecurityMode.EXTERNAL)

            self._provisioner.provision_certificates()
            self.transition(ScenarioState.CERT_PROVISIONED)

            self._provisioner.deploy_handler()
            self._provisioner.apply_policies(self._require_pair())
            self._provisioner.wait_for_policies()
            self.transition(ScenarioState.POLICY_APPLIED)

            self.verify_north_south()
            self.transition(ScenarioState.VERIFIED)
            return self._result(SecurityMode.EXTERNAL)
        except BaseException as exc:
            error = exc
            raise
        finally:
            self.teardown(error)

    def teardown(self, original: BaseException | None = None) -> None:
        """Restore the saved mode and remove provisioned resources.

        Failures are logged; they are raised as TeardownError only when the
        scenario itself succeeded.
        """
        failures: list[Exception] = []

        if self._saved_mode is not None:
            saved = self._saved_mode
            logger.info("Restoring IPsec mode %s", saved.value)
            try:
                self._store.set_mode(saved)
                self._checker.wait_for_mode(saved)
            except Exception as exc:
                logger.error("Failed to restore IPsec mode %s: %s", saved.value, exc)
                failures.append(exc)

        if self._provisioner is not None and self._provisioner.has_resources:
            failures.extend(self._provisioner.teardown())

        if self._state is not ScenarioState.IDLE:
            logger.info("Scenario: %s -> %s", self._state.value, ScenarioState.IDLE.value)
            self._state = ScenarioState.IDLE
            self._history.append(ScenarioState.IDLE)
        self._saved_mode = None
        self._pair = None

        if not failures:
            return
        if original is None:
            raise TeardownError(failures)
        for exc in failures:
            logger.error("Teardown failure after scenario error (%s): %s", original, exc)

    # -- helpers ----------------------------------------------------------------

    def _require_idle(self) -> None:
        if self._state is not ScenarioState.IDLE:
            raise IllegalTransition(self._state.value, "scenario start")

    def _begin(self) -> SecurityMode:
        self._history = [ScenarioState.IDLE]
        saved = self._store.get_mode()
        self._saved_mode = saved
        logger.info("Pre-scenario IPsec mode: %s", saved.value)
        self._pairs.prepare_namespace()
        self._pair = self._pairs.select_nodes()
        return saved

    def _require_pair(self) -> TrialPair:
        if self._pair is None:
            raise IpsecVerifyError("No trial nodes selected — start a scenario first")
        return self._pair

    def _result(self, target: SecurityMode) -> ScenarioResult:
        pair = self._require_pair()
        if self._saved_mode is None:
            raise IpsecVerifyError("No pre-scenario mode recorded")
        return ScenarioResult(
            target=target,
            restored_to=self._saved_mode,
            states=self.history,
            nodes=(pair.src.node_name, pair.dst.node_name),
        )
