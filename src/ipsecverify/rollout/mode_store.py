"""ModeStore — read and compare-and-swap the cluster-wide IPsec mode."""

from __future__ import annotations

import logging
from typing import Any

from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_fixed

from ipsecverify.cluster.base import NetworkConfigSource
from ipsecverify.errors import ConflictError, IpsecVerifyError
from ipsecverify.rollout.models import SecurityMode

logger = logging.getLogger(__name__)

DEFAULT_MAX_ATTEMPTS = 5
DEFAULT_RETRY_WAIT = 0.01


def _ovn_config(network: dict[str, Any]) -> dict[str, Any]:
    try:
        ovn = network["spec"]["defaultNetwork"]["ovnKubernetesConfig"]
    except (KeyError, TypeError):
        ovn = None
    if not isinstance(ovn, dict):
        raise IpsecVerifyError(
            "Cluster network config has no spec.defaultNetwork.ovnKubernetesConfig "
            "(IPsec requires OVN-Kubernetes)"
        )
    return ovn


def mode_from_network(network: dict[str, Any]) -> SecurityMode:
    """Interpret the ipsecConfig sub-record of a network operator object.

    No sub-record means IPsec was never configured. An empty mode inside an
    existing sub-record predates the mode field and meant full encryption;
    that reading depends on the cluster's deployment history.
    """
    ipsec = _ovn_config(network).get("ipsecConfig")
    if ipsec is None:
        return SecurityMode.DISABLED
    if not isinstance(ipsec, dict):
        raise IpsecVerifyError(f"Malformed ipsecConfig in cluster network config: {ipsec!r}")
    mode = ipsec.get("mode") or ""
    if not mode:
        return SecurityMode.FULL
    try:
        return SecurityMode.parse(mode)
    except ValueError as exc:
        raise IpsecVerifyError(f"Cluster reports an unrecognised IPsec mode: {mode!r}") from exc


class ModeStore:
    """Owning accessor for the single cluster-wide mode record."""

    def __init__(
        self,
        source: NetworkConfigSource,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        retry_wait: float = DEFAULT_RETRY_WAIT,
    ) -> None:
        self._source = source
        self._max_attempts = max_attempts
        self._retry_wait = retry_wait

    def get_mode(self) -> SecurityMode:
        return mode_from_network(self._source.get_network())

    def set_mode(self, desired: SecurityMode) -> bool:
        """Request `desired`; returns True if a write was made.

        Conflicting writers cause a fresh read and a retry of the whole
        read-modify-write. Running out of attempts re-raises ConflictError.
        """
        retrying = Retrying(
            retry=retry_if_exception_type(ConflictError),
            stop=stop_after_attempt(self._max_attempts),
            wait=wait_fixed(self._retry_wait),
            reraise=True,
        )
        return retrying(self._compare_and_swap, desired)

    def _compare_and_swap(self, desired: SecurityMode) -> bool:
        network = self._source.get_network()
        if mode_from_network(network) is desired:
            logger.debug("IPsec mode already %s, nothing to write", desired.value)
            return False

        ovn = _ovn_config(network)
        ipsec = ovn.get("ipsecConfig")
        if ipsec is None:
            ovn["ipsecConfig"] = {"mode": desired.value}
        else:
            ipsec["mode"] = desired.value

        version = (network.get("metadata") or {}).get("resourceVersion", "?")
        logger.info("Setting IPsec mode to %s (resourceVersion %s)", desired.value, version)
        try:
            self._source.replace_network(network)
        except ConflictError:
            logger.debug("Conflict writing IPsec mode at resourceVersion %s", version)
            raise
        return True
