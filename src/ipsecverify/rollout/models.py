"""Rollout data models — security modes, deadlines, and scenario states."""

from __future__ import annotations

import enum
from dataclasses import dataclass


class SecurityMode(enum.Enum):
    """Cluster-wide IPsec mode, as spelled by the network operator."""

    DISABLED = "Disabled"
    EXTERNAL = "External"
    FULL = "Full"

    @property
    def encrypts_pod_traffic(self) -> bool:
        """Whether inter-node pod traffic is ESP on the wire."""
        return self is SecurityMode.FULL

    @property
    def installs_ipsec(self) -> bool:
        """Whether the IPsec machine config extensions are rolled out."""
        return self is not SecurityMode.DISABLED

    @classmethod
    def parse(cls, value: str) -> SecurityMode:
        for mode in cls:
            if mode.value.lower() == value.strip().lower():
                return mode
        raise ValueError(f"Unknown IPsec mode: {value!r}")


@dataclass(frozen=True)
class ConvergenceDeadline:
    """Polling cadence for fleet-wide rollouts (node reboots are slow)."""

    interval: float = 60.0
    max_wait: float = 1200.0


class ScenarioState(enum.Enum):
    """Lifecycle state of a rollout scenario."""

    IDLE = "idle"
    MODE_REQUESTED = "mode-requested"
    CONVERGING = "converging"
    MODE_CONVERGED = "mode-converged"
    CERT_PROVISIONED = "cert-provisioned"
    POLICY_APPLIED = "policy-applied"
    VERIFIED = "verified"


# Teardown may return to IDLE from anywhere; that edge is handled separately.
ALLOWED_TRANSITIONS: dict[ScenarioState, frozenset[ScenarioState]] = {
    ScenarioState.IDLE: frozenset({ScenarioState.MODE_REQUESTED}),
    ScenarioState.MODE_REQUESTED: frozenset({ScenarioState.CONVERGING}),
    ScenarioState.CONVERGING: frozenset({ScenarioState.MODE_CONVERGED}),
    ScenarioState.MODE_CONVERGED: frozenset(
        {ScenarioState.CERT_PROVISIONED, ScenarioState.VERIFIED}
    ),
    ScenarioState.CERT_PROVISIONED: frozenset({ScenarioState.POLICY_APPLIED}),
    ScenarioState.POLICY_APPLIED: frozenset({ScenarioState.VERIFIED}),
    ScenarioState.VERIFIED: frozenset({ScenarioState.IDLE}),
}
