"""Traffic oracle — prove which encapsulation is on the wire between two nodes.

A trial starts a one-packet tcpdump on each node's primary interface, filtered
for a single encapsulation signature in the egress direction, while the
source pod pings the destination pod. ESP and Geneve are mutually exclusive
for pod traffic, so every positive trial is paired with a negative control
for the other signature.
"""

from __future__ import annotations

import logging

from ipsecverify.cluster.base import PodExecutor
from ipsecverify.errors import IpsecVerifyError, TrialFailure
from ipsecverify.rollout.models import SecurityMode
from ipsecverify.traffic.models import CaptureFilter, NodeEndpoint, Signature, TrialPair
from ipsecverify.traffic.tasks import run_together

logger = logging.getLogger(__name__)

SIDE_SOURCE = "source"
SIDE_DESTINATION = "destination"
SIDE_PING = "ping"
SIDE_NEGATIVE_CONTROL = "negative-control"

# Extra time for oc exec itself on top of the in-pod timeout.
_EXEC_SLACK = 30.0


def build_filters(pair: TrialPair, expect_encrypted: bool) -> tuple[CaptureFilter, CaptureFilter]:
    """Egress filters for (source node, destination node)."""
    signature = Signature.for_encrypted(expect_encrypted)
    return (
        CaptureFilter(signature, pair.src.node_ip, pair.dst.node_ip),
        CaptureFilter(signature, pair.dst.node_ip, pair.src.node_ip),
    )


class TrafficOracle:
    """Runs ping-and-capture trials on an attached TrialPair."""

    def __init__(
        self,
        executor: PodExecutor,
        capture_timeout: int = 10,
        ping_count: int = 3,
    ) -> None:
        self._executor = executor
        self._capture_timeout = capture_timeout
        self._ping_count = ping_count

    def run_trial(self, pair: TrialPair, expect_encrypted: bool) -> None:
        """Raise TrialFailure unless both nodes saw the expected signature."""
        for endpoint in pair.endpoints:
            if not endpoint.is_attached:
                raise IpsecVerifyError(f"Endpoint {endpoint.node_name} has no trial pods")

        src_filter, dst_filter = build_filters(pair, expect_encrypted)
        signature = src_filter.signature
        logger.debug(
            "Trial %s: src filter '%s', dst filter '%s'",
            signature.value,
            src_filter.expression(),
            dst_filter.expression(),
        )

        errors = run_together(
            {
                SIDE_SOURCE: lambda: self._capture(pair.src, src_filter),
                SIDE_DESTINATION: lambda: self._capture(pair.dst, dst_filter),
                SIDE_PING: lambda: self._ping(pair.src, pair.dst),
            }
        )
        if not errors:
            logger.info(
                "Observed %s traffic between %s and %s",
                signature.value,
                pair.src.node_name,
                pair.dst.node_name,
            )
            return

        nodes = {SIDE_SOURCE: pair.src.node_name, SIDE_DESTINATION: pair.dst.node_name}
        details = []
        for side, exc in errors.items():
            where = f" on {nodes[side]}" if side in nodes else ""
            details.append(f"{side}{where}: {exc}")
        raise TrialFailure(
            f"Failed to detect {signature.value} traffic between "
            f"{pair.src.node_name} ({pair.src.node_ip}) and "
            f"{pair.dst.node_name} ({pair.dst.node_ip}): " + "; ".join(details),
            failed_sides=tuple(errors),
            signature=signature.value,
        )

    def verify_signature(self, pair: TrialPair, signature: Signature) -> None:
        """Positive trial for `signature`, then a negative control for the other one."""
        self.run_trial(pair, signature is Signature.ESP)

        unexpected = signature.opposite
        try:
            self.run_trial(pair, unexpected is Signature.ESP)
        except TrialFailure:
            logger.debug("Negative control held: no %s traffic", unexpected.value)
            return
        raise TrialFailure(
            f"Unexpected {unexpected.value} traffic between {pair.src.node_name} and "
            f"{pair.dst.node_name} while expecting {signature.value} only",
            failed_sides=(SIDE_NEGATIVE_CONTROL,),
            signature=unexpected.value,
        )

    def verify_mode(self, pair: TrialPair, mode: SecurityMode) -> None:
        """Pod traffic is ESP only in Full mode; External looks like Disabled."""
        self.verify_signature(pair, Signature.for_encrypted(mode.encrypts_pod_traffic))

    def verify_encrypted(self, pair: TrialPair) -> None:
        self.verify_signature(pair, Signature.ESP)

    def _capture(self, endpoint: NodeEndpoint, capture_filter: CaptureFilter) -> None:
        if endpoint.capture_pod is None:
            raise IpsecVerifyError(f"Endpoint {endpoint.node_name} has no capture pod")
        command = [
            "timeout",
            str(self._capture_timeout),
            "tcpdump",
            "-i",
            endpoint.interface,
            "-c",
            "1",
            "-v",
            "--direction=out",
            capture_filter.expression(),
        ]
        out = self._executor.exec_in_pod(
            endpoint.capture_pod, command, timeout=self._capture_timeout + _EXEC_SLACK
        )
        logger.debug("Capture on %s:\n%s", endpoint.node_name, out)

    def _ping(self, src: NodeEndpoint, dst: NodeEndpoint) -> None:
        if src.ping_pod is None or dst.ping_pod is None:
            raise IpsecVerifyError(
                f"Ping needs pods on both {src.node_name} and {dst.node_name}"
            )
        self._executor.exec_in_pod(
            src.ping_pod,
            ["ping", "-c", str(self._ping_count), dst.ping_pod.ip],
            timeout=self._ping_count + _EXEC_SLACK,
        )
