"""Trial data models — endpoints, pairs, and capture filters."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field

GENEVE_PORT = 6081


class Signature(enum.Enum):
    """Encapsulation seen on a node's primary interface for pod traffic."""

    ESP = "esp"
    GENEVE = "geneve"

    @property
    def bpf(self) -> str:
        if self is Signature.ESP:
            return "esp"
        return f"udp port {GENEVE_PORT}"

    @property
    def opposite(self) -> Signature:
        return Signature.GENEVE if self is Signature.ESP else Signature.ESP

    @classmethod
    def for_encrypted(cls, encrypted: bool) -> Signature:
        return cls.ESP if encrypted else cls.GENEVE


@dataclass(frozen=True)
class PodRef:
    """A pod created for a trial."""

    name: str
    namespace: str
    ip: str = ""


@dataclass
class NodeEndpoint:
    """One side of a trial: a node plus the pods attached to it."""

    node_name: str
    interface: str = ""
    node_ip: str = ""
    ping_pod: PodRef | None = None
    capture_pod: PodRef | None = None

    @property
    def is_attached(self) -> bool:
        return self.ping_pod is not None and self.capture_pod is not None

    def detach(self) -> None:
        self.ping_pod = None
        self.capture_pod = None


@dataclass
class TrialPair:
    """Source and destination endpoints used for one verification."""

    src: NodeEndpoint
    dst: NodeEndpoint
    leaked: bool = field(default=False, compare=False)

    @property
    def endpoints(self) -> tuple[NodeEndpoint, NodeEndpoint]:
        return (self.src, self.dst)


@dataclass(frozen=True)
class CaptureFilter:
    """Egress-only packet selector for one node."""

    signature: Signature
    src_ip: str
    dst_ip: str

    def expression(self) -> str:
        """Render as a tcpdump/BPF expression."""
        return f"{self.signature.bpf} and src {self.src_ip} and dst {self.dst_ip}"
