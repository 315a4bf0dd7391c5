"""ipsecverify — IPsec mode rollout and wire-level verification."""

__version__ = "0.1.0"
