"""Cluster access — the oc wrapper and the protocols the engine consumes."""
