"""Manifest builders and YAML helpers for the objects a trial creates."""

from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml

from ipsecverify.errors import ConfigError

HOSTNAME_LABEL = "kubernetes.io/hostname"
IPSEC_INTERFACE_NAME = "hosta_conn"


def privileged_namespace(name: str) -> dict[str, Any]:
    return {
        "apiVersion": "v1",
        "kind": "Namespace",
        "metadata": {
            "name": name,
            "labels": {
                "pod-security.kubernetes.io/enforce": "privileged",
                "pod-security.kubernetes.io/audit": "privileged",
                "pod-security.kubernetes.io/warn": "privileged",
                "security.openshift.io/scc.podSecurityLabelSync": "false",
            },
        },
    }


def host_capture_pod(node: str, image: str, namespace: str, prefix: str) -> dict[str, Any]:
    """Privileged host-networked pod that can run tcpdump on the node's NICs."""
    return {
        "apiVersion": "v1",
        "kind": "Pod",
        "metadata": {"generateName": prefix, "namespace": namespace},
        "spec": {
            "nodeName": node,
            "hostNetwork": True,
            "restartPolicy": "Never",
            "terminationGracePeriodSeconds": 0,
            "containers": [
                {
                    "name": "tcpdump",
                    "image": image,
                    "command": ["/bin/bash", "-c", "sleep infinity"],
                    "securityContext": {"privileged": True},
                }
            ],
            "tolerations": [{"operator": "Exists"}],
        },
    }


def exec_pod(node: str, image: str, namespace: str, prefix: str) -> dict[str, Any]:
    """Regular overlay pod used as the ping source/target."""
    return {
        "apiVersion": "v1",
        "kind": "Pod",
        "metadata": {"generateName": prefix, "namespace": namespace},
        "spec": {
            "nodeName": node,
            "restartPolicy": "Never",
            "terminationGracePeriodSeconds": 0,
            "containers": [
                {
                    "name": "agnhost",
                    "image": image,
                    "args": ["pause"],
                }
            ],
        },
    }


def node_ipsec_policy(
    name: str,
    hostname: str,
    local_ip: str,
    cert_name: str,
    remote_ip: str,
) -> dict[str, Any]:
    """NodeNetworkConfigurationPolicy requesting a libreswan transport tunnel.

    The tunnel is host-to-host: `local_ip` on the selected node to `remote_ip`,
    authenticated with the certificate named `cert_name` from the node's NSS db.
    """
    return {
        "kind": "NodeNetworkConfigurationPolicy",
        "apiVersion": "nmstate.io/v1",
        "metadata": {"name": name},
        "spec": {
            "nodeSelector": {HOSTNAME_LABEL: hostname},
            "desiredState": {
                "interfaces": [
                    {
                        "name": IPSEC_INTERFACE_NAME,
                        "type": "ipsec",
                        "ipv4": {"enabled": True, "dhcp": True},
                        "libreswan": {
                            "leftrsasigkey": "%cert",
                            "left": local_ip,
                            "leftid": "%fromcert",
                            "leftcert": cert_name,
                            "leftmodecfgclient": False,
                            "right": remote_ip,
                            "rightrsasigkey": "%cert",
                            "rightid": "%fromcert",
                            "rightsubnet": f"{remote_ip}/32",
                            "ike": "aes_gcm256-sha2_256",
                            "esp": "aes_gcm256",
                            "ikev2": "insist",
                            "type": "transport",
                        },
                    }
                ]
            },
        },
    }


def render(manifest: dict[str, Any]) -> str:
    return yaml.safe_dump(manifest, sort_keys=False)


def write_manifest(manifest: dict[str, Any], path: Path) -> Path:
    """Write a manifest to disk so it can be applied and later deleted by file."""
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(render(manifest), encoding="utf-8")
    return path


def load_manifest(path: str | Path) -> dict[str, Any]:
    """Load a single-document YAML manifest and check it names an object."""
    path = Path(path)
    if not path.is_file():
        raise ConfigError(f"Manifest not found: {path}")
    data = yaml.safe_load(path.read_text(encoding="utf-8"))
    if not isinstance(data, dict):
        raise ConfigError(f"Manifest YAML must be a mapping: {path}")
    name = (data.get("metadata") or {}).get("name")
    if not name:
        raise ConfigError(f"Manifest has no metadata.name: {path}")
    return data
