"""
Shared builders for Kubernetes objects and test certificates.

Objects are JSON-shaped dicts, as returned by ClusterClient after
sanitize_for_serialization.
"""

import base64
import functools
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import NameOID

from gkediag.config import DiagnosticConfig

# Whole seconds: X.509 validity has second precision
NOW = datetime(2024, 6, 1, 12, 0, 0, tzinfo=timezone.utc)


def make_container(
    name: str = "app",
    image: str = "gcr.io/my-project/web-service:1.4.2",
    liveness: Optional[Dict[str, Any]] = None,
    readiness: Optional[Dict[str, Any]] = None,
    pre_stop: bool = False,
    memory_request: Optional[str] = "128Mi",
) -> Dict[str, Any]:
    container: Dict[str, Any] = {"name": name, "image": image}
    if liveness is not None:
        container["livenessProbe"] = liveness
    if readiness is not None:
        container["readinessProbe"] = readiness
    if pre_stop:
        container["lifecycle"] = {"preStop": {"exec": {"command": ["sleep", "5"]}}}
    if memory_request is not None:
        container["resources"] = {"requests": {"memory": memory_request}}
    return container


def make_status(
    name: str = "app",
    restarts: int = 0,
    exit_code: Optional[int] = None,
    reason: Optional[str] = None,
    finished_at: str = "2024-06-01T10:00:00Z",
    image: Optional[str] = None,
) -> Dict[str, Any]:
    status: Dict[str, Any] = {"name": name, "restartCount": restarts}
    if image:
        status["image"] = image
    if exit_code is not None:
        terminated = {"exitCode": exit_code, "finishedAt": finished_at}
        if reason:
            terminated["reason"] = reason
        status["lastState"] = {"terminated": terminated}
    return status


def make_pod(
    name: str = "web-1",
    namespace: str = "default",
    phase: str = "Running",
    containers: Optional[List[Dict[str, Any]]] = None,
    statuses: Optional[List[Dict[str, Any]]] = None,
    grace: Optional[int] = None,
    labels: Optional[Dict[str, str]] = None,
    node: str = "node-1",
    reason: Optional[str] = None,
    message: Optional[str] = None,
    priority_class: Optional[str] = None,
) -> Dict[str, Any]:
    spec: Dict[str, Any] = {
        "containers": containers if containers is not None else [make_container()],
        "nodeName": node,
    }
    if grace is not None:
        spec["terminationGracePeriodSeconds"] = grace
    if priority_class:
        spec["priorityClassName"] = priority_class

    status: Dict[str, Any] = {"phase": phase, "containerStatuses": statuses or []}
    if reason:
        status["reason"] = reason
    if message:
        status["message"] = message

    return {
        "metadata": {"name": name, "namespace": namespace, "labels": labels or {"app": "web"}},
        "spec": spec,
        "status": status,
    }


def make_event(
    pod: str,
    message: str,
    reason: str = "Unhealthy",
    namespace: str = "default",
    container: Optional[str] = None,
    count: int = 1,
    timestamp: str = "2024-06-01T11:00:00Z",
) -> Dict[str, Any]:
    involved: Dict[str, Any] = {"kind": "Pod", "name": pod, "namespace": namespace}
    if container:
        involved["fieldPath"] = f"spec.containers{{{container}}}"
    return {
        "metadata": {"name": f"{pod}.event", "namespace": namespace},
        "involvedObject": involved,
        "reason": reason,
        "message": message,
        "count": count,
        "lastTimestamp": timestamp,
    }


def make_node(name: str = "node-1", pressure: Optional[List[str]] = None) -> Dict[str, Any]:
    conditions = [{"type": "Ready", "status": "True"}]
    for condition in ("MemoryPressure", "DiskPressure", "PIDPressure"):
        active = condition in (pressure or [])
        conditions.append({
            "type": condition,
            "status": "True" if active else "False",
            "reason": f"Kubelet Has {condition}" if active else "KubeletHasSufficient",
            "message": f"kubelet has {condition.lower()}" if active else "ok",
        })
    return {"metadata": {"name": name}, "status": {"conditions": conditions}}


def make_pdb(name: str = "web-pdb", namespace: str = "default", match_labels=None) -> Dict[str, Any]:
    return {
        "metadata": {"name": name, "namespace": namespace},
        "spec": {"selector": {"matchLabels": match_labels or {"app": "web"}}},
    }


@functools.lru_cache(maxsize=None)
def rsa_key(seed: int = 0):
    """Cached RSA keys; ``seed`` only selects a distinct key."""
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


def make_certificate(
    days: int,
    now: datetime = NOW,
    common_name: str = "example.com",
    issuer_name: Optional[str] = None,
    key=None,
    der: bool = False,
) -> bytes:
    key = key or rsa_key()
    subject = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])
    issuer = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, issuer_name or common_name)])
    cert = (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(issuer)
        .public_key(key.public_key())
        .serial_number(1000)
        .not_valid_before(now - timedelta(days=30))
        .not_valid_after(now + timedelta(days=days))
        .sign(key, hashes.SHA256())
    )
    encoding = serialization.Encoding.DER if der else serialization.Encoding.PEM
    return cert.public_bytes(encoding)


def key_pem(key) -> bytes:
    return key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.TraditionalOpenSSL,
        serialization.NoEncryption(),
    )


def b64(data: bytes) -> str:
    return base64.b64encode(data).decode()


def make_secret(
    name: str = "web-tls",
    namespace: str = "default",
    data: Optional[Dict[str, bytes]] = None,
    secret_type: str = "kubernetes.io/tls",
) -> Dict[str, Any]:
    return {
        "metadata": {"name": name, "namespace": namespace},
        "type": secret_type,
        "data": {k: b64(v) for k, v in (data or {}).items()},
    }


def make_tls_secret(days: int, name: str = "web-tls", namespace: str = "default", **kwargs) -> Dict[str, Any]:
    return make_secret(name, namespace, {"tls.crt": make_certificate(days, **kwargs), "tls.key": key_pem(rsa_key())})


def make_deployment(name: str, namespace: str = "default", secret: Optional[str] = None, via: str = "volume"):
    pod_spec: Dict[str, Any] = {"containers": [{"name": "app", "image": "nginx"}]}
    if secret and via == "volume":
        pod_spec["volumes"] = [{"name": "tls", "secret": {"secretName": secret}}]
    elif secret and via == "env":
        pod_spec["containers"][0]["env"] = [
            {"name": "TLS_CERT", "valueFrom": {"secretKeyRef": {"name": secret, "key": "tls.crt"}}}
        ]
    elif secret and via == "envFrom":
        pod_spec["containers"][0]["envFrom"] = [{"secretRef": {"name": secret}}]
    return {
        "kind": "Deployment",
        "metadata": {"name": name, "namespace": namespace},
        "spec": {"template": {"spec": pod_spec}},
    }


@pytest.fixture
def config():
    """Validated config for a zonal cluster."""
    return DiagnosticConfig(
        project="my-project",
        cluster="prod",
        zone="us-central1-a",
        namespaces=["default"],
    )
