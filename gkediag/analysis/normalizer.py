"""
Normalizer - Raw API Objects to Diagnostic Records

Converts JSON-shaped Kubernetes objects into typed records. Missing
optional fields resolve to explicit sentinels. Objects that cannot be
read are skipped and collected in ``errors`` instead of aborting the pass.
"""

import logging
import re
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple

from ..config import DEFAULT_GRACE_PERIOD
from ..errors import DataShapeError
from ..models import (
    NOT_AVAILABLE,
    UNKNOWN,
    CertificateRecord,
    ContainerRestartRecord,
    EvictionRecord,
    ProbeEvent,
    ProbeRecord,
    ShutdownRecord,
)
from . import certificates

logger = logging.getLogger(__name__)

TLS_SECRET_TYPE = "kubernetes.io/tls"

# Secret data keys searched for a certificate, in order
CERTIFICATE_FIELDS = ("tls.crt", "ca.crt", "cert.pem", "certificate")

SHUTDOWN_EXIT_CODES = (137, 143)

PROBE_TYPES = ("Liveness", "Readiness", "Startup")
_PROBE_TYPE_RE = re.compile(r"\b(Liveness|Readiness|Startup)\b")
_FIELD_PATH_RE = re.compile(r"spec\.(?:init)?[cC]ontainers\{([^}]+)\}")

RECENT_PROBE_EVENTS = 5

PodKey = Tuple[str, str]


class Normalizer:
    """
    Builds diagnostic records from raw snapshots.

    Example:
        normalizer = Normalizer()
        records = normalizer.to_restart_records(pods)
        for error in normalizer.errors:
            print(error.message)
    """

    def __init__(self, default_grace_period: int = DEFAULT_GRACE_PERIOD):
        self.default_grace_period = default_grace_period
        self.errors: List[DataShapeError] = []

    # =========================================================================
    # Restarts
    # =========================================================================

    def to_restart_records(self, pods: Iterable[Dict[str, Any]]) -> List[ContainerRestartRecord]:
        """
        One record per container with restarts in a Running pod.

        Pods that are no longer running are out of scope even if their
        containers restarted.
        """
        records = []
        for pod in pods:
            meta = self._metadata(pod)
            if meta is None:
                continue
            namespace, pod_name = meta
            status = pod.get("status") or {}
            if status.get("phase") != "Running":
                continue

            specs = _container_specs(pod)
            for cs in status.get("containerStatuses") or []:
                restart_count = _restart_count(cs)
                if restart_count <= 0:
                    continue
                container = cs.get("name")
                if not container:
                    self._skip(namespace, pod_name, "containerStatuses[].name", "container status has no name")
                    continue
                terminated = _last_terminated(cs)
                image = cs.get("image") or specs.get(container, {}).get("image") or UNKNOWN
                records.append(ContainerRestartRecord(
                    namespace=namespace,
                    pod_name=pod_name,
                    container_name=container,
                    image=image,
                    restart_count=restart_count,
                    last_exit_code=_exit_code(terminated),
                    last_termination_reason=_text(terminated, "reason", NOT_AVAILABLE),
                    last_finished_at=_text(terminated, "finishedAt", NOT_AVAILABLE),
                ))

        logger.debug(f"Normalized {len(records)} restart records")
        return records

    # =========================================================================
    # Probes
    # =========================================================================

    def to_probe_records(
        self,
        pods: Iterable[Dict[str, Any]],
        events: Iterable[Dict[str, Any]] = (),
    ) -> List[ProbeRecord]:
        """One record per container spec, with its recent probe events."""
        events_by_container = self.probe_events_by_container(events)
        records = []
        for pod in pods:
            meta = self._metadata(pod)
            if meta is None:
                continue
            namespace, pod_name = meta
            status = pod.get("status") or {}
            statuses = {cs.get("name"): cs for cs in status.get("containerStatuses") or []}

            for container in (pod.get("spec") or {}).get("containers") or []:
                name = container.get("name")
                if not name:
                    self._skip(namespace, pod_name, "spec.containers[].name", "container spec has no name")
                    continue
                cs = statuses.get(name) or {}
                terminated = _last_terminated(cs)
                recent = (
                    events_by_container.get((namespace, pod_name, name), [])
                    + events_by_container.get((namespace, pod_name, ""), [])
                )
                recent.sort(key=lambda e: e.last_timestamp)
                records.append(ProbeRecord(
                    namespace=namespace,
                    pod_name=pod_name,
                    container_name=name,
                    pod_phase=status.get("phase") or UNKNOWN,
                    liveness_probe=container.get("livenessProbe"),
                    readiness_probe=container.get("readinessProbe"),
                    startup_probe=container.get("startupProbe"),
                    recent_probe_events=tuple(recent[-RECENT_PROBE_EVENTS:]),
                    restart_count=_restart_count(cs),
                    last_termination_reason=_text(terminated, "reason", UNKNOWN),
                    last_exit_code=_exit_code(terminated),
                ))
        return records

    def probe_events_by_container(
        self, events: Iterable[Dict[str, Any]]
    ) -> Dict[Tuple[str, str, str], List[ProbeEvent]]:
        """
        Group probe-related pod events by (namespace, pod, container).

        Events without a container field path are keyed with container "".
        """
        grouped: Dict[Tuple[str, str, str], List[ProbeEvent]] = {}
        for event in events:
            probe_event = to_probe_event(event)
            if probe_event is None:
                continue
            involved = event.get("involvedObject") or {}
            namespace = involved.get("namespace") or (event.get("metadata") or {}).get("namespace", "")
            match = _FIELD_PATH_RE.search(involved.get("fieldPath") or "")
            container = match.group(1) if match else ""
            grouped.setdefault((namespace, involved.get("name", ""), container), []).append(probe_event)
        return grouped

    # =========================================================================
    # Shutdown
    # =========================================================================

    def to_shutdown_records(self, pods: Iterable[Dict[str, Any]]) -> List[ShutdownRecord]:
        """Containers with restarts whose last exit was SIGKILL or SIGTERM."""
        records = []
        for pod in pods:
            meta = self._metadata(pod)
            if meta is None:
                continue
            namespace, pod_name = meta
            specs = _container_specs(pod)
            grace = self.grace_period(pod)

            for cs in (pod.get("status") or {}).get("containerStatuses") or []:
                if _restart_count(cs) <= 0:
                    continue
                terminated = _last_terminated(cs)
                exit_code = _exit_code(terminated)
                if exit_code not in SHUTDOWN_EXIT_CODES:
                    continue
                name = cs.get("name") or UNKNOWN
                records.append(ShutdownRecord(
                    namespace=namespace,
                    pod_name=pod_name,
                    container_name=name,
                    exit_code=exit_code,
                    restart_count=_restart_count(cs),
                    termination_grace_period_seconds=grace,
                    pre_stop_hook_present=_has_pre_stop(specs.get(name)),
                    last_termination_reason=_text(terminated, "reason", NOT_AVAILABLE),
                    last_finished_at=_text(terminated, "finishedAt", NOT_AVAILABLE),
                ))
        return records

    def grace_period(self, pod: Dict[str, Any]) -> int:
        value = (pod.get("spec") or {}).get("terminationGracePeriodSeconds")
        if isinstance(value, int) and not isinstance(value, bool):
            return value
        return self.default_grace_period

    def grace_periods(self, pods: Iterable[Dict[str, Any]]) -> List[Tuple[str, str, int]]:
        """(namespace, pod, grace seconds) for Running pods."""
        result = []
        for pod in pods:
            if (pod.get("status") or {}).get("phase") != "Running":
                continue
            meta = self._metadata(pod)
            if meta is not None:
                result.append((meta[0], meta[1], self.grace_period(pod)))
        return result

    def containers_without_pre_stop(self, pods: Iterable[Dict[str, Any]]) -> List[Tuple[str, str, str]]:
        """(namespace, pod, container) for Running containers lacking a preStop hook."""
        result = []
        for pod in pods:
            if (pod.get("status") or {}).get("phase") != "Running":
                continue
            meta = self._metadata(pod)
            if meta is None:
                continue
            for name, spec in sorted(_container_specs(pod).items()):
                if not _has_pre_stop(spec):
                    result.append((meta[0], meta[1], name))
        return result

    # =========================================================================
    # Evictions
    # =========================================================================

    def to_eviction_records(
        self,
        pods: Iterable[Dict[str, Any]],
        nodes: Iterable[Dict[str, Any]] = (),
        pdbs: Iterable[Dict[str, Any]] = (),
    ) -> List[EvictionRecord]:
        """One record per pod whose status reason is Evicted."""
        pressure = {}
        for condition in self.to_node_pressure(nodes):
            pressure.setdefault(condition["node_name"], []).append(condition["condition_type"])
        pdb_list = list(pdbs)

        records = []
        for pod in pods:
            status = pod.get("status") or {}
            if status.get("reason") != "Evicted":
                continue
            meta = self._metadata(pod)
            if meta is None:
                continue
            namespace, pod_name = meta
            spec = pod.get("spec") or {}
            node_name = spec.get("nodeName") or UNKNOWN
            records.append(EvictionRecord(
                namespace=namespace,
                pod_name=pod_name,
                reason=status.get("reason"),
                message=status.get("message") or NOT_AVAILABLE,
                node_name=node_name,
                node_pressure_conditions=tuple(sorted(pressure.get(node_name, []))),
                resource_requests_present=not missing_memory_request_containers(pod),
                priority_class_name=spec.get("priorityClassName"),
                pdb_coverage=pdb_covers(pdb_list, namespace, (pod.get("metadata") or {}).get("labels") or {}),
            ))
        return records

    def to_node_pressure(self, nodes: Iterable[Dict[str, Any]]) -> List[Dict[str, str]]:
        """Pressure conditions (type contains 'Pressure', status True) per node."""
        result = []
        for node in nodes:
            node_name = (node.get("metadata") or {}).get("name")
            if not node_name:
                self._skip("", UNKNOWN, "metadata.name", "node has no name")
                continue
            for condition in (node.get("status") or {}).get("conditions") or []:
                if "Pressure" in (condition.get("type") or "") and condition.get("status") == "True":
                    result.append({
                        "node_name": node_name,
                        "condition_type": condition["type"],
                        "reason": condition.get("reason") or UNKNOWN,
                        "message": condition.get("message") or NOT_AVAILABLE,
                    })
        return result

    def missing_memory_requests(self, pods: Iterable[Dict[str, Any]]) -> List[Tuple[str, str, str]]:
        """(namespace, pod, container) for containers without a memory request."""
        result = []
        for pod in pods:
            meta = self._metadata(pod)
            if meta is None:
                continue
            for container in missing_memory_request_containers(pod):
                result.append((meta[0], meta[1], container))
        return result

    # =========================================================================
    # Certificates
    # =========================================================================

    def to_certificate_records(
        self,
        secrets: Iterable[Dict[str, Any]],
        now: Optional[datetime] = None,
        workloads: Optional[Iterable[Dict[str, Any]]] = None,
        verify: bool = False,
    ) -> List[CertificateRecord]:
        """
        Decode the certificate held in each secret.

        Args:
            secrets: Secret objects (data values base64-encoded)
            now: Reference time for days-until-expiry
            workloads: Deployments/StatefulSets used to find references
            verify: Check the private key against the certificate
        """
        now = now or datetime.now(timezone.utc)
        workload_list = list(workloads or [])
        records = []
        for secret in secrets:
            meta = self._metadata(secret)
            if meta is None:
                continue
            namespace, name = meta
            try:
                records.append(self._certificate_record(secret, namespace, name, now, workload_list, verify))
            except DataShapeError as e:
                e.namespace, e.name = namespace, name
                logger.warning(f"Skipping secret {namespace}/{name}: {e.message}")
                self.errors.append(e)
        return records

    def _certificate_record(
        self,
        secret: Dict[str, Any],
        namespace: str,
        name: str,
        now: datetime,
        workloads: List[Dict[str, Any]],
        verify: bool,
    ) -> CertificateRecord:
        data = secret.get("data") or {}
        cert_field = next((f for f in CERTIFICATE_FIELDS if data.get(f)), None)
        if cert_field is None:
            available = ", ".join(sorted(data)) or "none"
            raise DataShapeError(
                f"No certificate found in secret {name} (tried {', '.join(CERTIFICATE_FIELDS)}; "
                f"available fields: {available})",
                field="data",
            )

        cert = certificates.load_certificate(
            certificates.decode_secret_field(data[cert_field], cert_field), cert_field
        )
        not_after = certificates.not_valid_after(cert)

        key_matches = None
        if verify and data.get("tls.key"):
            try:
                key = certificates.load_private_key(certificates.decode_secret_field(data["tls.key"], "tls.key"))
                key_matches = certificates.key_matches_certificate(cert, key)
            except DataShapeError as e:
                e.namespace, e.name = namespace, name
                self.errors.append(e)

        referencing = referencing_workloads(workloads, namespace, name) if verify else ()
        return CertificateRecord(
            secret_name=name,
            namespace=namespace,
            certificate_field=cert_field,
            subject=certificates.name_string(cert.subject),
            issuer=certificates.name_string(cert.issuer),
            not_before=certificates.not_valid_before(cert).isoformat(),
            not_after=not_after.isoformat(),
            days_until_expiry=certificates.days_until_expiry(not_after, now),
            is_self_signed=certificates.is_self_signed(cert),
            key_matches_cert=key_matches,
            referencing_workloads=tuple(referencing),
        )

    # =========================================================================
    # Helpers
    # =========================================================================

    def _metadata(self, obj: Dict[str, Any]) -> Optional[PodKey]:
        metadata = obj.get("metadata") or {}
        name = metadata.get("name")
        namespace = metadata.get("namespace") or ""
        if not name:
            self._skip(namespace, UNKNOWN, "metadata.name", f"{obj.get('kind') or 'object'} has no name")
            return None
        if not namespace:
            self._skip(namespace, name, "metadata.namespace", f"{obj.get('kind') or 'object'} {name} has no namespace")
            return None
        return namespace, name

    def _skip(self, namespace: str, name: str, field: str, message: str) -> None:
        logger.warning(f"Skipping {namespace}/{name}: {message}")
        self.errors.append(DataShapeError(message, namespace=namespace, name=name, field=field))


def to_probe_event(event: Dict[str, Any]) -> Optional[ProbeEvent]:
    """Build a ProbeEvent from a pod event that mentions a probe type."""
    if (event.get("involvedObject") or {}).get("kind", "Pod") != "Pod":
        return None
    message = event.get("message") or ""
    match = _PROBE_TYPE_RE.search(message)
    if not match:
        return None
    timestamp = (
        event.get("lastTimestamp")
        or event.get("eventTime")
        or (event.get("metadata") or {}).get("creationTimestamp")
        or NOT_AVAILABLE
    )
    return ProbeEvent(
        probe_type=match.group(1),
        reason=event.get("reason") or UNKNOWN,
        message=message,
        count=event.get("count") or 1,
        last_timestamp=str(timestamp),
    )


def missing_memory_request_containers(pod: Dict[str, Any]) -> List[str]:
    missing = []
    for container in (pod.get("spec") or {}).get("containers") or []:
        requests = (container.get("resources") or {}).get("requests") or {}
        if requests.get("memory") is None:
            missing.append(container.get("name") or UNKNOWN)
    return missing


def selector_matches(selector: Optional[Dict[str, Any]], labels: Dict[str, str]) -> bool:
    """
    Evaluate a label selector against pod labels.

    An empty selector matches everything; a missing one matches nothing.
    """
    if selector is None:
        return False
    for key, value in (selector.get("matchLabels") or {}).items():
        if labels.get(key) != value:
            return False
    for expr in selector.get("matchExpressions") or []:
        key = expr.get("key")
        operator = expr.get("operator")
        values = expr.get("values") or []
        if operator == "In" and labels.get(key) not in values:
            return False
        if operator == "NotIn" and key in labels and labels[key] in values:
            return False
        if operator == "Exists" and key not in labels:
            return False
        if operator == "DoesNotExist" and key in labels:
            return False
    return True


def pdb_covers(pdbs: Iterable[Dict[str, Any]], namespace: str, labels: Dict[str, str]) -> bool:
    for pdb in pdbs:
        if (pdb.get("metadata") or {}).get("namespace") != namespace:
            continue
        if selector_matches((pdb.get("spec") or {}).get("selector"), labels):
            return True
    return False


def referencing_workloads(workloads: Iterable[Dict[str, Any]], namespace: str, secret_name: str) -> List[str]:
    """Kind/name of workloads mounting or injecting the secret."""
    result = []
    for workload in workloads:
        if (workload.get("metadata") or {}).get("namespace", namespace) != namespace:
            continue
        pod_spec = (((workload.get("spec") or {}).get("template") or {}).get("spec")) or {}
        if _pod_spec_references(pod_spec, secret_name):
            result.append(f"{workload.get('kind', 'Workload')}/{workload['metadata']['name']}")
    return sorted(result)


def _pod_spec_references(pod_spec: Dict[str, Any], secret_name: str) -> bool:
    for volume in pod_spec.get("volumes") or []:
        if (volume.get("secret") or {}).get("secretName") == secret_name:
            return True
    for container in pod_spec.get("containers") or []:
        for env in container.get("env") or []:
            ref = ((env.get("valueFrom") or {}).get("secretKeyRef")) or {}
            if ref.get("name") == secret_name:
                return True
        for env_from in container.get("envFrom") or []:
            if (env_from.get("secretRef") or {}).get("name") == secret_name:
                return True
    return False


def _container_specs(pod: Dict[str, Any]) -> Dict[str, Dict[str, Any]]:
    return {
        c.get("name"): c
        for c in (pod.get("spec") or {}).get("containers") or []
        if c.get("name")
    }


def _last_terminated(cs: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    return ((cs or {}).get("lastState") or {}).get("terminated")


def _restart_count(cs: Dict[str, Any]) -> int:
    value = (cs or {}).get("restartCount")
    return value if isinstance(value, int) and not isinstance(value, bool) else 0


def _exit_code(terminated: Optional[Dict[str, Any]]):
    if not terminated:
        return NOT_AVAILABLE
    code = terminated.get("exitCode")
    if isinstance(code, int) and not isinstance(code, bool):
        return code
    return NOT_AVAILABLE


def _text(terminated: Optional[Dict[str, Any]], key: str, default: str) -> str:
    if not terminated:
        return default
    value = terminated.get(key)
    return str(value) if value not in (None, "") else default


def _has_pre_stop(spec: Optional[Dict[str, Any]]) -> bool:
    return bool(((spec or {}).get("lifecycle") or {}).get("preStop"))
