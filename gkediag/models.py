"""
Diagnostic Data Models

Immutable records built fresh from a point-in-time cluster snapshot,
the findings derived from them, and the per-pass result envelope.
"""

from dataclasses import dataclass, field, fields
from enum import Enum
from typing import Any, ClassVar, Dict, List, Optional, Tuple, Union


# Sentinels for fields the API did not provide. Never 0 or None: exit
# code 0 is a real "clean exit" and None would vanish from reports.
NOT_AVAILABLE = "N/A"
UNKNOWN = "Unknown"


class Severity(Enum):
    """Finding severity levels."""
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]


_SEVERITY_RANK = {Severity.INFO: 0, Severity.WARNING: 1, Severity.CRITICAL: 2}


class PassStatus(Enum):
    """Outcome of a diagnostic pass."""
    OK = "ok"
    FAILED = "failed"


class Record:
    """Shared serialization for record dataclasses."""

    kind: ClassVar[str] = "record"

    @property
    def name(self) -> str:
        raise NotImplementedError

    def to_dict(self) -> Dict[str, Any]:
        data = {}
        for f in fields(self):
            value = getattr(self, f.name)
            if isinstance(value, tuple):
                value = [v.to_dict() if isinstance(v, Record) else v for v in value]
            data[f.name] = value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]):
        values = {}
        for f in fields(cls):
            if f.name not in data:
                continue
            value = data[f.name]
            if isinstance(value, list):
                nested = _NESTED_TYPES.get((cls.kind, f.name))
                value = tuple(nested.from_dict(v) if nested else v for v in value)
            values[f.name] = value
        return cls(**values)


@dataclass(frozen=True)
class ContainerRestartRecord(Record):
    """
    A container in a Running pod that has restarted at least once.

    Attributes:
        namespace: Pod namespace
        pod_name: Pod name
        container_name: Container name
        image: Full image reference
        restart_count: Restarts reported by the kubelet
        last_exit_code: Exit code of the last termination or NOT_AVAILABLE
        last_termination_reason: Kubernetes reason or NOT_AVAILABLE
        last_finished_at: ISO timestamp of the last termination or NOT_AVAILABLE
    """
    kind: ClassVar[str] = "restart"

    namespace: str
    pod_name: str
    container_name: str
    image: str
    restart_count: int
    last_exit_code: Union[int, str] = NOT_AVAILABLE
    last_termination_reason: str = NOT_AVAILABLE
    last_finished_at: str = NOT_AVAILABLE

    @property
    def name(self) -> str:
        return self.pod_name

    @property
    def has_exit_code(self) -> bool:
        return isinstance(self.last_exit_code, int)

    @property
    def service_name(self) -> str:
        return split_image(self.image)[0]

    @property
    def image_version(self) -> str:
        return split_image(self.image)[1]


@dataclass(frozen=True)
class ProbeEvent(Record):
    """A probe-related Kubernetes event."""
    kind: ClassVar[str] = "probe-event"

    probe_type: str
    reason: str
    message: str
    count: int = 1
    last_timestamp: str = NOT_AVAILABLE

    @property
    def name(self) -> str:
        return self.probe_type

    @property
    def failed(self) -> bool:
        return "fail" in self.message.lower() or self.reason == "Unhealthy"


@dataclass(frozen=True)
class ProbeRecord(Record):
    """
    Probe configuration and recent probe events for one container.

    Probe configs are optional; their absence is itself a finding.
    """
    kind: ClassVar[str] = "probe"

    namespace: str
    pod_name: str
    container_name: str
    pod_phase: str = UNKNOWN
    liveness_probe: Optional[Dict[str, Any]] = None
    readiness_probe: Optional[Dict[str, Any]] = None
    startup_probe: Optional[Dict[str, Any]] = None
    recent_probe_events: Tuple[ProbeEvent, ...] = ()
    restart_count: int = 0
    last_termination_reason: str = UNKNOWN
    last_exit_code: Union[int, str] = NOT_AVAILABLE

    @property
    def name(self) -> str:
        return self.pod_name

    @property
    def liveness_path(self) -> Optional[str]:
        return _http_path(self.liveness_probe)

    @property
    def readiness_path(self) -> Optional[str]:
        return _http_path(self.readiness_probe)


@dataclass(frozen=True)
class ShutdownRecord(Record):
    """A container whose last termination was SIGKILL (137) or SIGTERM (143)."""
    kind: ClassVar[str] = "shutdown"

    namespace: str
    pod_name: str
    container_name: str
    exit_code: int
    restart_count: int
    termination_grace_period_seconds: int
    pre_stop_hook_present: bool
    last_termination_reason: str = NOT_AVAILABLE
    last_finished_at: str = NOT_AVAILABLE

    @property
    def name(self) -> str:
        return self.pod_name


@dataclass(frozen=True)
class EvictionRecord(Record):
    """An evicted pod and the context that explains the eviction."""
    kind: ClassVar[str] = "eviction"

    namespace: str
    pod_name: str
    reason: str
    message: str
    node_name: str = UNKNOWN
    node_pressure_conditions: Tuple[str, ...] = ()
    resource_requests_present: bool = False
    priority_class_name: Optional[str] = None
    pdb_coverage: bool = False

    @property
    def name(self) -> str:
        return self.pod_name


@dataclass(frozen=True)
class CertificateRecord(Record):
    """X.509 metadata for the certificate held in a secret."""
    kind: ClassVar[str] = "certificate"

    secret_name: str
    namespace: str
    certificate_field: str
    subject: str
    issuer: str
    not_before: str
    not_after: str
    days_until_expiry: int
    is_self_signed: bool
    key_matches_cert: Optional[bool] = None
    referencing_workloads: Tuple[str, ...] = ()

    @property
    def name(self) -> str:
        return self.secret_name

    @property
    def certificate_type(self) -> str:
        if self.certificate_field == "ca.crt":
            return "CA Certificate"
        if self.certificate_field == "tls.crt":
            return "TLS Certificate"
        return "Certificate"


RECORD_TYPES = {
    cls.kind: cls
    for cls in (ContainerRestartRecord, ProbeRecord, ShutdownRecord, EvictionRecord, CertificateRecord)
}

_NESTED_TYPES = {("probe", "recent_probe_events"): ProbeEvent}


@dataclass(frozen=True)
class Finding:
    """
    A derived diagnostic statement.

    Attributes:
        severity: info, warning or critical
        code: Stable finding identifier (e.g. exit-code-137)
        message: Human-readable statement
        namespace: Namespace of the subject ("" for cluster scope)
        name: Pod, secret or node name ("" for pass-level findings)
        container: Container name where relevant
        related_record: Serialized record the finding was derived from
    """
    severity: Severity
    code: str
    message: str
    namespace: str = ""
    name: str = ""
    container: str = ""
    related_record: Optional[Dict[str, Any]] = None

    def sort_key(self):
        return (-self.severity.rank, self.namespace, self.name, self.container, self.code, self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "severity": self.severity.value,
            "code": self.code,
            "message": self.message,
            "namespace": self.namespace,
            "name": self.name,
            "container": self.container,
            "related_record": self.related_record,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Finding":
        return cls(
            severity=Severity(data["severity"]),
            code=data["code"],
            message=data["message"],
            namespace=data.get("namespace", ""),
            name=data.get("name", ""),
            container=data.get("container", ""),
            related_record=data.get("related_record"),
        )


@dataclass
class PassResult:
    """
    Result envelope for one diagnostic pass.

    A FAILED result means data could not be gathered; it is never
    conflated with a successful pass that found nothing.
    """
    pass_name: str
    namespace: Optional[str]
    status: PassStatus
    records: List[Record] = field(default_factory=list)
    findings: List[Finding] = field(default_factory=list)
    summary: Dict[str, Any] = field(default_factory=dict)
    suggestions: List[str] = field(default_factory=list)
    error: Optional[Dict[str, Any]] = None
    tls_relaxed: bool = False
    project: Optional[str] = None
    cluster: Optional[str] = None
    location_flag: str = "--zone"
    location: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status == PassStatus.OK

    @property
    def scope(self) -> str:
        return self.namespace or "all namespaces"

    @property
    def has_problems(self) -> bool:
        return any(f.severity.rank >= Severity.WARNING.rank for f in self.findings)

    def count(self, severity: Severity) -> int:
        return sum(1 for f in self.findings if f.severity == severity)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "pass": self.pass_name,
            "namespace": self.scope,
            "status": self.status.value,
            "cluster": self.cluster,
            "project": self.project,
            "tls_relaxed": self.tls_relaxed,
            "summary": self.summary,
            "counts": {s.value: self.count(s) for s in Severity},
            "records": [r.to_dict() for r in self.records],
            "findings": [f.to_dict() for f in self.findings],
            "suggested_passes": list(self.suggestions),
            "error": self.error,
        }


def split_image(image: str) -> Tuple[str, str]:
    """
    Split an image reference into service name and version.

    ``registry/path/service:1.2`` -> (``service``, ``1.2``); an untagged
    image gets ``latest``.
    """
    last = image.rsplit("/", 1)[-1]
    if "@" in last:
        service, digest = last.split("@", 1)
        return service.split(":", 1)[0], digest
    if ":" in last:
        service, version = last.split(":", 1)
        return service, version
    return last, "latest"


def _http_path(probe: Optional[Dict[str, Any]]) -> Optional[str]:
    if not probe:
        return None
    http_get = probe.get("httpGet") or {}
    return http_get.get("path")
