"""
Classifier - Rule Table for Diagnostic Findings

Applies fixed rule tables (exit-code meanings, probe anti-patterns,
grace-period adequacy, node pressure, eviction risk, certificate expiry)
to normalized records and produces severity-ranked findings.
"""

import logging
from collections import Counter, OrderedDict
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from ..config import RuleThresholds
from ..errors import DataShapeError
from ..models import (
    CertificateRecord,
    ContainerRestartRecord,
    EvictionRecord,
    Finding,
    ProbeRecord,
    Record,
    Severity,
    ShutdownRecord,
)

logger = logging.getLogger(__name__)

SIGTERM = 143
SIGKILL = 137


@dataclass(frozen=True)
class ExitCodeRule:
    meaning: str
    severity: Severity
    detail: str


EXIT_CODES: Dict[int, ExitCodeRule] = {
    0: ExitCodeRule(
        "clean exit", Severity.INFO,
        "Container exited normally; usually a clean shutdown or completed job",
    ),
    1: ExitCodeRule(
        "application error", Severity.WARNING,
        "General application failure; check application logs for specific error messages",
    ),
    2: ExitCodeRule(
        "misuse of shell builtin", Severity.WARNING,
        "Invalid command or arguments; review container command and args in the pod spec",
    ),
    126: ExitCodeRule(
        "command cannot execute (permission problem)", Severity.WARNING,
        "Check file permissions and the execute bit on the binary",
    ),
    127: ExitCodeRule(
        "command not found", Severity.WARNING,
        "Verify the command path and container image contents",
    ),
    128: ExitCodeRule(
        "invalid exit argument", Severity.WARNING,
        "Application may be returning an out-of-range exit code",
    ),
    130: ExitCodeRule(
        "SIGINT (interrupt)", Severity.INFO,
        "Interactive termination or the process received an interrupt signal",
    ),
    137: ExitCodeRule(
        "SIGKILL (OOM or forced kill)", Severity.CRITICAL,
        "OOMKilled, node pressure, or no response to SIGTERM; check memory limits and node resources",
    ),
    139: ExitCodeRule(
        "SIGSEGV (segmentation fault)", Severity.CRITICAL,
        "Application crashed on a memory access violation; review application code",
    ),
    143: ExitCodeRule(
        "SIGTERM (graceful termination request)", Severity.INFO,
        "Pod deleted, evicted, rolled or drained; frequent occurrences may mean failing "
        "liveness probes or crash loops",
    ),
}

# Finding code -> pass the operator should run next
NEXT_PASS: Dict[str, str] = {
    "high-sigterm-rate": "shutdown",
    "forced-kill": "shutdown",
    "forced-kill-no-prestop": "shutdown",
    "possible-oom-kills": "evictions",
    "node-pressure": "evictions",
    "pod-evicted": "evictions",
    "eviction-events": "evictions",
    "memory-request-missing": "evictions",
    "probe-anti-pattern": "probes",
    "probe-missing": "probes",
    "probe-failures": "probes",
    "exit-code-137": "shutdown",
    "exit-code-143": "shutdown",
}


def classify_exit_code(
    code: Any,
    namespace: str = "",
    name: str = "",
    container: str = "",
    record: Optional[Record] = None,
) -> Finding:
    """
    Look up an exit code in the rule table.

    Codes in (128, 256) not in the table are reported as signal
    ``code - 128``; any other unknown value is an "unknown" warning.
    """
    related = record.to_dict() if record is not None else None
    context = dict(namespace=namespace, name=name, container=container, related_record=related)

    if not isinstance(code, int) or isinstance(code, bool):
        return Finding(
            severity=Severity.INFO,
            code="exit-code-unavailable",
            message="No termination state recorded; exit code unavailable",
            **context,
        )

    rule = EXIT_CODES.get(code)
    if rule is not None:
        return Finding(
            severity=rule.severity,
            code=f"exit-code-{code}",
            message=f"Exit code {code}: {rule.meaning}. {rule.detail}",
            **context,
        )

    if 128 < code < 256:
        return Finding(
            severity=Severity.WARNING,
            code="exit-code-signal",
            message=f"Exit code {code}: terminated by signal {code - 128}",
            **context,
        )

    return Finding(
        severity=Severity.WARNING,
        code="exit-code-unknown",
        message=f"Exit code {code}: unknown, application-specific error; check application logs",
        **context,
    )


def exit_code_meaning(code: Any) -> str:
    if isinstance(code, int) and code in EXIT_CODES:
        return EXIT_CODES[code].meaning
    if isinstance(code, int) and 128 < code < 256:
        return f"terminated by signal {code - 128}"
    return "unknown"


def certificate_status(days: int, thresholds: RuleThresholds = None) -> Tuple[str, Severity]:
    """valid above the warning window, expires soon inside it, expired at or below zero."""
    window = (thresholds or RuleThresholds()).cert_expiry_warning_days
    if days > window:
        return "valid", Severity.INFO
    if days > 0:
        return "expires soon", Severity.WARNING
    return "expired", Severity.CRITICAL


def sort_findings(findings: Iterable[Finding]) -> List[Finding]:
    """Severity descending, then namespace, then name."""
    return sorted(findings, key=lambda f: f.sort_key())


def suggest_passes(findings: Iterable[Finding], current: Optional[str] = None) -> List[str]:
    """Passes referenced by the findings' codes, excluding the current one."""
    passes = {NEXT_PASS[f.code] for f in findings if f.code in NEXT_PASS}
    passes.discard(current)
    return sorted(passes)


def data_shape_findings(errors: Iterable[DataShapeError]) -> List[Finding]:
    return [
        Finding(
            severity=Severity.WARNING,
            code="data-shape-error",
            message=f"Skipped incomplete data: {e.message}",
            namespace=e.namespace,
            name=e.name,
        )
        for e in errors
    ]


class Classifier:
    """
    Rule engine for all diagnostic passes.

    Each ``classify_*`` method applies the rule subset for one record
    kind and returns unsorted findings.

    Example:
        classifier = Classifier(RuleThresholds(sigterm_threshold=3))
        findings = sort_findings(classifier.classify_restarts(records))
    """

    def __init__(self, thresholds: Optional[RuleThresholds] = None):
        self.thresholds = thresholds or RuleThresholds()

    # =========================================================================
    # Exit codes / restarts
    # =========================================================================

    def classify_restarts(self, records: Sequence[ContainerRestartRecord]) -> List[Finding]:
        findings = []
        high_sigterm = self.sigterm_rate_exceeded(r.last_exit_code for r in records)
        for record in records:
            if not record.has_exit_code:
                continue
            finding = classify_exit_code(
                record.last_exit_code,
                namespace=record.namespace,
                name=record.pod_name,
                container=record.container_name,
                record=record,
            )
            if record.last_exit_code == SIGTERM and high_sigterm:
                finding = _with_severity(finding, Severity.WARNING)
            findings.append(finding)

        findings.extend(self.aggregate_exit_codes([r.last_exit_code for r in records]))

        oom = sum(
            1 for r in records
            if r.last_termination_reason == "OOMKilled" or r.last_exit_code == SIGKILL
        )
        if oom:
            findings.append(Finding(
                severity=Severity.WARNING,
                code="possible-oom-kills",
                message=(
                    f"Found {oom} potential OOM (Out of Memory) kill(s); "
                    "consider increasing memory limits or investigating memory leaks"
                ),
            ))
        return findings

    def sigterm_rate_exceeded(self, exit_codes: Iterable[Any]) -> bool:
        count = sum(1 for code in exit_codes if code == SIGTERM)
        return count > self.thresholds.sigterm_threshold

    def aggregate_exit_codes(self, exit_codes: Sequence[Any]) -> List[Finding]:
        """Pass-level findings over all exit codes seen in a pass."""
        count = sum(1 for code in exit_codes if code == SIGTERM)
        if count <= self.thresholds.sigterm_threshold:
            return []
        return [Finding(
            severity=Severity.WARNING,
            code="high-sigterm-rate",
            message=(
                f"Found {count} SIGTERM (143) terminations (threshold {self.thresholds.sigterm_threshold}); "
                "may indicate frequent evictions or rescheduling, failing liveness/readiness probes, "
                "or an application not handling shutdown gracefully"
            ),
        )]

    def group_by_exit_code(self, records: Sequence[ContainerRestartRecord]) -> List[Dict[str, Any]]:
        """Occurrence counts and distinct reasons per exit code, sorted by code."""
        groups: Dict[int, Dict[str, Any]] = {}
        for record in records:
            if not record.has_exit_code:
                continue
            group = groups.setdefault(record.last_exit_code, {"count": 0, "reasons": set()})
            group["count"] += 1
            if record.last_termination_reason not in ("", "N/A"):
                group["reasons"].add(record.last_termination_reason)

        result = []
        for code in sorted(groups):
            finding = classify_exit_code(code)
            result.append({
                "exit_code": code,
                "count": groups[code]["count"],
                "meaning": exit_code_meaning(code),
                "severity": finding.severity.value,
                "detail": finding.message,
                "reasons": sorted(groups[code]["reasons"]),
            })
        return result

    # =========================================================================
    # Probes
    # =========================================================================

    def classify_probes(self, records: Sequence[ProbeRecord]) -> List[Finding]:
        findings = []
        for record in records:
            context = dict(
                namespace=record.namespace,
                name=record.pod_name,
                container=record.container_name,
                related_record=record.to_dict(),
            )

            liveness_path = record.liveness_path
            if liveness_path and liveness_path == record.readiness_path:
                findings.append(Finding(
                    severity=Severity.WARNING,
                    code="probe-anti-pattern",
                    message=(
                        f"Liveness and readiness probes use the same endpoint: {liveness_path}. "
                        "Liveness should check the app is alive (restart if not); readiness should "
                        "check it can serve traffic (remove from service if not)"
                    ),
                    **context,
                ))

            if (
                record.pod_phase == "Running"
                and record.liveness_probe is None
                and record.readiness_probe is None
            ):
                findings.append(Finding(
                    severity=Severity.WARNING,
                    code="probe-missing",
                    message="Container has neither a liveness nor a readiness probe",
                    **context,
                ))

            failures = Counter(e.probe_type for e in record.recent_probe_events if e.failed)
            if failures:
                breakdown = ", ".join(f"{t}: {failures[t]}" for t in sorted(failures))
                findings.append(Finding(
                    severity=Severity.WARNING,
                    code="probe-failures",
                    message=(
                        f"Recent probe failure events ({breakdown}); "
                        f"restarts: {record.restart_count}, last exit: "
                        f"{record.last_termination_reason} ({record.last_exit_code})"
                    ),
                    **context,
                ))
        return findings

    @staticmethod
    def probe_failure_breakdown(records: Sequence[ProbeRecord]) -> Dict[str, int]:
        """Failed probe events per probe type across a pass."""
        counts: Counter = Counter()
        seen = set()
        for record in records:
            for event in record.recent_probe_events:
                # Pod-level events are attached to every container; count them once
                key = (record.namespace, record.pod_name, event)
                if event.failed and key not in seen:
                    seen.add(key)
                    counts[event.probe_type] += event.count
        return dict(sorted(counts.items()))

    # =========================================================================
    # Shutdown
    # =========================================================================

    def classify_shutdown(self, records: Sequence[ShutdownRecord]) -> List[Finding]:
        findings = []
        high_sigterm = self.sigterm_rate_exceeded(r.exit_code for r in records)
        for record in records:
            context = dict(
                namespace=record.namespace,
                name=record.pod_name,
                container=record.container_name,
                related_record=record.to_dict(),
            )
            grace = record.termination_grace_period_seconds

            if record.exit_code == SIGKILL:
                if not record.pre_stop_hook_present:
                    findings.append(Finding(
                        severity=Severity.CRITICAL,
                        code="forced-kill-no-prestop",
                        message=(
                            f"Forced kill (SIGKILL, exit 137) after {record.restart_count} restart(s) "
                            f"with missing preStop hook; grace period {grace}s. Add a preStop hook "
                            "to drain connections and handle SIGTERM within the grace period"
                        ),
                        **context,
                    ))
                else:
                    findings.append(Finding(
                        severity=Severity.CRITICAL,
                        code="forced-kill",
                        message=(
                            f"Forced kill (SIGKILL, exit 137) after {record.restart_count} restart(s); "
                            f"grace period {grace}s may be too short for shutdown"
                        ),
                        **context,
                    ))
            elif record.exit_code == SIGTERM:
                findings.append(Finding(
                    severity=Severity.WARNING if high_sigterm else Severity.INFO,
                    code="sigterm-exit",
                    message=(
                        f"Terminated by SIGTERM (exit 143) after {record.restart_count} restart(s); "
                        f"grace period {grace}s, preStop hook "
                        f"{'configured' if record.pre_stop_hook_present else 'not configured'}"
                    ),
                    **context,
                ))

            if grace < self.thresholds.min_grace_period:
                findings.append(Finding(
                    severity=Severity.INFO,
                    code="short-grace-period",
                    message=f"Termination grace period {grace}s is below {self.thresholds.min_grace_period}s",
                    **context,
                ))

        findings.extend(self.aggregate_exit_codes([r.exit_code for r in records]))
        return findings

    def classify_grace_periods(self, entries: Sequence[Tuple[str, str, int]]) -> List[Finding]:
        """Informational flag for Running pods with a short grace period."""
        return [
            Finding(
                severity=Severity.INFO,
                code="short-grace-period",
                message=f"Termination grace period {grace}s is below {self.thresholds.min_grace_period}s",
                namespace=namespace,
                name=pod,
            )
            for namespace, pod, grace in entries
            if grace < self.thresholds.min_grace_period
        ]

    def grace_period_distribution(self, entries: Sequence[Tuple[str, str, int]]) -> Dict[str, int]:
        default = self.thresholds.min_grace_period
        return {
            "total": len(entries),
            "default": sum(1 for e in entries if e[2] == default),
            "short": sum(1 for e in entries if e[2] < default),
            "long": sum(1 for e in entries if e[2] > default),
        }

    @staticmethod
    def classify_missing_pre_stop(entries: Sequence[Tuple[str, str, str]]) -> List[Finding]:
        if not entries:
            return []
        return [Finding(
            severity=Severity.WARNING,
            code="prestop-missing",
            message=(
                f"{len(entries)} running container(s) have no preStop hook; "
                "add preStop hooks to drain connections gracefully"
            ),
        )]

    # =========================================================================
    # Evictions
    # =========================================================================

    def classify_evictions(
        self,
        records: Sequence[EvictionRecord],
        node_pressure: Sequence[Dict[str, str]] = (),
        missing_requests: Sequence[Tuple[str, str, str]] = (),
        pdb_count: int = 0,
        eviction_event_count: int = 0,
    ) -> List[Finding]:
        findings = []
        for record in records:
            details = [record.message]
            if record.node_pressure_conditions:
                details.append(f"node {record.node_name} under {', '.join(record.node_pressure_conditions)}")
            if not record.resource_requests_present:
                details.append("no memory request")
            if not record.priority_class_name:
                details.append("no priority class")
            if not record.pdb_coverage:
                details.append("not covered by a PodDisruptionBudget")
            findings.append(Finding(
                severity=Severity.WARNING,
                code="pod-evicted",
                message=f"Pod evicted: {'; '.join(details)}",
                namespace=record.namespace,
                name=record.pod_name,
                related_record=record.to_dict(),
            ))

        for condition in node_pressure:
            findings.append(Finding(
                severity=Severity.CRITICAL,
                code="node-pressure",
                message=(
                    f"Node {condition['node_name']} reports {condition['condition_type']}=True "
                    f"({condition['reason']}): {condition['message']}"
                ),
                name=condition["node_name"],
                related_record=dict(condition),
            ))

        for namespace, pod, container in missing_requests:
            findings.append(Finding(
                severity=Severity.WARNING,
                code="memory-request-missing",
                message="Container has no memory request (highest eviction risk)",
                namespace=namespace,
                name=pod,
                container=container,
            ))

        if pdb_count == 0:
            findings.append(Finding(
                severity=Severity.WARNING,
                code="pdb-missing",
                message="No PodDisruptionBudgets found; create PDBs to limit disruptions during evictions",
            ))

        if eviction_event_count:
            findings.append(Finding(
                severity=Severity.WARNING,
                code="eviction-events",
                message=f"Found {eviction_event_count} eviction-related event(s)",
            ))
        return findings

    # =========================================================================
    # Certificates
    # =========================================================================

    def classify_certificates(
        self,
        records: Sequence[CertificateRecord],
        non_tls_secret_count: Optional[int] = None,
    ) -> List[Finding]:
        findings = []
        for record in records:
            context = dict(
                namespace=record.namespace,
                name=record.secret_name,
                related_record=record.to_dict(),
            )
            status, severity = certificate_status(record.days_until_expiry, self.thresholds)
            days = record.days_until_expiry
            if status == "expired":
                when = f"expired {abs(days)} day(s) ago" if days < 0 else "expired today"
            else:
                when = f"expires in {days} day(s)"
            findings.append(Finding(
                severity=severity,
                code=f"cert-{status.replace(' ', '-')}",
                message=f"{record.certificate_type} ({record.certificate_field}) is {status}: {when} ({record.not_after})",
                **context,
            ))

            if record.is_self_signed:
                findings.append(Finding(
                    severity=Severity.INFO,
                    code="cert-self-signed",
                    message="This is a self-signed certificate",
                    **context,
                ))

            if record.key_matches_cert is False:
                findings.append(Finding(
                    severity=Severity.CRITICAL,
                    code="cert-key-mismatch",
                    message="Private key does NOT match certificate",
                    **context,
                ))
            elif record.key_matches_cert is True:
                findings.append(Finding(
                    severity=Severity.INFO,
                    code="cert-key-match",
                    message="Private key matches certificate",
                    **context,
                ))

        if not records and non_tls_secret_count is not None:
            message = "No TLS secrets found"
            if non_tls_secret_count:
                message += f" (found {non_tls_secret_count} non-TLS secret(s))"
            findings.append(Finding(severity=Severity.INFO, code="no-tls-secrets", message=message))
        return findings


def _with_severity(finding: Finding, severity: Severity) -> Finding:
    return Finding(
        severity=severity,
        code=finding.code,
        message=finding.message,
        namespace=finding.namespace,
        name=finding.name,
        container=finding.container,
        related_record=finding.related_record,
    )


def eviction_reason_breakdown(events: Iterable[Dict[str, Any]]) -> Dict[str, int]:
    """Count eviction-related events by reason keyword."""
    keywords = ("Evicted", "Preempting", "OutOfMemory", "DiskPressure", "MemoryPressure", "NodeAffinity")
    counts: Dict[str, int] = OrderedDict()
    for event in events:
        text = f"{event.get('reason') or ''} {event.get('message') or ''}"
        for keyword in keywords:
            if keyword in text:
                counts[keyword] = counts.get(keyword, 0) + (event.get("count") or 1)
    return dict(sorted(counts.items(), key=lambda kv: (-kv[1], kv[0])))


def is_eviction_event(event: Dict[str, Any]) -> bool:
    text = f"{event.get('reason') or ''} {event.get('message') or ''}".lower()
    return "evict" in text or "preempt" in text


def is_shutdown_event(event: Dict[str, Any]) -> bool:
    text = f"{event.get('reason') or ''} {event.get('message') or ''}".lower()
    return any(k in text for k in ("killing", "sigterm", "sigkill", "graceful", "shutdown", "stopped"))
