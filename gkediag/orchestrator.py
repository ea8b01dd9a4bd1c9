"""
Diagnostic Orchestrator

Sequences one diagnostic pass per (pass kind, namespace):

    Authenticate -> SetContext -> VerifyConnectivity -> Gather
        -> Normalize -> Classify -> Report -> Summarize

VerifyConnectivity may move to a relaxed-TLS state exactly once, and
only when the caller asked for it. Every pass builds its own client,
normalizer and classifier; nothing mutable is shared between passes
except the cancel scope and the memoised credential provider.
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from .analysis.normalizer import TLS_SECRET_TYPE, Normalizer
from .analysis.rules import (
    Classifier,
    certificate_status,
    data_shape_findings,
    eviction_reason_breakdown,
    is_eviction_event,
    is_shutdown_event,
    sort_findings,
    suggest_passes,
)
from .cluster.cancellation import CancelScope
from .cluster.client import ClusterClient
from .cluster.credentials import GCloudCredentialProvider
from .config import DiagnosticConfig
from .errors import ConfigError, DiagnosticError, TransportError
from .models import PassResult, PassStatus, Record, Severity
from .report import sort_records

logger = logging.getLogger(__name__)


class Phase(Enum):
    """Pass state machine phases."""
    AUTHENTICATE = "authenticate"
    SET_CONTEXT = "set-context"
    VERIFY_CONNECTIVITY = "verify-connectivity"
    VERIFY_CONNECTIVITY_RELAXED = "verify-connectivity-relaxed"
    GATHER = "gather"
    NORMALIZE = "normalize"
    CLASSIFY = "classify"
    REPORT = "report"
    SUMMARIZE = "summarize"


ProgressCallback = Callable[[str, Optional[str], Phase], None]


def no_progress(pass_name: str, namespace: Optional[str], phase: Phase) -> None:
    pass


Raw = Dict[str, Any]
Extras = Dict[str, Any]


@dataclass
class PassContext:
    config: DiagnosticConfig
    namespace: Optional[str]
    normalizer: Normalizer
    classifier: Classifier
    now: datetime


@dataclass(frozen=True)
class PassDefinition:
    """Record-kind selection and rule subset for one pass."""
    name: str
    description: str
    gather: Callable[[ClusterClient, PassContext], Raw]
    normalize: Callable[[Raw, PassContext], Tuple[List[Record], Extras]]
    classify: Callable[[List[Record], Extras, PassContext], Tuple[List[Any], Dict[str, Any]]]


# =============================================================================
# Restarts
# =============================================================================

def _gather_restarts(client: ClusterClient, ctx: PassContext) -> Raw:
    return {"pods": client.list_pods(ctx.namespace)}


def _normalize_restarts(raw: Raw, ctx: PassContext):
    return ctx.normalizer.to_restart_records(raw["pods"]), {}


def _classify_restarts(records, extras, ctx: PassContext):
    findings = ctx.classifier.classify_restarts(records)
    summary = {
        "restarting_containers": len(records),
        "total_restarts": sum(r.restart_count for r in records),
        "exit_codes": ctx.classifier.group_by_exit_code(records),
    }
    return findings, summary


# =============================================================================
# Probes
# =============================================================================

def _gather_probes(client: ClusterClient, ctx: PassContext) -> Raw:
    return {"pods": client.list_pods(ctx.namespace), "events": client.list_events(ctx.namespace)}


def _normalize_probes(raw: Raw, ctx: PassContext):
    return ctx.normalizer.to_probe_records(raw["pods"], raw["events"]), {}


def _classify_probes(records, extras, ctx: PassContext):
    findings = ctx.classifier.classify_probes(records)
    summary = {
        "containers": len(records),
        "containers_with_restarts": sum(1 for r in records if r.restart_count > 0),
        "probe_failures": ctx.classifier.probe_failure_breakdown(records),
    }
    return findings, summary


# =============================================================================
# Shutdown
# =============================================================================

def _gather_shutdown(client: ClusterClient, ctx: PassContext) -> Raw:
    return {"pods": client.list_pods(ctx.namespace), "events": client.list_events(ctx.namespace)}


def _normalize_shutdown(raw: Raw, ctx: PassContext):
    normalizer = ctx.normalizer
    records = normalizer.to_shutdown_records(raw["pods"])
    extras = {
        "grace_periods": normalizer.grace_periods(raw["pods"]),
        "without_pre_stop": normalizer.containers_without_pre_stop(raw["pods"]),
        "events": _event_rows(e for e in raw["events"] if is_shutdown_event(e)),
    }
    return records, extras


def _classify_shutdown(records, extras, ctx: PassContext):
    classifier = ctx.classifier
    findings = classifier.classify_shutdown(records)

    # Pods with a shutdown record already carry their own grace-period flag
    covered = {(r.namespace, r.pod_name) for r in records}
    findings.extend(classifier.classify_grace_periods(
        [e for e in extras["grace_periods"] if (e[0], e[1]) not in covered]
    ))
    findings.extend(classifier.classify_missing_pre_stop(extras["without_pre_stop"]))

    summary = {
        "sigkill_exits": sum(1 for r in records if r.exit_code == 137),
        "sigterm_exits": sum(1 for r in records if r.exit_code == 143),
        "grace_periods": classifier.grace_period_distribution(extras["grace_periods"]),
        "containers_without_prestop": len(extras["without_pre_stop"]),
        "shutdown_events": extras["events"],
    }
    return findings, summary


# =============================================================================
# Evictions
# =============================================================================

def _gather_evictions(client: ClusterClient, ctx: PassContext) -> Raw:
    return {
        "pods": client.list_pods(ctx.namespace),
        "events": client.list_events(ctx.namespace),
        "nodes": client.list_nodes(),
        "pdbs": client.list_pdbs(ctx.namespace),
        "priority_classes": client.list_priority_classes(),
    }


def _normalize_evictions(raw: Raw, ctx: PassContext):
    normalizer = ctx.normalizer
    records = normalizer.to_eviction_records(raw["pods"], raw["nodes"], raw["pdbs"])
    eviction_events = [e for e in raw["events"] if is_eviction_event(e)]
    extras = {
        "node_pressure": normalizer.to_node_pressure(raw["nodes"]),
        "missing_requests": normalizer.missing_memory_requests(raw["pods"]),
        "pdb_count": len(raw["pdbs"]),
        "eviction_events": eviction_events,
        "priority_distribution": _priority_distribution(raw["pods"]),
        "priority_classes": sorted(
            f"{pc['metadata']['name']}={pc.get('value', 0)}"
            for pc in raw["priority_classes"]
            if (pc.get("metadata") or {}).get("name")
        ),
    }
    return records, extras


def _classify_evictions(records, extras, ctx: PassContext):
    findings = ctx.classifier.classify_evictions(
        records,
        node_pressure=extras["node_pressure"],
        missing_requests=extras["missing_requests"],
        pdb_count=extras["pdb_count"],
        eviction_event_count=sum((e.get("count") or 1) for e in extras["eviction_events"]),
    )
    summary = {
        "evicted_pods": len(records),
        "eviction_events": eviction_reason_breakdown(extras["eviction_events"]),
        "nodes_under_pressure": extras["node_pressure"],
        "pods_by_priority_class": extras["priority_distribution"],
        "priority_classes": extras["priority_classes"],
        "pdb_count": extras["pdb_count"],
        "containers_without_memory_request": len(extras["missing_requests"]),
    }
    return findings, summary


def _priority_distribution(pods: Sequence[Dict[str, Any]]) -> Dict[str, int]:
    counts: Dict[str, int] = {}
    for pod in pods:
        name = (pod.get("spec") or {}).get("priorityClassName") or "none"
        counts[name] = counts.get(name, 0) + 1
    return dict(sorted(counts.items()))


# =============================================================================
# Certificates
# =============================================================================

def _gather_certificates(client: ClusterClient, ctx: PassContext) -> Raw:
    config = ctx.config
    if config.secret_name:
        if not ctx.namespace:
            raise ConfigError("--secret requires a single namespace, not --all-namespaces")
        secrets = [client.get_secret(config.secret_name, ctx.namespace)]
    else:
        secrets = client.list_secrets(ctx.namespace)

    workloads = []
    if config.verify:
        namespaces = sorted({(s.get("metadata") or {}).get("namespace") or ctx.namespace for s in secrets})
        for namespace in namespaces:
            if namespace:
                workloads.extend(client.list_workloads(namespace))
    return {"secrets": secrets, "workloads": workloads}


def _normalize_certificates(raw: Raw, ctx: PassContext):
    secrets = raw["secrets"]
    if ctx.config.secret_name:
        candidates = secrets
    else:
        candidates = [s for s in secrets if s.get("type") == TLS_SECRET_TYPE]
    records = ctx.normalizer.to_certificate_records(
        candidates, now=ctx.now, workloads=raw["workloads"], verify=ctx.config.verify
    )
    extras = {"tls_secrets": len(candidates), "non_tls_secrets": len(secrets) - len(candidates)}
    return records, extras


def _classify_certificates(records, extras, ctx: PassContext):
    classifier = ctx.classifier
    findings = classifier.classify_certificates(
        records,
        non_tls_secret_count=extras["non_tls_secrets"] if extras["tls_secrets"] == 0 else None,
    )
    statuses: Dict[str, int] = {}
    for record in records:
        status = certificate_status(record.days_until_expiry, classifier.thresholds)[0]
        statuses[status] = statuses.get(status, 0) + 1
    summary = {
        "tls_secrets": extras["tls_secrets"],
        "non_tls_secrets": extras["non_tls_secrets"],
        "expiry_warning_days": classifier.thresholds.cert_expiry_warning_days,
        "certificate_status": dict(sorted(statuses.items())),
    }
    return findings, summary


def _event_rows(events) -> List[Dict[str, Any]]:
    rows = []
    for event in events:
        involved = event.get("involvedObject") or {}
        rows.append({
            "namespace": involved.get("namespace") or "",
            "name": involved.get("name") or "",
            "reason": event.get("reason") or "",
            "message": event.get("message") or "",
            "count": event.get("count") or 1,
        })
    return sorted(rows, key=lambda r: (r["namespace"], r["name"], r["reason"], r["message"]))


PASSES: Dict[str, PassDefinition] = {
    d.name: d
    for d in (
        PassDefinition("restarts", "Pod restart status and exit-code analysis",
                       _gather_restarts, _normalize_restarts, _classify_restarts),
        PassDefinition("probes", "Liveness/readiness/startup probe diagnosis",
                       _gather_probes, _normalize_probes, _classify_probes),
        PassDefinition("shutdown", "SIGTERM/SIGKILL shutdown diagnosis",
                       _gather_shutdown, _normalize_shutdown, _classify_shutdown),
        PassDefinition("evictions", "Pod eviction diagnosis",
                       _gather_evictions, _normalize_evictions, _classify_evictions),
        PassDefinition("certificates", "TLS certificate expiry check",
                       _gather_certificates, _normalize_certificates, _classify_certificates),
    )
}


# =============================================================================
# Pass execution
# =============================================================================

ClientFactory = Callable[..., ClusterClient]


class DiagnosticPass:
    """
    One instantiation of the pass state machine.

    Example:
        diagnostic = DiagnosticPass(config, "restarts", "default", provider=provider)
        result = diagnostic.run()
    """

    def __init__(
        self,
        config: DiagnosticConfig,
        pass_name: str,
        namespace: Optional[str],
        provider: Optional[GCloudCredentialProvider] = None,
        client_factory: Optional[ClientFactory] = None,
        progress: Optional[ProgressCallback] = None,
        cancel_scope: Optional[CancelScope] = None,
        now: Optional[datetime] = None,
    ):
        if pass_name not in PASSES:
            raise ConfigError(f"Unknown pass: {pass_name}. Use {', '.join(PASSES)}")
        self.config = config
        self.definition = PASSES[pass_name]
        self.namespace = namespace
        self.provider = provider
        self.client_factory = client_factory or ClusterClient.from_kubeconfig
        self.progress = progress or no_progress
        self.cancel_scope = cancel_scope or CancelScope(config.pass_timeout)
        self.context = PassContext(
            config=config,
            namespace=namespace,
            normalizer=Normalizer(config.thresholds.min_grace_period),
            classifier=Classifier(config.thresholds),
            now=now or datetime.now(timezone.utc),
        )
        self.tls_relaxed = False

    @property
    def prefix(self) -> str:
        return f"[{self.definition.name}/{self.namespace or 'all'}]"

    def _enter(self, phase: Phase, check: bool = True) -> None:
        # Phases after Gather work on data already in hand and are not cancelled
        if check:
            self.cancel_scope.check()
        logger.debug(f"{self.prefix} {phase.value}")
        self.progress(self.definition.name, self.namespace, phase)

    def run(self) -> PassResult:
        """
        Execute the pass.

        Returns:
            PassResult; FAILED with error details when data could not be
            gathered, never a partial report.
        """
        config = self.config
        ctx = self.context
        result = PassResult(
            pass_name=self.definition.name,
            namespace=self.namespace,
            status=PassStatus.OK,
            project=config.project,
            cluster=config.cluster,
            location_flag=config.location_flag,
            location=config.location,
        )

        try:
            client = self._connect()
            self._enter(Phase.GATHER)
            raw = self.definition.gather(client, ctx)
        except DiagnosticError as e:
            result.tls_relaxed = self.tls_relaxed
            return self._failed(result, e)
        result.tls_relaxed = self.tls_relaxed

        self._enter(Phase.NORMALIZE, check=False)
        records, extras = self.definition.normalize(raw, ctx)

        self._enter(Phase.CLASSIFY, check=False)
        findings, summary = self.definition.classify(records, extras, ctx)
        findings.extend(data_shape_findings(ctx.normalizer.errors))

        self._enter(Phase.REPORT, check=False)
        result.records = sort_records(records)
        result.findings = sort_findings(findings)
        result.summary = summary

        self._enter(Phase.SUMMARIZE, check=False)
        result.suggestions = suggest_passes(result.findings, self.definition.name)
        logger.info(
            f"{self.prefix} {len(result.records)} record(s), "
            f"{result.count(Severity.CRITICAL)} critical, {result.count(Severity.WARNING)} warning"
        )
        return result

    def _connect(self) -> ClusterClient:
        config = self.config

        self._enter(Phase.AUTHENTICATE)
        context = None
        if not config.use_current_context:
            if self.provider is None:
                self.provider = GCloudCredentialProvider(
                    config.project, config.cluster, zone=config.zone, region=config.region,
                    auto_login=config.auto_login,
                )
            context = self.provider.ensure_credentials()

        self._enter(Phase.SET_CONTEXT)
        client = self.client_factory(
            context=context,
            config_file=config.kubeconfig,
            request_timeout=config.request_timeout,
            cancel_scope=self.cancel_scope,
        )

        self._enter(Phase.VERIFY_CONNECTIVITY)
        try:
            client.verify_connectivity()
        except TransportError as e:
            if not (e.tls_failure and config.fix_tls):
                raise
            logger.warning(f"{self.prefix} TLS trust failure; retrying once without certificate verification")
            self._enter(Phase.VERIFY_CONNECTIVITY_RELAXED)
            client = client.relaxed()
            self.tls_relaxed = True
            client.verify_connectivity()
        return client

    def _failed(self, result: PassResult, error: DiagnosticError) -> PassResult:
        logger.error(f"{self.prefix} {error.kind}: {error.message}")
        result.status = PassStatus.FAILED
        result.error = error.to_dict()
        result.records = []
        result.findings = []
        result.summary = {}
        return result


def run_pass(config: DiagnosticConfig, pass_name: str, namespace: Optional[str] = None, **kwargs) -> PassResult:
    """Run a single pass; convenience wrapper around DiagnosticPass."""
    return DiagnosticPass(config, pass_name, namespace, **kwargs).run()


def run_passes(
    config: DiagnosticConfig,
    pass_names: Sequence[str],
    provider: Optional[GCloudCredentialProvider] = None,
    client_factory: Optional[ClientFactory] = None,
    progress: Optional[ProgressCallback] = None,
    cancel_scope: Optional[CancelScope] = None,
    now: Optional[datetime] = None,
) -> List[PassResult]:
    """
    Run every requested pass for every namespace scope.

    Passes run on a thread pool when more than one is requested. Results
    come back in request order (pass, then namespace) regardless of
    completion order. A KeyboardInterrupt cancels the shared scope so
    in-flight passes stop at their next query, and unstarted passes are
    dropped.

    Raises:
        ConfigError: On invalid configuration, before any network call
    """
    config.validate()
    unknown = [p for p in pass_names if p not in PASSES]
    if unknown:
        raise ConfigError(f"Unknown pass: {', '.join(unknown)}. Use {', '.join(PASSES)}")

    if provider is None and not config.use_current_context:
        provider = GCloudCredentialProvider(
            config.project, config.cluster, zone=config.zone, region=config.region,
            auto_login=config.auto_login,
        )
    cancel_scope = cancel_scope or CancelScope(config.pass_timeout)
    now = now or datetime.now(timezone.utc)

    passes = [
        DiagnosticPass(
            config, name, namespace,
            provider=provider,
            client_factory=client_factory,
            progress=progress,
            cancel_scope=cancel_scope,
            now=now,
        )
        for name in pass_names
        for namespace in config.namespace_scopes()
    ]
    logger.info(f"Running {len(passes)} pass(es) with up to {config.workers} worker(s)")

    if len(passes) == 1 or config.workers == 1:
        try:
            return [p.run() for p in passes]
        except KeyboardInterrupt:
            cancel_scope.cancel()
            raise

    executor = ThreadPoolExecutor(max_workers=min(config.workers, len(passes)))
    futures = [executor.submit(p.run) for p in passes]
    try:
        return [f.result() for f in futures]
    except KeyboardInterrupt:
        logger.warning("Interrupted; cancelling outstanding passes")
        cancel_scope.cancel()
        for future in futures:
            future.cancel()
        raise
    finally:
        executor.shutdown(wait=True, cancel_futures=True)
