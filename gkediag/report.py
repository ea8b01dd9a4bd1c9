"""
Report Builder

Renders pass results as human-readable tables, JSON or CSV. Output is a
pure function of the result: no timestamps, every collection explicitly
ordered, so the same snapshot always renders byte-identical text.
"""

import csv
import io
import json
import logging
import os
import tempfile
from dataclasses import fields
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from rich import box
from rich.console import Console
from rich.table import Table
from rich.text import Text

from .analysis.rules import certificate_status
from .config import RuleThresholds
from .errors import ConfigError
from .models import (
    CertificateRecord,
    ContainerRestartRecord,
    EvictionRecord,
    PassResult,
    ProbeRecord,
    Record,
    Severity,
    ShutdownRecord,
    UNKNOWN,
)

logger = logging.getLogger(__name__)

REPORT_WIDTH = 160
INSECURE_FLAG = "--insecure-skip-tls-verify=true"

PASS_TITLES = {
    "restarts": "Pod Restart Status",
    "probes": "Probe Diagnosis",
    "shutdown": "Shutdown Signal Diagnosis",
    "evictions": "Eviction Diagnosis",
    "certificates": "Certificate Check",
}


def _probe_summary(probe: Optional[Dict[str, Any]]) -> str:
    if not probe:
        return "none"
    if probe.get("httpGet"):
        http = probe["httpGet"]
        return f"http {http.get('path', '/')}:{http.get('port', '?')}"
    if probe.get("tcpSocket"):
        return f"tcp :{probe['tcpSocket'].get('port', '?')}"
    if probe.get("grpc"):
        return f"grpc :{probe['grpc'].get('port', '?')}"
    if probe.get("exec"):
        return "exec"
    return "configured"


def _yes_no(value: Optional[bool]) -> str:
    if value is None:
        return "-"
    return "yes" if value else "no"


COLUMNS: Dict[str, List[tuple]] = {
    ContainerRestartRecord.kind: [
        ("Namespace", lambda r: r.namespace),
        ("Pod", lambda r: r.pod_name),
        ("Container", lambda r: r.container_name),
        ("Service", lambda r: r.service_name),
        ("Version", lambda r: r.image_version),
        ("Restarts", lambda r: r.restart_count),
        ("Exit Code", lambda r: r.last_exit_code),
        ("Reason", lambda r: r.last_termination_reason),
        ("Last Finished", lambda r: r.last_finished_at),
    ],
    ProbeRecord.kind: [
        ("Namespace", lambda r: r.namespace),
        ("Pod", lambda r: r.pod_name),
        ("Container", lambda r: r.container_name),
        ("Phase", lambda r: r.pod_phase),
        ("Liveness", lambda r: _probe_summary(r.liveness_probe)),
        ("Readiness", lambda r: _probe_summary(r.readiness_probe)),
        ("Startup", lambda r: _probe_summary(r.startup_probe)),
        ("Restarts", lambda r: r.restart_count),
        ("Probe Events", lambda r: len(r.recent_probe_events)),
    ],
    ShutdownRecord.kind: [
        ("Namespace", lambda r: r.namespace),
        ("Pod", lambda r: r.pod_name),
        ("Container", lambda r: r.container_name),
        ("Exit Code", lambda r: r.exit_code),
        ("Restarts", lambda r: r.restart_count),
        ("Grace (s)", lambda r: r.termination_grace_period_seconds),
        ("PreStop", lambda r: _yes_no(r.pre_stop_hook_present)),
        ("Reason", lambda r: r.last_termination_reason),
    ],
    EvictionRecord.kind: [
        ("Namespace", lambda r: r.namespace),
        ("Pod", lambda r: r.pod_name),
        ("Node", lambda r: r.node_name),
        ("Node Pressure", lambda r: ", ".join(r.node_pressure_conditions) or "-"),
        ("Memory Request", lambda r: _yes_no(r.resource_requests_present)),
        ("Priority Class", lambda r: r.priority_class_name or "none"),
        ("PDB", lambda r: _yes_no(r.pdb_coverage)),
        ("Message", lambda r: r.message),
    ],
    CertificateRecord.kind: [
        ("Namespace", lambda r: r.namespace),
        ("Secret", lambda r: r.secret_name),
        ("Field", lambda r: r.certificate_field),
        ("Type", lambda r: r.certificate_type),
        ("Days Left", lambda r: r.days_until_expiry),
        ("Not After", lambda r: r.not_after),
        ("Self-Signed", lambda r: _yes_no(r.is_self_signed)),
        ("Key Match", lambda r: _yes_no(r.key_matches_cert)),
        ("Workloads", lambda r: ", ".join(r.referencing_workloads) or "-"),
    ],
}


# =============================================================================
# Ordering
# =============================================================================

def sort_records(records: Sequence[Record]) -> List[Record]:
    """Deterministic record order; restart rows by last finished time first."""
    def key(record):
        if isinstance(record, ContainerRestartRecord):
            return (record.last_finished_at, record.namespace, record.pod_name, record.container_name)
        if isinstance(record, CertificateRecord):
            return ("", record.namespace, record.secret_name, record.certificate_field)
        return ("", record.namespace, record.name, getattr(record, "container_name", ""))
    return sorted(records, key=key)


# =============================================================================
# Follow-up commands
# =============================================================================

def follow_up_commands(result: PassResult) -> List[str]:
    """
    Copy-pasteable kubectl commands templated from the pass records.

    Commands are advisory only and never executed.
    """
    commands: List[str] = []
    namespaces = sorted({getattr(r, "namespace", "") for r in result.records})

    for record in result.records:
        if isinstance(record, ContainerRestartRecord):
            commands.append(
                f"kubectl logs {record.pod_name} -n {record.namespace} -c {record.container_name} --previous"
            )
            commands.append(f"kubectl describe pod {record.pod_name} -n {record.namespace}")
        elif isinstance(record, ShutdownRecord):
            commands.append(
                f"kubectl logs {record.pod_name} -n {record.namespace} -c {record.container_name} --previous"
            )
        elif isinstance(record, ProbeRecord):
            if record.recent_probe_events:
                commands.append(f"kubectl describe pod {record.pod_name} -n {record.namespace}")
        elif isinstance(record, EvictionRecord):
            if record.node_name and record.node_name != UNKNOWN:
                commands.append(f"kubectl describe node {record.node_name}")
        elif isinstance(record, CertificateRecord):
            commands.append(f"kubectl get secret {record.secret_name} -n {record.namespace} -o yaml")
            for workload in record.referencing_workloads:
                kind, name = workload.split("/", 1)
                commands.append(f"kubectl rollout restart {kind.lower()}/{name} -n {record.namespace}")

    if result.pass_name == "restarts":
        commands.extend(f"kubectl top pods -n {ns}" for ns in namespaces)
    if result.pass_name == "evictions" and result.records:
        commands.extend(
            f"kubectl delete pods -n {ns} --field-selector status.phase=Failed" for ns in namespaces
        )

    unique = list(dict.fromkeys(commands))
    if result.tls_relaxed:
        unique = [f"{c} {INSECURE_FLAG}" for c in unique]
    return unique


def suggested_commands(result: PassResult) -> List[str]:
    """gkediag invocations for the passes suggested by the findings."""
    if not result.suggestions:
        return []
    args = []
    if result.project and result.cluster and result.location:
        args = ["-p", result.project, "-c", result.cluster, result.location_flag, result.location]
    if result.namespace:
        args += ["-n", result.namespace]
    else:
        args.append("-A")
    return [" ".join(["gkediag", _command_name(p)] + args) for p in result.suggestions]


def _command_name(pass_name: str) -> str:
    return "certs" if pass_name == "certificates" else pass_name


# =============================================================================
# Rendering
# =============================================================================

def render(result: PassResult, fmt: str = "human") -> str:
    """
    Render one pass result.

    Args:
        result: Result to render
        fmt: human, json or list
    """
    if fmt == "human":
        return _render_human(result)
    if fmt == "json":
        data = result.to_dict()
        data["commands"] = follow_up_commands(result)
        return json.dumps(data, indent=2, sort_keys=True) + "\n"
    if fmt == "list":
        return _render_list(result)
    raise ConfigError(f"Invalid format: {fmt}")


def render_all(results: Sequence[PassResult], fmt: str = "human") -> str:
    """Render several results; JSON becomes a single array."""
    if fmt == "json":
        payload = []
        for result in results:
            data = result.to_dict()
            data["commands"] = follow_up_commands(result)
            payload.append(data)
        return json.dumps(payload, indent=2, sort_keys=True) + "\n"

    parts = [render(result, fmt) for result in results]
    if fmt == "human" and len(results) > 1:
        parts.append(render_summary(results))
    return "\n".join(parts)


def render_summary(results: Sequence[PassResult]) -> str:
    console = _console()
    table = Table(title="Summary", box=box.SIMPLE, title_justify="left")
    for header in ("Pass", "Namespace", "Status", "Critical", "Warning", "Info"):
        table.add_column(header, no_wrap=True)
    for result in results:
        table.add_row(
            *[_cell(v) for v in (
                result.pass_name,
                result.scope,
                result.status.value,
                result.count(Severity.CRITICAL),
                result.count(Severity.WARNING),
                result.count(Severity.INFO),
            )]
        )
    console.print(table)
    return console.file.getvalue()


def _console() -> Console:
    return Console(
        file=io.StringIO(),
        width=REPORT_WIDTH,
        color_system=None,
        force_terminal=False,
        highlight=False,
        emoji=False,
    )


def _cell(value: Any) -> Text:
    return Text(str(value))


def _line(console: Console, text: str = "") -> None:
    console.print(Text(text))


def _render_human(result: PassResult) -> str:
    console = _console()
    title = PASS_TITLES.get(result.pass_name, result.pass_name)
    header = f"{title} | namespace: {result.scope}"
    if result.cluster:
        header += f" | cluster: {result.cluster}"
    if result.project:
        header += f" | project: {result.project}"
    _line(console, header)
    _line(console, "=" * len(header))

    if result.tls_relaxed:
        _line(console, "TLS certificate verification was disabled for this session")

    if not result.ok:
        error = result.error or {}
        _line(console, f"FAILED ({error.get('kind', 'error')}): {error.get('message', '')}")
        if error.get("hint"):
            _line(console, f"Hint: {error['hint']}")
        if error.get("candidates"):
            _line(console, "Did you mean:")
            for candidate in error["candidates"]:
                _line(console, f"  - {candidate}")
        return console.file.getvalue()

    if result.records:
        console.print(_records_table(result))
    else:
        _line(console, "No matching records.")

    if result.pass_name == "restarts" and result.summary.get("exit_codes"):
        console.print(_exit_code_table(result.summary["exit_codes"]))

    _render_summary_section(console, result)

    if result.findings:
        console.print(_findings_table(result))
    _line(
        console,
        f"Findings: {result.count(Severity.CRITICAL)} critical, "
        f"{result.count(Severity.WARNING)} warning, {result.count(Severity.INFO)} info",
    )

    commands = follow_up_commands(result)
    if commands:
        _line(console)
        _line(console, "Follow-up commands:")
        for command in commands:
            _line(console, f"  {command}")

    suggestions = suggested_commands(result)
    if suggestions:
        _line(console)
        _line(console, "Suggested next passes:")
        for command in suggestions:
            _line(console, f"  {command}")

    return console.file.getvalue()


def _records_table(result: PassResult) -> Table:
    kind = result.records[0].kind
    columns = COLUMNS[kind]
    table = Table(box=box.SIMPLE, title=f"{len(result.records)} record(s)", title_justify="left")
    for header, _ in columns:
        table.add_column(header, overflow="fold")
    if kind == CertificateRecord.kind:
        table.add_column("Status", no_wrap=True)
        window = result.summary.get("expiry_warning_days", RuleThresholds().cert_expiry_warning_days)
        thresholds = RuleThresholds(cert_expiry_warning_days=window)

    for record in result.records:
        row = [_cell(getter(record)) for _, getter in columns]
        if kind == CertificateRecord.kind:
            row.append(_cell(certificate_status(record.days_until_expiry, thresholds)[0]))
        table.add_row(*row)
    return table


def _exit_code_table(groups: List[Dict[str, Any]]) -> Table:
    table = Table(box=box.SIMPLE, title="Exit Code Analysis", title_justify="left")
    for header in ("Exit Code", "Count", "Meaning", "Severity", "Reasons"):
        table.add_column(header, overflow="fold")
    for group in groups:
        table.add_row(*[_cell(v) for v in (
            group["exit_code"],
            group["count"],
            group["meaning"],
            group["severity"],
            ", ".join(group["reasons"]) or "-",
        )])
    return table


def _findings_table(result: PassResult) -> Table:
    table = Table(box=box.SIMPLE, title="Findings", title_justify="left")
    table.add_column("Severity", no_wrap=True)
    table.add_column("Code", no_wrap=True)
    table.add_column("Namespace", overflow="fold")
    table.add_column("Name", overflow="fold")
    table.add_column("Container", overflow="fold")
    table.add_column("Message", overflow="fold", ratio=1)
    for finding in result.findings:
        table.add_row(*[_cell(v) for v in (
            finding.severity.value.upper(),
            finding.code,
            finding.namespace or "-",
            finding.name or "-",
            finding.container or "-",
            finding.message,
        )])
    return table


def _render_summary_section(console: Console, result: PassResult) -> None:
    keys = [k for k in sorted(result.summary) if k != "exit_codes"]
    if not keys:
        return
    _line(console, "Summary:")
    for key in keys:
        label = key.replace("_", " ")
        value = result.summary[key]
        if isinstance(value, dict):
            if not value:
                _line(console, f"  {label}: none")
                continue
            _line(console, f"  {label}:")
            for sub_key in sorted(value):
                _line(console, f"    {sub_key}: {value[sub_key]}")
        elif isinstance(value, list):
            _line(console, f"  {label}: {len(value)}")
            for item in value:
                if isinstance(item, dict):
                    item = ", ".join(f"{k}={item[k]}" for k in sorted(item))
                _line(console, f"    - {item}")
        else:
            _line(console, f"  {label}: {value}")
    _line(console)


def _render_list(result: PassResult) -> str:
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")

    if not result.ok:
        error = result.error or {}
        writer.writerow(["pass", "namespace", "status", "kind", "message", "hint"])
        writer.writerow([
            result.pass_name, result.scope, result.status.value,
            error.get("kind", ""), error.get("message", ""), error.get("hint") or "",
        ])
        return buffer.getvalue()

    if result.records:
        names = [f.name for f in fields(result.records[0])]
        writer.writerow(["pass", "kind"] + names)
        for record in result.records:
            writer.writerow(
                [result.pass_name, record.kind] + [_csv_value(getattr(record, n)) for n in names]
            )
        writer.writerow([])

    writer.writerow(["pass", "severity", "code", "namespace", "name", "container", "message"])
    for finding in result.findings:
        writer.writerow([
            result.pass_name,
            finding.severity.value,
            finding.code,
            finding.namespace,
            finding.name,
            finding.container,
            finding.message,
        ])
    return buffer.getvalue()


def _csv_value(value: Any) -> Any:
    if value is None:
        return ""
    if isinstance(value, tuple):
        return ";".join(v.probe_type + ":" + v.reason if isinstance(v, Record) else str(v) for v in value)
    if isinstance(value, dict):
        return json.dumps(value, sort_keys=True)
    return value


# =============================================================================
# Output
# =============================================================================

def write_report(path: str, text: str) -> None:
    """
    Atomically write a report file.

    Writes to a temporary file next to the target and renames it into
    place; the temporary file is removed if anything fails.
    """
    target = Path(path)
    fd, tmp_path = tempfile.mkstemp(prefix=f".{target.name}.", suffix=".tmp", dir=target.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(text)
        os.replace(tmp_path, target)
    except BaseException:
        if os.path.exists(tmp_path):
            os.unlink(tmp_path)
        raise
    logger.info(f"Report written to {target}")
