"""
Tests for gkediag/orchestrator.py — pass state machine and parallel runs
"""

import threading
import time
from unittest.mock import MagicMock, patch

import pytest

from conftest import (
    NOW,
    make_container,
    make_event,
    make_node,
    make_pdb,
    make_pod,
    make_secret,
    make_status,
    make_tls_secret,
)
from gkediag.cluster.cancellation import CancelScope
from gkediag.config import DiagnosticConfig
from gkediag.errors import (
    AuthError,
    ConfigError,
    NotFoundError,
    PermissionDeniedError,
    TransportError,
)
from gkediag.models import PassStatus, Severity
from gkediag.orchestrator import PASSES, DiagnosticPass, Phase, run_pass, run_passes


def _fake_client(pods=None, events=None, nodes=None, pdbs=None, secrets=None):
    fake = MagicMock()
    fake.list_pods.return_value = pods or []
    fake.list_events.return_value = events or []
    fake.list_nodes.return_value = nodes or []
    fake.list_pdbs.return_value = pdbs or []
    fake.list_priority_classes.return_value = []
    fake.list_secrets.return_value = secrets or []
    fake.list_workloads.return_value = []
    return fake


@pytest.fixture
def local_config():
    """Config using the current kubeconfig context (no gcloud)."""
    return DiagnosticConfig(use_current_context=True, namespaces=["default"])


class TestDiagnosticPass:
    """Single pass execution."""

    def test_phases_in_order(self, local_config):
        phases = []
        fake = _fake_client(pods=[make_pod(statuses=[make_status(restarts=2, exit_code=1)])])

        result = run_pass(
            local_config, "restarts", "default",
            client_factory=MagicMock(return_value=fake),
            progress=lambda name, ns, phase: phases.append(phase),
        )

        assert result.status == PassStatus.OK
        assert len(result.records) == 1
        assert phases == [
            Phase.AUTHENTICATE, Phase.SET_CONTEXT, Phase.VERIFY_CONNECTIVITY, Phase.GATHER,
            Phase.NORMALIZE, Phase.CLASSIFY, Phase.REPORT, Phase.SUMMARIZE,
        ]

    def test_zero_findings_is_ok(self, local_config):
        result = run_pass(local_config, "restarts", "default", client_factory=MagicMock(return_value=_fake_client()))
        assert result.ok
        assert result.records == []
        assert result.findings == []
        assert result.error is None

    def test_credentials_fetched_through_provider(self, config):
        provider = MagicMock()
        provider.ensure_credentials.return_value = "gke_my-project_us-central1-a_prod"
        factory = MagicMock(return_value=_fake_client())

        run_pass(config, "restarts", "default", provider=provider, client_factory=factory)

        assert factory.call_args[1]["context"] == "gke_my-project_us-central1-a_prod"

    def test_auth_failure_is_failed_result(self, config):
        provider = MagicMock()
        provider.ensure_credentials.side_effect = AuthError("Not logged in to gcloud", hint="Use --auto-login")
        factory = MagicMock()

        result = run_pass(config, "restarts", "default", provider=provider, client_factory=factory)

        assert result.status == PassStatus.FAILED
        assert result.error["kind"] == "auth"
        assert result.error["hint"] == "Use --auto-login"
        factory.assert_not_called()

    def test_gather_failure_not_conflated_with_empty(self, local_config):
        fake = _fake_client()
        fake.list_pods.side_effect = PermissionDeniedError("Permission denied while listing pods")

        result = run_pass(local_config, "restarts", "default", client_factory=MagicMock(return_value=fake))

        assert result.status == PassStatus.FAILED
        assert result.error["kind"] == "permission-denied"
        assert result.records == []

    def test_unknown_pass(self, local_config):
        with pytest.raises(ConfigError):
            DiagnosticPass(local_config, "logs", "default")


class TestTrustRelaxation:
    """VerifyConnectivity may relax TLS exactly once, only when asked."""

    def _tls_error(self):
        return TransportError("TLS trust failure", tls_failure=True)

    def test_tls_failure_without_fix_tls(self, local_config):
        fake = _fake_client()
        fake.verify_connectivity.side_effect = self._tls_error()

        result = run_pass(local_config, "restarts", "default", client_factory=MagicMock(return_value=fake))

        assert result.status == PassStatus.FAILED
        assert result.error["kind"] == "transport"
        fake.relaxed.assert_not_called()

    def test_tls_failure_with_fix_tls(self, local_config):
        local_config.fix_tls = True
        fake = _fake_client()
        fake.verify_connectivity.side_effect = self._tls_error()
        relaxed = _fake_client(pods=[make_pod(statuses=[make_status(restarts=1, exit_code=1)])])
        fake.relaxed.return_value = relaxed
        phases = []

        result = run_pass(
            local_config, "restarts", "default",
            client_factory=MagicMock(return_value=fake),
            progress=lambda name, ns, phase: phases.append(phase),
        )

        assert result.ok
        assert result.tls_relaxed is True
        assert fake.relaxed.call_count == 1
        relaxed.list_pods.assert_called_once_with("default")
        assert Phase.VERIFY_CONNECTIVITY_RELAXED in phases

    def test_relaxed_retry_fails_terminally(self, local_config):
        local_config.fix_tls = True
        fake = _fake_client()
        fake.verify_connectivity.side_effect = self._tls_error()
        relaxed = _fake_client()
        relaxed.verify_connectivity.side_effect = TransportError("Unable to connect")
        fake.relaxed.return_value = relaxed

        result = run_pass(local_config, "restarts", "default", client_factory=MagicMock(return_value=fake))

        assert result.status == PassStatus.FAILED
        assert fake.relaxed.call_count == 1
        assert relaxed.relaxed.call_count == 0

    def test_non_tls_transport_error_not_relaxed(self, local_config):
        local_config.fix_tls = True
        fake = _fake_client()
        fake.verify_connectivity.side_effect = TransportError("Unable to connect")

        result = run_pass(local_config, "restarts", "default", client_factory=MagicMock(return_value=fake))

        assert result.status == PassStatus.FAILED
        fake.relaxed.assert_not_called()


class TestPasses:
    """End-to-end behaviour of each pass against fake snapshots."""

    def test_restarts_high_sigterm(self, local_config):
        pods = [make_pod(f"web-{i}", statuses=[make_status(restarts=1, exit_code=143)]) for i in range(4)]
        result = run_pass(local_config, "restarts", "default",
                          client_factory=MagicMock(return_value=_fake_client(pods=pods)))

        codes = [f.code for f in result.findings]
        assert "high-sigterm-rate" in codes
        assert result.suggestions == ["shutdown"]
        assert result.summary["exit_codes"][0]["count"] == 4

    def test_probes(self, local_config):
        probe = {"httpGet": {"path": "/health", "port": 8080}}
        pods = [make_pod(containers=[make_container(liveness=probe, readiness=probe)])]
        events = [make_event("web-1", "Liveness probe failed: timeout", container="app")]
        result = run_pass(local_config, "probes", "default",
                          client_factory=MagicMock(return_value=_fake_client(pods=pods, events=events)))

        codes = [f.code for f in result.findings]
        assert codes.count("probe-anti-pattern") == 1
        assert "probe-failures" in codes
        assert result.summary["probe_failures"] == {"Liveness": 1}

    def test_shutdown(self, local_config):
        pods = [
            make_pod("web-1", statuses=[make_status(restarts=5, exit_code=137)], grace=30),
            make_pod("web-2", containers=[make_container(pre_stop=True)], grace=10),
        ]
        events = [make_event("web-1", "Stopping container app", reason="Killing")]
        result = run_pass(local_config, "shutdown", "default",
                          client_factory=MagicMock(return_value=_fake_client(pods=pods, events=events)))

        assert result.findings[0].severity == Severity.CRITICAL
        assert result.findings[0].code == "forced-kill-no-prestop"
        assert result.summary["grace_periods"] == {"total": 2, "default": 1, "short": 1, "long": 0}
        assert result.summary["containers_without_prestop"] == 1
        assert result.summary["shutdown_events"][0]["reason"] == "Killing"
        short = [f for f in result.findings if f.code == "short-grace-period"]
        assert [f.name for f in short] == ["web-2"]

    def test_evictions(self, local_config):
        pods = [
            make_pod("job-1", phase="Failed", reason="Evicted", message="low on memory", priority_class="batch"),
            make_pod("web-1", containers=[make_container(memory_request=None)]),
        ]
        events = [make_event("job-1", "The node was low on resource: memory.", reason="Evicted")]
        fake = _fake_client(pods=pods, events=events, nodes=[make_node("node-1", ["MemoryPressure"])])
        result = run_pass(local_config, "evictions", "default", client_factory=MagicMock(return_value=fake))

        codes = [f.code for f in result.findings]
        assert codes[0] == "node-pressure"
        assert {"pod-evicted", "memory-request-missing", "pdb-missing", "eviction-events"} <= set(codes)
        assert result.summary["pods_by_priority_class"] == {"batch": 1, "none": 1}
        assert result.summary["eviction_events"] == {"Evicted": 1}

    def test_evictions_with_pdb(self, local_config):
        fake = _fake_client(pods=[make_pod()], pdbs=[make_pdb()])
        result = run_pass(local_config, "evictions", "default", client_factory=MagicMock(return_value=fake))
        assert "pdb-missing" not in [f.code for f in result.findings]

    def test_certificates_no_tls_secrets(self, local_config):
        secrets = [make_secret("db-password", data={"password": b"x"}, secret_type="Opaque")]
        result = run_pass(local_config, "certificates", "default", now=NOW,
                          client_factory=MagicMock(return_value=_fake_client(secrets=secrets)))

        assert result.ok
        assert result.records == []
        assert len(result.findings) == 1
        assert result.findings[0].code == "no-tls-secrets"
        assert result.findings[0].severity == Severity.INFO

    def test_certificates_expiring(self, local_config):
        secrets = [make_tls_secret(7), make_tls_secret(90, name="api-tls")]
        result = run_pass(local_config, "certificates", "default", now=NOW,
                          client_factory=MagicMock(return_value=_fake_client(secrets=secrets)))

        assert [r.secret_name for r in result.records] == ["api-tls", "web-tls"]
        assert result.findings[0].code == "cert-expires-soon"
        assert result.summary["certificate_status"] == {"expires soon": 1, "valid": 1}

    def test_certificates_bad_data_degrades(self, local_config):
        bad = make_secret("broken-tls", data={"tls.crt": b"not a certificate"})
        secrets = [bad, make_tls_secret(90)]
        result = run_pass(local_config, "certificates", "default", now=NOW,
                          client_factory=MagicMock(return_value=_fake_client(secrets=secrets)))

        assert result.ok
        assert len(result.records) == 1
        shape = [f for f in result.findings if f.code == "data-shape-error"]
        assert shape[0].name == "broken-tls"

    def test_single_secret_not_found(self, local_config):
        local_config.secret_name = "web-tsl"
        fake = _fake_client()
        fake.get_secret.side_effect = NotFoundError("Secret not found: web-tsl", candidates=["web-tls"])

        result = run_pass(local_config, "certificates", "default",
                          client_factory=MagicMock(return_value=fake))

        assert result.status == PassStatus.FAILED
        assert result.error["candidates"] == ["web-tls"]

    def test_single_secret_verify(self, local_config):
        local_config.secret_name = "web-tls"
        local_config.verify = True
        fake = _fake_client()
        fake.get_secret.return_value = make_tls_secret(30)
        fake.list_workloads.return_value = [{
            "kind": "Deployment",
            "metadata": {"name": "web", "namespace": "default"},
            "spec": {"template": {"spec": {"volumes": [{"secret": {"secretName": "web-tls"}}]}}},
        }]

        result = run_pass(local_config, "certificates", "default", now=NOW,
                          client_factory=MagicMock(return_value=fake))

        record = result.records[0]
        assert record.key_matches_cert is True
        assert record.referencing_workloads == ("Deployment/web",)
        fake.list_workloads.assert_called_once_with("default")


class TestRunPasses:
    """Parallel multi-namespace runs."""

    def test_results_in_request_order(self):
        config = DiagnosticConfig(use_current_context=True, namespaces=["a", "b", "c"], workers=3)
        delays = {"a": 0.15, "b": 0.05, "c": 0.0}

        def factory(**kwargs):
            fake = _fake_client()
            fake.list_pods.side_effect = lambda ns: time.sleep(delays[ns]) or []
            return fake

        results = run_passes(config, ["restarts", "probes"], client_factory=factory)

        assert [(r.pass_name, r.namespace) for r in results] == [
            ("restarts", "a"), ("restarts", "b"), ("restarts", "c"),
            ("probes", "a"), ("probes", "b"), ("probes", "c"),
        ]
        assert all(r.ok for r in results)

    def test_passes_isolated(self):
        config = DiagnosticConfig(use_current_context=True, namespaces=["a", "b"], workers=2)
        pods = {
            "a": [make_pod("web-1", "a", statuses=[make_status(restarts=1, exit_code=1)])],
            "b": [],
        }

        def factory(**kwargs):
            fake = _fake_client()
            fake.list_pods.side_effect = lambda ns: pods[ns]
            return fake

        results = run_passes(config, ["restarts"], client_factory=factory)
        assert len(results[0].records) == 1
        assert results[1].records == []

    def test_cancelled_scope_fails_every_pass(self):
        config = DiagnosticConfig(use_current_context=True, namespaces=["a", "b"], workers=2)
        scope = CancelScope()
        scope.cancel()
        factory = MagicMock(return_value=_fake_client())

        results = run_passes(config, ["restarts"], client_factory=factory, cancel_scope=scope)

        assert [r.error["kind"] for r in results] == ["cancelled", "cancelled"]
        factory.assert_not_called()

    def test_cancel_stops_running_pass(self):
        config = DiagnosticConfig(use_current_context=True, namespaces=["a"], pass_timeout=30)
        scope = CancelScope()
        started = threading.Event()

        def factory(**kwargs):
            fake = _fake_client()

            def list_and_cancel(ns):
                started.set()
                scope.cancel()
                return []

            fake.list_pods.side_effect = list_and_cancel
            fake.list_events.side_effect = lambda ns: scope.check()
            return fake

        results = run_passes(config, ["probes"], client_factory=factory, cancel_scope=scope)

        assert started.is_set()
        assert results[0].status == PassStatus.FAILED
        assert results[0].error["kind"] == "cancelled"

    def test_invalid_config_before_network(self):
        factory = MagicMock()
        with pytest.raises(ConfigError):
            run_passes(DiagnosticConfig(project="p", cluster="c"), ["restarts"], client_factory=factory)
        factory.assert_not_called()

    def test_unknown_pass_name(self):
        with pytest.raises(ConfigError, match="Unknown pass"):
            run_passes(DiagnosticConfig(use_current_context=True), ["logs"])

    def test_registry(self):
        assert list(PASSES) == ["restarts", "probes", "shutdown", "evictions", "certificates"]

    def test_shared_provider(self):
        config = DiagnosticConfig(project="p", cluster="c", zone="z", namespaces=["a", "b"], workers=2)
        provider = MagicMock()
        provider.ensure_credentials.return_value = "gke_p_z_c"

        results = run_passes(config, ["restarts"], provider=provider,
                             client_factory=MagicMock(return_value=_fake_client()))

        assert all(r.ok for r in results)
        assert provider.ensure_credentials.call_count == 2

    def test_failed_login_not_repeated_per_pass(self):
        config = DiagnosticConfig(project="p", cluster="c", zone="z", namespaces=["a", "b", "c"], auto_login=True)
        factory = MagicMock()

        with patch("subprocess.run", return_value=MagicMock(returncode=1, stdout="", stderr="")) as run:
            results = run_passes(config, ["restarts", "probes"], client_factory=factory)

        assert len(results) == 6
        assert {r.error["kind"] for r in results} == {"auth"}
        logins = [c for c in run.call_args_list if c[0][0] == ["gcloud", "auth", "login"]]
        assert len(logins) == 1
        factory.assert_not_called()
