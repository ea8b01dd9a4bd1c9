"""
Tests for gkediag/cluster/credentials.py — gcloud credential provider
"""

import subprocess
from unittest.mock import MagicMock, patch

import pytest

from gkediag.cluster.credentials import GCloudCredentialProvider, classify_gcloud_error, gcloud_run
from gkediag.errors import (
    AuthError,
    ConfigError,
    DiagnosticError,
    NotFoundError,
    PermissionDeniedError,
    TransportError,
)


def _completed(returncode=0, stdout="", stderr=""):
    return MagicMock(returncode=returncode, stdout=stdout, stderr=stderr)


class TestGcloudRun:
    """Test raw gcloud execution."""

    def test_success(self):
        with patch("subprocess.run", return_value=_completed(stdout="ok")) as run:
            result = gcloud_run(["config", "list"])
        assert result.stdout == "ok"
        assert run.call_args[0][0] == ["gcloud", "config", "list"]

    def test_not_installed(self):
        with patch("subprocess.run", side_effect=FileNotFoundError("gcloud")):
            with pytest.raises(ConfigError, match="not found"):
                gcloud_run(["config", "list"])

    def test_timeout(self):
        with patch("subprocess.run", side_effect=subprocess.TimeoutExpired(cmd="gcloud", timeout=5)):
            with pytest.raises(TransportError, match="timed out"):
                gcloud_run(["container", "clusters", "get-credentials"], timeout=5)


class TestClassifyGcloudError:
    """Each failure propagates as a distinct error kind."""

    @pytest.mark.parametrize("stderr,expected", [
        ("ERROR: (gcloud.container.clusters.get-credentials) ResponseError: code=404, "
         "message=Not found: projects/p/zones/z/clusters/prod.", NotFoundError),
        ("ERROR: PERMISSION_DENIED: Required 'container.clusters.get' permission", PermissionDeniedError),
        ("ERROR: Unable to connect to the server: dial tcp: i/o timeout", TransportError),
        ("ERROR: Reauthentication required.", AuthError),
        ("ERROR: something unexpected", DiagnosticError),
    ])
    def test_classification(self, stderr, expected):
        error = classify_gcloud_error(stderr, "Failed to get cluster credentials")
        assert type(error) is expected
        assert "Failed to get cluster credentials" in error.message


class TestGCloudCredentialProvider:
    """Test the authenticate -> set project -> get-credentials sequence."""

    def test_requires_exactly_one_location(self):
        with pytest.raises(ConfigError):
            GCloudCredentialProvider("p", "c")
        with pytest.raises(ConfigError):
            GCloudCredentialProvider("p", "c", zone="z", region="r")

    def test_context_name(self):
        provider = GCloudCredentialProvider("my-project", "prod", region="us-central1")
        assert provider.context_name == "gke_my-project_us-central1_prod"

    def test_ensure_credentials(self):
        provider = GCloudCredentialProvider("my-project", "prod", zone="us-central1-a")
        responses = [
            _completed(stdout="ops@example.com\n"),
            _completed(),
            _completed(stdout="kubeconfig entry generated for prod."),
        ]
        with patch("subprocess.run", side_effect=responses) as run:
            context = provider.ensure_credentials()

        assert context == "gke_my-project_us-central1-a_prod"
        get_credentials = run.call_args_list[2][0][0]
        assert get_credentials == [
            "gcloud", "container", "clusters", "get-credentials", "prod",
            "--zone", "us-central1-a", "--project", "my-project",
        ]

    def test_ensure_credentials_memoised(self):
        provider = GCloudCredentialProvider("p", "c", region="r")
        with patch("subprocess.run", return_value=_completed(stdout="ops@example.com")) as run:
            provider.ensure_credentials()
            provider.ensure_credentials()
        assert run.call_count == 3

    def test_not_logged_in(self):
        provider = GCloudCredentialProvider("p", "c", zone="z")
        with patch("subprocess.run", return_value=_completed(stdout="")):
            with pytest.raises(AuthError, match="Not logged in"):
                provider.authenticate()

    def test_auto_login(self):
        provider = GCloudCredentialProvider("p", "c", zone="z", auto_login=True)
        responses = [_completed(stdout=""), _completed(), _completed(stdout="ops@example.com")]
        with patch("subprocess.run", side_effect=responses) as run:
            assert provider.authenticate() == "ops@example.com"
        login_call = run.call_args_list[1]
        assert login_call[0][0] == ["gcloud", "auth", "login"]
        assert login_call[1]["capture_output"] is False

    def test_auto_login_failure(self):
        provider = GCloudCredentialProvider("p", "c", zone="z", auto_login=True)
        with patch("subprocess.run", side_effect=[_completed(stdout=""), _completed(returncode=1)]):
            with pytest.raises(AuthError, match="Failed to authenticate"):
                provider.authenticate()

    def test_cluster_not_found(self):
        provider = GCloudCredentialProvider("p", "missing", zone="z")
        responses = [
            _completed(stdout="ops@example.com"),
            _completed(),
            _completed(returncode=1, stderr="ERROR: Not found: projects/p/zones/z/clusters/missing"),
        ]
        with patch("subprocess.run", side_effect=responses):
            with pytest.raises(NotFoundError) as exc:
                provider.ensure_credentials()
        assert exc.value.hint

    def test_set_project_permission_denied(self):
        provider = GCloudCredentialProvider("p", "c", zone="z")
        with patch("subprocess.run", return_value=_completed(returncode=1, stderr="PERMISSION_DENIED")):
            with pytest.raises(PermissionDeniedError):
                provider.set_project()

    def test_failure_memoised(self):
        provider = GCloudCredentialProvider("p", "c", zone="z", auto_login=True)
        with patch("subprocess.run", return_value=_completed(returncode=1)) as run:
            with pytest.raises(AuthError) as first:
                provider.ensure_credentials()
            with pytest.raises(AuthError) as second:
                provider.ensure_credentials()

        assert second.value is first.value
        logins = [c for c in run.call_args_list if c[0][0] == ["gcloud", "auth", "login"]]
        assert len(logins) == 1
