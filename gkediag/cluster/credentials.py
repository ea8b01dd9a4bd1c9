"""
GKE Credential Provider

Wraps the gcloud CLI to authenticate, select the project and fetch
cluster credentials into the local kubeconfig. gcloud has no usable
Python client for get-credentials, so it is driven through subprocess.
"""

import logging
import subprocess
import threading
from typing import List, Optional

from ..errors import (
    AuthError,
    ConfigError,
    DiagnosticError,
    NotFoundError,
    PermissionDeniedError,
    TransportError,
)

logger = logging.getLogger(__name__)

GCLOUD_TIMEOUT = 120

_NOT_FOUND_MARKERS = ("not found", "not_found", "notfound", "was not found", "does not exist")
_PERMISSION_MARKERS = ("permission_denied", "permission denied", "forbidden", "403", "does not have")
_NETWORK_MARKERS = (
    "unable to connect",
    "connection refused",
    "could not resolve",
    "network is unreachable",
    "timed out",
    "timeout",
    "failed to establish",
)
_AUTH_MARKERS = ("reauthentication", "not logged in", "no credentialed accounts", "login", "expired")


def gcloud_run(args: List[str], timeout: int = GCLOUD_TIMEOUT, capture: bool = True) -> subprocess.CompletedProcess:
    """
    Run a gcloud command.

    Args:
        args: gcloud arguments (without the 'gcloud' prefix)
        timeout: Command timeout in seconds
        capture: Capture output; False leaves the terminal attached
            (interactive login)

    Raises:
        ConfigError: If gcloud is not installed
        TransportError: On timeout
    """
    cmd = ["gcloud"] + args
    logger.debug(f"Running: {' '.join(cmd)}")
    try:
        return subprocess.run(
            cmd,
            capture_output=capture,
            text=True,
            timeout=timeout,
        )
    except FileNotFoundError:
        raise ConfigError(
            "gcloud CLI not found",
            hint="Install the Google Cloud SDK: https://cloud.google.com/sdk/docs/install",
        )
    except subprocess.TimeoutExpired:
        raise TransportError(f"gcloud timed out after {timeout}s: {' '.join(args[:3])}")


def classify_gcloud_error(stderr: str, action: str) -> DiagnosticError:
    """Map gcloud stderr to the matching error kind."""
    text = (stderr or "").strip()
    lowered = text.lower()
    detail = f"{action}: {text}" if text else action

    if any(m in lowered for m in _PERMISSION_MARKERS):
        return PermissionDeniedError(detail, hint="Check IAM roles on the project and cluster")
    if any(m in lowered for m in _NOT_FOUND_MARKERS):
        return NotFoundError(detail, hint="Verify the cluster name, location and project")
    if any(m in lowered for m in _NETWORK_MARKERS):
        return TransportError(detail, hint="Check network connectivity to Google Cloud")
    if any(m in lowered for m in _AUTH_MARKERS):
        return AuthError(detail, hint="Run 'gcloud auth login' or pass --auto-login")
    return DiagnosticError(detail)


class GCloudCredentialProvider:
    """
    Credential provider for GKE clusters.

    Calls are memoised so several passes running in parallel share a
    single credential fetch.

    Example:
        provider = GCloudCredentialProvider("my-project", "prod", zone="us-central1-a")
        context = provider.ensure_credentials()
    """

    def __init__(
        self,
        project: str,
        cluster: str,
        zone: Optional[str] = None,
        region: Optional[str] = None,
        auto_login: bool = False,
        timeout: int = GCLOUD_TIMEOUT,
    ):
        if bool(zone) == bool(region):
            raise ConfigError("Exactly one of zone or region must be specified")
        self.project = project
        self.cluster = cluster
        self.zone = zone
        self.region = region
        self.auto_login = auto_login
        self.timeout = timeout
        self._lock = threading.Lock()
        self._context: Optional[str] = None
        self._error: Optional[DiagnosticError] = None

    @property
    def location(self) -> str:
        return self.zone or self.region

    @property
    def context_name(self) -> str:
        """kubeconfig context written by get-credentials."""
        return f"gke_{self.project}_{self.location}_{self.cluster}"

    def active_account(self) -> Optional[str]:
        """Return the active gcloud account, or None."""
        result = gcloud_run(
            ["auth", "list", "--filter=status:ACTIVE", "--format=value(account)"],
            timeout=self.timeout,
        )
        if result.returncode != 0:
            return None
        for line in result.stdout.splitlines():
            if "@" in line:
                return line.strip()
        return None

    def authenticate(self) -> str:
        """
        Ensure an active account exists.

        Raises:
            AuthError: When not logged in and auto-login was not requested,
                or the login flow fails
        """
        account = self.active_account()
        if account:
            logger.info(f"Already authenticated as: {account}")
            return account

        if not self.auto_login:
            raise AuthError(
                "Not logged in to gcloud",
                hint="Use --auto-login or run 'gcloud auth login' manually",
            )

        logger.warning("Not logged in. Initiating gcloud login...")
        result = gcloud_run(["auth", "login"], timeout=self.timeout * 5, capture=False)
        if result.returncode != 0:
            raise AuthError("Failed to authenticate with Google Cloud")

        account = self.active_account()
        if not account:
            raise AuthError("gcloud login completed but no active account was found")
        return account

    def set_project(self) -> None:
        logger.info(f"Setting active project to: {self.project}")
        result = gcloud_run(["config", "set", "project", self.project], timeout=self.timeout)
        if result.returncode != 0:
            raise classify_gcloud_error(result.stderr, f"Failed to set project {self.project}")

    def get_credentials(self) -> str:
        """
        Fetch cluster credentials into kubeconfig.

        Returns:
            kubeconfig context name for the cluster
        """
        location_flag = "--zone" if self.zone else "--region"
        logger.info(f"Getting credentials for cluster: {self.cluster} ({location_flag[2:]}: {self.location})")
        result = gcloud_run(
            [
                "container", "clusters", "get-credentials", self.cluster,
                location_flag, self.location,
                "--project", self.project,
            ],
            timeout=self.timeout,
        )
        if result.returncode != 0:
            error = classify_gcloud_error(result.stderr, "Failed to get cluster credentials")
            if error.hint is None:
                error.hint = f"Verify cluster name and location with: gcloud container clusters list --project {self.project}"
            raise error
        logger.info("Cluster credentials retrieved successfully")
        return self.context_name

    def ensure_credentials(self) -> str:
        """
        Authenticate, select the project and fetch credentials once.

        A failure is remembered and re-raised to later callers, so gcloud
        (and an interactive login) runs at most once per provider.
        """
        with self._lock:
            if self._error is not None:
                raise self._error
            if self._context is None:
                try:
                    self.authenticate()
                    self.set_project()
                    self._context = self.get_credentials()
                except DiagnosticError as e:
                    self._error = e
                    raise
            return self._context
