"""
GKE Diagnostics Configuration

Centralized configuration for the diagnostic passes. Defaults come from
environment variables; a YAML file and CLI flags can override them.
"""

import logging
import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from .errors import ConfigError

logger = logging.getLogger(__name__)


# =============================================================================
# Rule Thresholds
# =============================================================================

# SIGTERM (exit 143) occurrences in one pass above which a
# "high SIGTERM rate" finding is emitted
SIGTERM_THRESHOLD = int(os.environ.get("GKEDIAG_SIGTERM_THRESHOLD", "3"))

# Certificates expiring within this many days are flagged
CERT_EXPIRY_WARNING_DAYS = int(os.environ.get("GKEDIAG_CERT_EXPIRY_WARNING_DAYS", "14"))

# Kubernetes default terminationGracePeriodSeconds
DEFAULT_GRACE_PERIOD = int(os.environ.get("GKEDIAG_DEFAULT_GRACE_PERIOD", "30"))


# =============================================================================
# Cluster Access
# =============================================================================

REQUEST_TIMEOUT = float(os.environ.get("GKEDIAG_REQUEST_TIMEOUT", "30"))
MAX_WORKERS = int(os.environ.get("GKEDIAG_MAX_WORKERS", "4"))
DEFAULT_NAMESPACE = os.environ.get("GKEDIAG_DEFAULT_NAMESPACE", "default")

OUTPUT_FORMATS = ("human", "json", "list")


@dataclass
class RuleThresholds:
    """
    Named constants used by the rule engine.

    Attributes:
        sigterm_threshold: SIGTERM count that must be exceeded for the
            aggregate finding
        cert_expiry_warning_days: Certificate "expires soon" window
        min_grace_period: Grace periods below this are flagged
        restart_warning: Restart count highlighted as elevated
        restart_critical: Restart count highlighted as high
    """
    sigterm_threshold: int = SIGTERM_THRESHOLD
    cert_expiry_warning_days: int = CERT_EXPIRY_WARNING_DAYS
    min_grace_period: int = DEFAULT_GRACE_PERIOD
    restart_warning: int = 5
    restart_critical: int = 10


@dataclass
class DiagnosticConfig:
    """
    Inputs for one diagnostic invocation.

    Attributes:
        project: GCP project identifier
        cluster: GKE cluster name
        zone: Cluster zone (zonal clusters)
        region: Cluster region (regional clusters)
        namespaces: Namespaces to inspect
        all_namespaces: Inspect every namespace
        output_format: human, json or list
        auto_login: Run the interactive login flow when no account is active
        fix_tls: Retry once with TLS verification disabled on trust failure
        use_current_context: Skip the credential provider
        kubeconfig: Explicit kubeconfig path
        request_timeout: Per-request timeout in seconds
        pass_timeout: Overall deadline per invocation in seconds
        workers: Parallel passes when several namespaces are requested
        secret_name: Single secret to inspect (certificate pass)
        verify: Run key-match and workload discovery (certificate pass)
        thresholds: Rule thresholds
    """
    project: Optional[str] = None
    cluster: Optional[str] = None
    zone: Optional[str] = None
    region: Optional[str] = None
    namespaces: List[str] = field(default_factory=list)
    all_namespaces: bool = False
    output_format: str = "human"
    auto_login: bool = False
    fix_tls: bool = False
    use_current_context: bool = False
    kubeconfig: Optional[str] = None
    request_timeout: float = REQUEST_TIMEOUT
    pass_timeout: Optional[float] = None
    workers: int = MAX_WORKERS
    secret_name: Optional[str] = None
    verify: bool = False
    thresholds: RuleThresholds = field(default_factory=RuleThresholds)

    @property
    def location(self) -> Optional[str]:
        return self.zone or self.region

    @property
    def location_flag(self) -> str:
        return "--zone" if self.zone else "--region"

    def namespace_scopes(self) -> List[Optional[str]]:
        """Namespaces to run against; ``None`` means all namespaces."""
        if self.all_namespaces:
            return [None]
        return list(self.namespaces) or [DEFAULT_NAMESPACE]

    def validate(self) -> "DiagnosticConfig":
        """
        Check inputs before any network call.

        Raises:
            ConfigError: On missing or mutually exclusive inputs
        """
        if not self.use_current_context:
            if not self.project:
                raise ConfigError("Missing required argument --project")
            if not self.cluster:
                raise ConfigError("Missing required argument --cluster")
            if self.zone and self.region:
                raise ConfigError("Cannot specify both --zone and --region")
            if not self.zone and not self.region:
                raise ConfigError("Either --zone or --region must be specified")
        if self.output_format not in OUTPUT_FORMATS:
            raise ConfigError(
                f"Invalid format: {self.output_format}. Use {', '.join(OUTPUT_FORMATS)}"
            )
        if self.all_namespaces and self.namespaces:
            raise ConfigError("Cannot combine --namespace with --all-namespaces")
        if self.secret_name and (self.all_namespaces or len(self.namespaces) > 1):
            raise ConfigError("--secret requires a single namespace")
        if self.request_timeout <= 0:
            raise ConfigError("Request timeout must be positive")
        if self.pass_timeout is not None and self.pass_timeout <= 0:
            raise ConfigError("Pass timeout must be positive")
        if self.workers < 1:
            raise ConfigError("Worker count must be at least 1")
        return self


def load_config_file(path: str) -> Dict[str, Any]:
    """
    Load configuration overrides from a YAML file.

    Args:
        path: Path to the YAML file

    Returns:
        Mapping of DiagnosticConfig field names to values; a
        ``thresholds`` entry is converted to RuleThresholds

    Raises:
        ConfigError: If the file is missing, unreadable or not a mapping
    """
    config_path = Path(path)
    try:
        with open(config_path, "r") as f:
            data = yaml.safe_load(f) or {}
    except FileNotFoundError:
        raise ConfigError(f"Config file not found: {config_path}")
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {config_path}: {e}")

    if not isinstance(data, dict):
        raise ConfigError(f"Config file must contain a mapping: {config_path}")

    known = {f.name for f in fields(DiagnosticConfig)}
    overrides: Dict[str, Any] = {}
    for key, value in data.items():
        name = str(key).replace("-", "_")
        if name not in known:
            logger.warning(f"Ignoring unknown config key: {key}")
            continue
        overrides[name] = value

    if "thresholds" in overrides:
        overrides["thresholds"] = _parse_thresholds(overrides["thresholds"])
    if isinstance(overrides.get("namespaces"), str):
        overrides["namespaces"] = [overrides["namespaces"]]

    logger.debug(f"Loaded {len(overrides)} settings from {config_path}")
    return overrides


def _parse_thresholds(data: Any) -> RuleThresholds:
    if not isinstance(data, dict):
        raise ConfigError("'thresholds' must be a mapping")
    known = {f.name for f in fields(RuleThresholds)}
    values = {}
    for key, value in data.items():
        name = str(key).replace("-", "_")
        if name not in known:
            logger.warning(f"Ignoring unknown threshold: {key}")
            continue
        try:
            values[name] = int(value)
        except (TypeError, ValueError):
            raise ConfigError(f"Threshold {key} must be an integer, got {value!r}")
    return RuleThresholds(**values)
