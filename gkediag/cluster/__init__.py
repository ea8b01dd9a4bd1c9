"""
Cluster Access Module

Credential retrieval through gcloud and read-only Kubernetes API queries.
"""

from .cancellation import CancelScope
from .client import ClusterClient
from .credentials import GCloudCredentialProvider

__all__ = [
    "CancelScope",
    "ClusterClient",
    "GCloudCredentialProvider",
]
