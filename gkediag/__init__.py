"""
GKE Diagnostics - Cluster diagnostic aggregation engine

Queries a GKE cluster for pods, events, nodes and secrets, normalizes
them into typed records, classifies findings against a rule table and
renders human, JSON or CSV reports.
"""

__version__ = "0.1.0"
