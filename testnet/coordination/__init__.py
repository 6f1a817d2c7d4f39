"""Cluster coordination: process lifecycle, dependency gating, health and remediation.

Entry points:
    testnet.coordination.orchestrator.ClusterOrchestrator
    testnet.coordination.liveness_checker.ClusterLivenessChecker
    testnet.coordination.key_materializer.KeyMaterializer

Submodules are imported directly; this package does not re-export them.
"""
