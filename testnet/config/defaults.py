"""Centralized default values for the testnet orchestrator.

Values taken from the reference testnet topology (autoheal sidecar and
per-service healthchecks) unless noted otherwise. Everything here can be
overridden per cluster through ``OrchestratorConfig`` (``TESTNET_*`` env
vars or the ``orchestrator:`` section of a topology file).
"""

from __future__ import annotations

# =============================================================================
# Remediation
# =============================================================================

# Autoheal sidecar interval: wait this long before restarting an unhealthy node
RESTART_COOLDOWN_SECONDS = 30.0

# Escalate a slot to FAILED after this many restarts within the window
MAX_RESTARTS = 5
RESTART_WINDOW_SECONDS = 300.0

# =============================================================================
# Health Probes
# =============================================================================

PROBE_INTERVAL_SECONDS = 5.0
PROBE_TIMEOUT_SECONDS = 5.0
PROBE_RETRIES = 3

# Autoheal CURL_TIMEOUT: no probe may block longer than this
PROBE_TIMEOUT_CEILING_SECONDS = 30.0

PROBE_HISTORY_SIZE = 20
MAX_CONCURRENT_PROBES = 16

# =============================================================================
# Lifecycle
# =============================================================================

PENDING_TIMEOUT_SECONDS = 300.0
WATCHDOG_INTERVAL_SECONDS = 5.0
SHUTDOWN_TIMEOUT_SECONDS = 30.0

# SIGTERM -> SIGKILL grace period
KILL_TIMEOUT_SECONDS = 10.0

# =============================================================================
# Key Material
# =============================================================================

KEY_FILE_MODE = 0o644
KEY_READY_MARKER = ".keys-ready"

# =============================================================================
# Liveness Check
# =============================================================================

TARGET_NODES_ENV = "TARGET_NODES_PATH"
LIVENESS_DEADLINE_SECONDS = 120.0
LIVENESS_POLL_INTERVAL_SECONDS = 2.0
LIVENESS_REQUEST_TIMEOUT_SECONDS = 10.0
