"""
Timeout and retry constants for provisioncore.

Centralizes timing values so the retry primitives and the orchestrator
agree on them.
"""

from __future__ import annotations

# =============================================================================
# Network probing
# =============================================================================

# Timeout for a single reachability probe
NETWORK_PROBE_TIMEOUT_S = 5.0

# Endpoint used for reachability probes when none is configured
NETWORK_PROBE_DEFAULT_URL = "https://www.msftconnecttest.com/connecttest.txt"

# Confirmation probes required after the first success in continuous mode
NETWORK_STABILITY_CONFIRMATIONS = 3

# Spacing between confirmation probes
NETWORK_STABILITY_CONFIRM_INTERVAL_S = 2.0

# Wait before the second probe when a retry attempt finds the network down
NETWORK_RECHECK_DELAY_S = 5.0

# =============================================================================
# CLI defaults
# =============================================================================

DEFAULT_NETWORK_RETRY_COUNT = 5
DEFAULT_NETWORK_RETRY_DELAY_S = 10

# =============================================================================
# Step execution
# =============================================================================

# Default timeout for a single step's child process
DEFAULT_STEP_TIMEOUT_S = 3600.0

# Synthetic exit code recorded when a step's child process is killed on
# timeout (Win32 ERROR_TIMEOUT)
STEP_TIMEOUT_EXIT_CODE = 1460

# Timeout for downloading a direct-install artifact
DOWNLOAD_TIMEOUT_S = 300.0
