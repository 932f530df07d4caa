# Version: 1.0.0
# DNS autoswitch constants - all hardcoded values in one place for easy configuration

"""
DNS Autoswitch Constants

All hardcoded values are defined here at the top of the module for easy
visibility and modification.
"""

# =============================================================================
# DNS PROTOCOL CONSTANTS
# =============================================================================
DNS_DEFAULT_PORT = 53
DNS_OVER_TLS_PORT = 853

# =============================================================================
# PROBE SETTINGS
# =============================================================================
PROBE_TIMEOUT = 3.0  # Seconds per probe attempt, independent of strategy
PROBE_MAX_RETRIES = 2  # Extra attempts for retryable failures
PROBE_MAX_CONCURRENCY = 8  # Probes in flight at once during a tick
PROBE_QUERY_NAME = "a.root-servers.net"  # Exists everywhere, leaks nothing

# Retry backoff: delay = RETRY_BASE_DELAY * factor ** attempt
RETRY_BASE_DELAY = 0.25  # Seconds
RETRY_BACKOFF_FACTOR = 1.5  # Generic retryable errors
RETRY_SLOW_BACKOFF_FACTOR = 3.0  # Timeouts and rate limiting
RETRY_MAX_DELAY = 4.0  # Never sleep longer than this between attempts

# =============================================================================
# HISTORY SETTINGS
# =============================================================================
HISTORY_WINDOW_SIZE = 10  # Samples kept per server
HISTORY_RETENTION = 600.0  # Seconds; older samples are evicted

# =============================================================================
# SWITCHING POLICY
# =============================================================================
# Active server is considered failing below this success ratio
FAILURE_SUCCESS_RATIO = 0.5
# Consecutive tunnel reconfiguration failures before entering the error state
TUNNEL_FAILURE_LIMIT = 3
# Seconds a tunnel controller may take to apply a server before it counts as failed
TUNNEL_APPLY_TIMEOUT = 30.0

# =============================================================================
# MONITOR LOOP
# =============================================================================
TICK_DEADLINE_RATIO = 0.8  # Fraction of the check interval a tick may take
TICK_DEADLINE_MARGIN = 0.5  # Seconds left free before the next tick
BATTERY_SAVER_INTERVAL_FACTOR = 1.5

# =============================================================================
# STRATEGY RANGES
# =============================================================================
MIN_CHECK_INTERVAL = 5  # Seconds
MAX_CHECK_INTERVAL = 60
MIN_IMPROVEMENT = 10  # Milliseconds
MAX_IMPROVEMENT = 100
MIN_CONSECUTIVE_CHECKS = 2
MAX_CONSECUTIVE_CHECKS = 10
MIN_STABILITY_PERIOD = 1  # Minutes
MAX_STABILITY_PERIOD = 10
MIN_HYSTERESIS_MARGIN = 5  # Milliseconds
MAX_HYSTERESIS_MARGIN = 50

# Custom strategy defaults (match the Balanced preset)
DEFAULT_CHECK_INTERVAL = 5
DEFAULT_MIN_IMPROVEMENT = 20
DEFAULT_CONSECUTIVE_CHECKS = 4
DEFAULT_STABILITY_PERIOD = 2
DEFAULT_HYSTERESIS_MARGIN = 10

# =============================================================================
# FILES
# =============================================================================
DEFAULT_CONFIG_PATH = "/etc/dns-autoswitch/dns-autoswitch.cfg"
LOG_FILE_MAX_BYTES = 10 * 1024 * 1024
LOG_FILE_BACKUP_COUNT = 5
