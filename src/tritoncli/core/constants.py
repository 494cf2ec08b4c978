"""tritoncli constants: exit codes, filesystem layout, timeouts, and limits."""

from __future__ import annotations

from enum import IntEnum

# ---------------------------------------------------------------------------
# Exit codes
# ---------------------------------------------------------------------------


class ExitCode(IntEnum):
    SUCCESS = 0
    ERROR = 1
    NOT_FOUND = 3


# ---------------------------------------------------------------------------
# Filesystem layout
# ---------------------------------------------------------------------------

CONFIG_DIR_NAME = ".triton"
CONFIG_FILENAME = "config.json"
PROFILES_DIRNAME = "profiles.d"
DOCKER_DIRNAME = "docker"
RBAC_USER_KEYS_DIRNAME = "rbac-user-keys"
DEFAULT_RBAC_CONFIG_FILENAME = "rbac.json"
DOCKER_SETUP_FILENAME = "setup.json"

# ---------------------------------------------------------------------------
# Profiles
# ---------------------------------------------------------------------------

ENV_PROFILE_NAME = "env"  # synthesized from the environment, never on disk
PREVIOUS_PROFILE_ALIAS = "-"
DEFAULT_CLOUDAPI_URL = "https://us-sw-1.api.joyent.com"
PORTAL_URL = "https://my.joyent.com"
PROFILE_NAME_PATTERN = r"^[a-z][a-z0-9_.-]*$"
JPC_URL_PATTERN = r"^https://([a-z0-9-]+)\.api\.joyent(cloud)?\.com/?$"

# Config keys merged one level deep (a null subkey removes it from defaults)
OVERRIDE_KEYS: tuple[str, ...] = ()

# ---------------------------------------------------------------------------
# Environment variables
# ---------------------------------------------------------------------------

ENV_CONFIG_DIR = "TRITON_CONFIG_DIR"
ENV_LOG_LEVEL = "TRITON_LOG_LEVEL"
ENV_PROFILE = "TRITON_PROFILE"

# profile field -> env vars, highest priority first
PROFILE_ENV_VARS: dict[str, tuple[str, ...]] = {
    "url": ("TRITON_URL", "SDC_URL"),
    "account": ("TRITON_ACCOUNT", "SDC_ACCOUNT"),
    "user": ("TRITON_USER", "SDC_USER"),
    "keyId": ("TRITON_KEY_ID", "SDC_KEY_ID"),
    "insecure": ("TRITON_TLS_INSECURE", "SDC_TESTING"),
}

# ---------------------------------------------------------------------------
# Certificates
# ---------------------------------------------------------------------------

DEFAULT_CERT_LIFETIME_DAYS = 3650
CERT_CLOCK_SKEW_SECONDS = 300  # backdate validity to tolerate clock drift
CERT_SERIAL_BYTES = 8
RBAC_USER_KEY_BITS = 4096
DOCKER_TIMEOUT_SECONDS = 300
DOCKER_COMPOSE_TIMEOUT_MIN_VERSION = (1, 9, 0)

# ---------------------------------------------------------------------------
# Network
# ---------------------------------------------------------------------------

CLOUDAPI_VERSION = "~8||~9"
DEFAULT_CONNECT_TIMEOUT = 10.0  # seconds
DEFAULT_READ_TIMEOUT = 60.0  # seconds
DEFAULT_WAIT_TIMEOUT = 120.0  # wait-for-state deadline (seconds)
POLL_MIN_INTERVAL = 1.0
POLL_MAX_INTERVAL = 10.0
BULK_CONCURRENCY = 10  # fixed fan-out for bulk operations
