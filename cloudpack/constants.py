"""Centralized constants and enums for cloudpack.

All magic strings, timeouts and remote paths are defined here
to ensure consistency throughout the codebase.
"""

from __future__ import annotations

from enum import StrEnum
from typing import Final

# =============================================================================
# Instance Tags
# =============================================================================

CREATED_BY_TAG: Final = "Created-By"
CREATED_BY_VALUE: Final = "cloudpack"


# =============================================================================
# Instance States
# =============================================================================


class InstanceState(StrEnum):
    """Lifecycle states of a provisioned instance."""

    PENDING = "pending"
    READY = "ready"
    ERROR = "error"
    TERMINATED = "terminated"


# EC2 state name -> cloudpack state
EC2_STATE_MAP: Final[dict[str, InstanceState]] = {
    "pending": InstanceState.PENDING,
    "running": InstanceState.READY,
    "stopping": InstanceState.ERROR,
    "stopped": InstanceState.ERROR,
    "shutting-down": InstanceState.TERMINATED,
    "terminated": InstanceState.TERMINATED,
}


# =============================================================================
# Timeouts (in seconds)
# =============================================================================

SSH_CONNECT_TIMEOUT: Final = 250
SSH_ATTEMPT_TIMEOUT: Final = 25
TAG_RETRY_TIMEOUT: Final = 120
INSTANCE_READY_TIMEOUT: Final = 600
INSTANCE_POLL_INTERVAL: Final = 2.0
INSTALL_TIMEOUT: Final = 3600
CONSOLE_OUTPUT_TIMEOUT: Final = 600
PROGRESS_INTERVAL: Final = 0.5
HTTP_TIMEOUT: Final = 30.0


# =============================================================================
# Remote Install
# =============================================================================

DEFAULT_LOGIN: Final = "root"
DEFAULT_INSTALL_SCRIPT: Final = "puppet-enterprise"
REMOTE_TMP_ROOT: Final = "/tmp"
PAYLOAD_REMOTE_NAME: Final = "puppet.tar.gz"
ANSWERS_REMOTE_NAME: Final = "puppet.answers"
CERTNAME_COMMAND: Final = "puppet agent --configprint certname"
REACHABILITY_COMMAND: Final = "date"


# =============================================================================
# Classification / CA
# =============================================================================

DEFAULT_REGION: Final = "us-east-1"
DEFAULT_ENC_PORT: Final = 3000
DEFAULT_CA_PORT: Final = 8140
DEFAULT_ENVIRONMENT: Final = "production"
ENC_AUTH_USER_ENV: Final = "PUPPET_ENC_AUTH_USER"
ENC_AUTH_PASSWD_ENV: Final = "PUPPET_ENC_AUTH_PASSWD"
