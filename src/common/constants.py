"""Shared constants for the runner pool controller."""

from pathlib import Path

# Project root = runner-pool/
PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent

ENV_FILE = PROJECT_ROOT / ".env"
ENV_EXAMPLE_FILE = PROJECT_ROOT / ".env.example"
LOG_DIR = PROJECT_ROOT / "logs"

# GitHub
GITHUB_API = "https://api.github.com"

# Docker: the upstream base, plus the enhanced image built from docker/
RUNNER_IMAGE = "ghcr.io/actions/actions-runner:latest"
ENHANCED_RUNNER_IMAGE = "runner-pool-enhanced:local"
ENHANCED_DOCKERFILE = PROJECT_ROOT / "docker" / "Dockerfile.enhanced"
LABEL_NAMESPACE = "runner-pool"

# ── Pool defaults ───────────────────────────────────────────────────────────
DEFAULT_REPLICAS = 2
DEFAULT_NAME_PREFIX = "runner-pool"
DEFAULT_LABELS = ("self-hosted", "linux", "x64")

# ── Reconciliation timing (single source of truth) ──────────────────────────
RECONCILE_INTERVAL = 30.0       # seconds between reconciliation passes
MAX_SCALE_ATTEMPTS = 5          # retry budget per reconcile() call
BACKOFF_BASE = 2.0              # seconds; doubles each retry
BACKOFF_CAP = 60.0
LAUNCH_TIMEOUT_SECS = 120       # per-replica docker run / token issue
HEALTH_CHECK_TIMEOUT_SECS = 15  # per-replica liveness probe
HEALTH_GRACE_SECS = 180         # unresponsive longer than this -> replaced
DRAIN_TIMEOUT_SECS = 900        # busy replica gets this long to finish its job
REGISTRATION_WAIT_SECS = 60     # `start` waits this long for runners to come online

# Registration tokens from GitHub live for one hour
TOKEN_TTL_SECS = 3600
TOKEN_EXPIRY_MARGIN_SECS = 60

# ── Profiles ────────────────────────────────────────────────────────────────
PROFILE_DESCRIPTIONS = {
    "default": "Basic GitHub runners with Docker support",
    "enhanced": "Runners with additional tools (AWS CLI, kubectl, etc.)",
    "cache": "Docker registry cache for faster builds",
    "monitoring": "Portainer dashboard for container management",
    "all": "All services enabled",
}

CACHE_IMAGE = "registry:2"
CACHE_PORT = 5000
MONITORING_IMAGE = "portainer/portainer-ce:latest"
MONITORING_PORT = 9000
