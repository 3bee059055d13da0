"""
Configuration
=============
Loads environment variables from .env file using python-dotenv.

Environment Variables:
    BUILDRAIL_CONFIG               — Pipeline definition YAML (default: buildrail.yml)
    BUILDRAIL_SERVER_URL           — Public URL of this server, used for status links
    WORKSPACE_ROOT                 — Where VCS roots are checked out per agent
    ARTIFACT_STORE_ROOT            — Where staged/published artifacts are written
    LOG_ROOT                       — Where per-step output logs are written
    DEFAULT_EXECUTION_TIMEOUT_MIN  — Run timeout when a pipeline declares none (0 = none)
    LOG_EXCERPT_LINES              — Head/tail lines kept in a step log excerpt
    STATUS_PUBLISH_TIMEOUT         — HTTP timeout (seconds) for commit status calls
    BUILDRAIL_CREDENTIAL_<NAME>    — Secret value behind a `credentials:<NAME>` handle

Credentials:
    Configuration files never hold secrets. A value such as
    ``credentials:stashPassword`` is an opaque handle; it is resolved at the
    moment it is needed from ``BUILDRAIL_CREDENTIAL_STASHPASSWORD``.
"""
import os
from typing import Mapping, Optional

from dotenv import load_dotenv

load_dotenv()

_BASE_DIR = os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

BUILDRAIL_CONFIG = os.getenv("BUILDRAIL_CONFIG", os.path.join(_BASE_DIR, "buildrail.yml"))
BUILDRAIL_SERVER_URL = os.getenv("BUILDRAIL_SERVER_URL", "http://localhost:8111")

WORKSPACE_ROOT = os.getenv("WORKSPACE_ROOT", os.path.join(_BASE_DIR, "workspace"))
ARTIFACT_STORE_ROOT = os.getenv("ARTIFACT_STORE_ROOT", os.path.join(_BASE_DIR, "artifacts"))
LOG_ROOT = os.getenv("LOG_ROOT", os.path.join(_BASE_DIR, "logs", "runs"))

# Run timeout in minutes applied when a pipeline declares no execution_timeout_min
DEFAULT_EXECUTION_TIMEOUT_MIN = int(os.getenv("DEFAULT_EXECUTION_TIMEOUT_MIN", 0))

LOG_EXCERPT_LINES = int(os.getenv("LOG_EXCERPT_LINES", 30))

STATUS_PUBLISH_TIMEOUT = float(os.getenv("STATUS_PUBLISH_TIMEOUT", 20.0))

# Docker resource limits for containerised steps
DOCKER_MEMORY_LIMIT = os.getenv("DOCKER_MEMORY_LIMIT", "2g")
DOCKER_CPU_COUNT = int(os.getenv("DOCKER_CPU_COUNT", 2))

CREDENTIAL_PREFIX = "credentials:"
CREDENTIAL_ENV_PREFIX = "BUILDRAIL_CREDENTIAL_"


def resolve_credential(handle: Optional[str], environ: Optional[Mapping[str, str]] = None) -> Optional[str]:
    """
    Turn a credential handle into its secret value.

    Plain values (no ``credentials:`` prefix) are returned unchanged so that
    local setups can inline throwaway passwords. Unknown handles resolve to
    None; callers decide whether that is fatal. ``environ`` defaults to the
    process environment.
    """
    if not handle:
        return None
    if not handle.startswith(CREDENTIAL_PREFIX):
        return handle
    name = handle[len(CREDENTIAL_PREFIX):]
    source = os.environ if environ is None else environ
    return source.get(f"{CREDENTIAL_ENV_PREFIX}{name.upper()}")
