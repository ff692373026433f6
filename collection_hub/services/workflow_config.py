"""
ITAD Collection Hub - Workflow Configuration

Settings for the status orchestrator and its side effects, read from
environment variables at import time. server.py loads .env before importing
this module.

Feature flags:
- NOTIFICATIONS_ENABLED: deliver milestone notifications
- CUSTODY_DOCUMENTS_ENABLED: generate the chain-of-custody record at intake
"""

import os
from typing import Dict, Any, List


def _env_flag(name: str, default: str) -> bool:
    return os.environ.get(name, default).lower() in ("true", "1", "yes")


# =============================================================================
# FEATURE FLAGS
# =============================================================================

NOTIFICATIONS_ENABLED = _env_flag("NOTIFICATIONS_ENABLED", "true")
CUSTODY_DOCUMENTS_ENABLED = _env_flag("CUSTODY_DOCUMENTS_ENABLED", "true")


# =============================================================================
# ORCHESTRATOR SETTINGS
# =============================================================================

# Upper bound on any single side effect (render, notification delivery)
SIDE_EFFECT_TIMEOUT_SECONDS = float(os.environ.get("SIDE_EFFECT_TIMEOUT_SECONDS", "10"))

# Conditional status writes retried this many times on a concurrent change
STATUS_WRITE_MAX_ATTEMPTS = int(os.environ.get("STATUS_WRITE_MAX_ATTEMPTS", "3"))

# Actor recorded on repair-pass writes
SYSTEM_ACTOR = os.environ.get("WORKFLOW_SYSTEM_ACTOR", "system")


# =============================================================================
# DOCUMENTS & RECIPIENTS
# =============================================================================

DOCUMENTS_DIR = os.environ.get("DOCUMENTS_DIR", "uploads/documents")

# Fallback admin recipients when the user directory has none
ADMIN_USER_IDS: List[str] = [
    a.strip() for a in os.environ.get("ADMIN_USER_IDS", "").split(",") if a.strip()
]


def get_workflow_config_status() -> Dict[str, Any]:
    """
    Get the active workflow configuration.

    Returns:
        Dict of flags and limits in effect
    """
    return {
        "notifications_enabled": NOTIFICATIONS_ENABLED,
        "custody_documents_enabled": CUSTODY_DOCUMENTS_ENABLED,
        "side_effect_timeout_seconds": SIDE_EFFECT_TIMEOUT_SECONDS,
        "status_write_max_attempts": STATUS_WRITE_MAX_ATTEMPTS,
        "documents_dir": DOCUMENTS_DIR,
        "fallback_admin_count": len(ADMIN_USER_IDS),
    }
