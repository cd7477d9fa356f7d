# backend/tillcore/routes/system.py
"""
System health endpoint.

Reports initialization state, schema revision, table counts and read
cache statistics for deployment debugging.
"""

from flask import Blueprint

from ..services.init_service import get_sequencer

system_bp = Blueprint("system", __name__)


@system_bp.get("/api/system/health")
def health():
    status = get_sequencer().health_check()
    code = 200 if status.get("status") == "healthy" else 503
    return status, code
