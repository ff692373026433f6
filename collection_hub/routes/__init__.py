"""
ITAD Collection Hub - Routes Package

API routers for bookings, jobs and workflow administration.
"""

from .bookings import router as bookings_router, set_dependencies as set_bookings_deps
from .jobs import router as jobs_router, set_dependencies as set_jobs_deps
from .workflow import router as workflow_router, set_dependencies as set_workflow_deps

__all__ = [
    'bookings_router', 'set_bookings_deps',
    'jobs_router', 'set_jobs_deps',
    'workflow_router', 'set_workflow_deps',
]
