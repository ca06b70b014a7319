"""
Payroll Document Hub - Routes Package

API routers for the payroll document engine. Order matters when mounting:
the status router holds `/{document_id}/status` and the document router
holds `/{document_id}`, so both go after the fixed paths and documents last.
"""

from .generation import router as generation_router, set_dependencies as set_generation_deps
from .batch import router as batch_router, set_dependencies as set_batch_deps
from .health import router as health_router, set_dependencies as set_health_deps
from .status import router as status_router, set_dependencies as set_status_deps
from .documents import router as documents_router, set_dependencies as set_documents_deps

ROUTERS = [generation_router, batch_router, health_router, status_router, documents_router]

__all__ = [
    'generation_router', 'set_generation_deps',
    'batch_router', 'set_batch_deps',
    'health_router', 'set_health_deps',
    'status_router', 'set_status_deps',
    'documents_router', 'set_documents_deps',
    'ROUTERS',
]
