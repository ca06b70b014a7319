"""
Payroll Document Hub

Payroll document workflow engine: status lifecycle with audit trail,
PDF generation pipeline, batch operations and health reporting.
"""

__version__ = "1.0.0"
