"""
Payroll Document Hub - Services

Components:
- status_rules: statuses, the transition graph and display metadata
- errors / error_handler / validators: structured errors, logging, recovery
- audit_trail: append-only record of every transition attempt
- status_service: the single path for status changes
- generation: document generation, queueing and previews
- batch: batch operations over selected documents
- health: health checks and maintenance actions
"""

from .errors import ErrorCode, WorkflowError
from .status_rules import DocumentStatus, DocumentType, TransitionTrigger
from .status_service import DocumentStatusService, TransitionContext, TransitionResult
from .generation import DocumentGenerationPipeline, GenerationRequest, GenerationResult
from .batch import BatchOperation, BatchOperationType, BatchOrchestrator, BatchStatus
from .health import HealthReporter, HealthStatus

__all__ = [
    'ErrorCode', 'WorkflowError',
    'DocumentStatus', 'DocumentType', 'TransitionTrigger',
    'DocumentStatusService', 'TransitionContext', 'TransitionResult',
    'DocumentGenerationPipeline', 'GenerationRequest', 'GenerationResult',
    'BatchOperation', 'BatchOperationType', 'BatchOrchestrator', 'BatchStatus',
    'HealthReporter', 'HealthStatus',
]
