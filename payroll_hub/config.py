"""
Payroll Document Hub - Configuration

All runtime settings are read from environment variables (a local .env file is
loaded first). Engine limits that are not meant to be tuned per deployment are
kept here as plain constants so every service reads the same values.
"""

import os

from dotenv import load_dotenv

load_dotenv()  # Load .env file before any os.environ calls


def _flag(name: str, default: str = "false") -> bool:
    return os.environ.get(name, default).lower() in ("true", "1", "yes")


# =============================================================================
# DATABASE
# =============================================================================

MONGO_URL = os.environ.get("MONGO_URL", "mongodb://localhost:27017")
DB_NAME = os.environ.get("DB_NAME", "payroll_hub")

DOCUMENTS_COLLECTION = "payroll_documents"
AUDIT_COLLECTION = "status_change_audits"
BATCH_COLLECTION = "batch_operations"
TASKS_COLLECTION = "generation_tasks"
EMPLOYEES_COLLECTION = "employees"


# =============================================================================
# AUTH
# =============================================================================

JWT_SECRET = os.environ.get("JWT_SECRET", "payroll-hub-secret-key")
JWT_ALGORITHM = os.environ.get("JWT_ALGORITHM", "HS256")
ADMIN_ROLE = "administrator"


# =============================================================================
# STORAGE
# =============================================================================

STORAGE_PROVIDER = os.environ.get("STORAGE_PROVIDER", "LOCAL_FILESYSTEM")
STORAGE_BASE_PATH = os.environ.get("STORAGE_BASE_PATH", "./storage/payroll-documents")
STORAGE_RETENTION_DAYS = int(os.environ.get("STORAGE_RETENTION_DAYS", "2555"))  # ~7 years
STORAGE_MAX_FILE_SIZE = 50 * 1024 * 1024
STORAGE_ALLOWED_MIME_TYPES = ["application/pdf", "application/octet-stream"]


# =============================================================================
# GENERAL
# =============================================================================

ENVIRONMENT = os.environ.get("ENVIRONMENT", "development")
COMPANY_NAME = os.environ.get("COMPANY_NAME", "ERP Maroc")
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")
ALERT_WEBHOOK_URL = os.environ.get("ALERT_WEBHOOK_URL")
ENFORCE_WORKING_HOURS = _flag("ENFORCE_WORKING_HOURS")
SERVICE_VERSION = "1.0.0"
CORS_ORIGINS = os.environ.get("CORS_ORIGINS", "*").split(",")


# =============================================================================
# ENGINE LIMITS
# =============================================================================

# Timeout applied to every store / storage / renderer call
DEPENDENCY_TIMEOUT_SECONDS = float(os.environ.get("DEPENDENCY_TIMEOUT_SECONDS", "10"))

GENERATION_QUEUE = {
    "max_concurrent": 5,
    "timeout_ms": 120000,
    "retry_attempts": 3,
    "retry_delay_ms": 5000,
}

BATCH_CONFIG = {
    "max_documents": 100,
    "max_concurrent": 10,
    "timeout_ms": 600000,
    "chunk_size": 25,
}

# Slice size used by batch status transitions
STATUS_BATCH_SIZE = 100

PREVIEW_CONFIG = {
    "expiry_minutes": 30,
    "watermark_text": "PRÉVISUALISATION - NON OFFICIEL",
    "max_file_size": 5 * 1024 * 1024,
    "reduced_sections": True,
}

PDF_LIMITS = {
    "header": b"%PDF",
    "min_size": 1024,
    "max_size": STORAGE_MAX_FILE_SIZE,
}

HEALTH_THRESHOLDS = {
    "critical": {
        "database_response_time": 5000,
        "storage_response_time": 10000,
        "error_rate": 0.05,
        "disk_usage": 0.9,
        "memory_usage": 0.85,
    },
    "warning": {
        "database_response_time": 2000,
        "storage_response_time": 5000,
        "error_rate": 0.02,
        "disk_usage": 0.8,
        "memory_usage": 0.7,
    },
}

HEALTH_CHECK_TIMEOUT_SECONDS = 15.0

# Error spike detection
ERROR_WINDOW_MINUTES = 10
ERROR_SPIKE_THRESHOLD = 10
