"""
Payroll Document Hub - Employee Directory

Read-only lookup of the employee a document is generated for. The hub never
writes employees; they are owned by the HR module. Whether the employee is
still active is checked by the validators, not here.
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from .repository import InMemoryRepository, Repository

logger = logging.getLogger(__name__)


class EmployeeDirectory(ABC):
    """Resolves an employee id to an employee record."""

    @abstractmethod
    async def get_employee(self, employee_id: str) -> Optional[Dict[str, Any]]:
        ...


class RepositoryEmployeeDirectory(EmployeeDirectory):
    """Employees read from the `employees` collection."""

    def __init__(self, repository: Repository):
        self.repository = repository

    async def get_employee(self, employee_id):
        employee = await self.repository.get(employee_id)
        if employee is None:
            logger.info("Employee %s not found", employee_id)
        return employee


class InMemoryEmployeeDirectory(RepositoryEmployeeDirectory):
    def __init__(self, employees: Optional[List[Dict[str, Any]]] = None):
        super().__init__(InMemoryRepository("employee_id", employees))
