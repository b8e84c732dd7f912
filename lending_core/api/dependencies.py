"""
Shared API dependencies: the lending system instance and error mapping
"""

from typing import Optional

from fastapi import HTTPException, status

from ..exceptions import (
    ConfirmationRequired, LedgerAppendFailure, LendingError, NotFoundError,
    PersistenceError, ValidationError
)
from ..logging_config import get_logger
from ..system import LendingSystem


logger = get_logger("lending.api")

# Global lending system instance, built on first use from the configuration
lending_system: Optional[LendingSystem] = None


def get_lending_system() -> LendingSystem:
    global lending_system
    if lending_system is None:
        lending_system = LendingSystem()
    return lending_system


def http_error(error: LendingError) -> HTTPException:
    """Map a lending error to the HTTP status the clients expect"""
    if isinstance(error, NotFoundError):
        code = status.HTTP_404_NOT_FOUND
    elif isinstance(error, ValidationError):
        code = status.HTTP_422_UNPROCESSABLE_ENTITY
    elif isinstance(error, ConfirmationRequired):
        code = status.HTTP_428_PRECONDITION_REQUIRED
    elif isinstance(error, (PersistenceError, LedgerAppendFailure)):
        logger.error(f"Storage failure while serving request: {error.message}")
        code = status.HTTP_503_SERVICE_UNAVAILABLE
    else:
        code = status.HTTP_409_CONFLICT
    return HTTPException(status_code=code, detail=error.to_dict())
