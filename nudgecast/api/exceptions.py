"""
API Exceptions

Maps failed operation envelopes onto HTTP status codes.
"""

from typing import Dict

from fastapi import HTTPException, status

STATUS_BY_ERROR_TYPE = {
    'unauthorized': status.HTTP_401_UNAUTHORIZED,
    'not_found': status.HTTP_404_NOT_FOUND,
    'already_processed': status.HTTP_409_CONFLICT,
    'autopilot_locked': status.HTTP_409_CONFLICT,
    'invalid_request': status.HTTP_422_UNPROCESSABLE_ENTITY,
    'execution_failed': status.HTTP_422_UNPROCESSABLE_ENTITY,
    'upstream_unavailable': status.HTTP_503_SERVICE_UNAVAILABLE,
}


class OperationFailedError(HTTPException):
    """An operation returned ``success: False``; the envelope is the response body."""

    def __init__(self, result: Dict):
        self.result = result
        super().__init__(
            status_code=STATUS_BY_ERROR_TYPE.get(result.get('error_type'), status.HTTP_500_INTERNAL_SERVER_ERROR),
            detail=result.get('error'),
        )
