"""
服务层异常到HTTP状态码的映射
"""
from fastapi import HTTPException, status

from ..services.errors import (
    DataSourceError,
    InvalidStateError,
    NotFoundError,
    PermissionDeniedError,
    ReportEngineError,
    ValidationError,
)
from ..utils.logger import get_logger

logger = get_logger(__name__)


def http_error(error: Exception, message: str) -> HTTPException:
    """
    把服务层异常转换为 HTTPException

    ValidationError -> 422, InvalidStateError -> 409, PermissionDeniedError -> 403,
    NotFoundError -> 404, DataSourceError -> 502, 其他 -> 500
    """
    if isinstance(error, HTTPException):
        return error

    if isinstance(error, ValidationError):
        logger.info(f"{message}: {error.message}")
        return HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail={"message": error.message, "field": error.field, "details": error.details}
        )
    if isinstance(error, InvalidStateError):
        logger.info(f"{message}: {error.message}")
        return HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={"message": error.message, "details": error.details}
        )
    if isinstance(error, PermissionDeniedError):
        return HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={"message": error.message, "action": error.action}
        )
    if isinstance(error, NotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail={"message": error.message})
    if isinstance(error, DataSourceError):
        logger.warning(f"{message}: {error.message}")
        return HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail={"message": error.message, "details": error.details}
        )

    if isinstance(error, ReportEngineError):
        detail = error.message
    else:
        detail = str(error)
    logger.error(f"{message}: {detail}", exc_info=error)
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail=f"{message}: {detail}"
    )
