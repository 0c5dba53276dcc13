from typing import Any, Dict, List, Optional

from fastapi import Request, status
from fastapi.responses import JSONResponse

from cohort_scheduler.schemas.response_schemas import ApiResponse, ResponseStatus


def _envelope(request: Request, status_code: int, **fields) -> JSONResponse:
    request_id = getattr(request.state, "request_id", None)
    if request_id:
        fields["request_id"] = request_id
    response = ApiResponse(path=str(request.url.path), **fields)
    return JSONResponse(
        status_code=status_code,
        content=response.model_dump(exclude_none=True, by_alias=True),
    )


class ResponseBuilder:
    """Builds the standard response envelope for routers and error handlers."""

    @staticmethod
    def success(
        request: Request,
        data: Any = None,
        message: str = "Request successful",
        meta: Optional[Dict[str, Any]] = None,
        status_code: int = status.HTTP_200_OK,
    ) -> JSONResponse:
        return _envelope(
            request,
            status_code,
            success=True,
            status=ResponseStatus.SUCCESS,
            message=message,
            data=data,
            meta=meta,
        )

    @staticmethod
    def error(
        request: Request,
        message: str = "An error occurred",
        errors: Optional[List[Dict[str, Any]]] = None,
        error_code: Optional[str] = None,
        status_code: int = status.HTTP_400_BAD_REQUEST,
        data: Any = None,
        meta: Optional[Dict[str, Any]] = None,
    ) -> JSONResponse:
        meta = dict(meta or {})
        if error_code:
            meta["error_code"] = error_code

        return _envelope(
            request,
            status_code,
            success=False,
            status=ResponseStatus.ERROR,
            message=message,
            data=data,
            meta=meta or None,
            errors=errors,
        )
