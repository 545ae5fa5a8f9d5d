"""Translate OperationResult into HTTP responses"""

from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse

from .errors import ErrorKind
from .results import OperationResult
from .schemas import BookingResponse, OperationResponse

HTTP_STATUS_BY_KIND = {
    ErrorKind.VALIDATION_ERROR: 422,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.STATE_CONFLICT: 409,
    ErrorKind.GATEWAY_ERROR: 502,
    # Non-fatal: the booking is fine, it just needs a human
    ErrorKind.DISPATCH_EXHAUSTED: 200,
}


def operation_response(result: OperationResult, success_status: int = 200) -> JSONResponse:
    body = OperationResponse(
        ok=result.ok,
        booking=BookingResponse.model_validate(result.booking) if result.booking is not None else None,
        kind=result.kind.value if result.kind else None,
        message=result.message,
        data=result.data,
    )
    status_code = success_status if result.ok else HTTP_STATUS_BY_KIND.get(result.kind, 400)
    return JSONResponse(status_code=status_code, content=jsonable_encoder(body))
