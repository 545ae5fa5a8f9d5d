"""Structured outcome returned by every exposed fulfillment operation"""

import functools
import inspect
import logging
from dataclasses import dataclass
from typing import Any, Optional

from .errors import ErrorKind, FulfillmentError

logger = logging.getLogger(__name__)


@dataclass
class OperationResult:
    ok: bool
    booking: Any = None
    kind: Optional[ErrorKind] = None
    message: Optional[str] = None
    # Operation-specific payload (e.g. the checkout's gateway ref)
    data: Optional[dict] = None

    @classmethod
    def success(cls, booking, **data) -> "OperationResult":
        return cls(ok=True, booking=booking, data=data or None)

    @classmethod
    def failure(cls, error: FulfillmentError, booking=None) -> "OperationResult":
        return cls(ok=False, booking=booking, kind=error.kind, message=error.user_message)


def _failure(self, func_name: str, error: FulfillmentError) -> OperationResult:
    self.db.rollback()
    if error.kind in (ErrorKind.GATEWAY_ERROR, ErrorKind.DISPATCH_EXHAUSTED):
        logger.warning(f"⚠️ {func_name} failed [{error.kind.value}]: {error}")
    else:
        logger.info(f"{func_name} rejected [{error.kind.value}]: {error}")
    return OperationResult.failure(error, booking=error.booking)


def _success(value) -> OperationResult:
    if isinstance(value, OperationResult):
        return value
    return OperationResult.success(value)


def operation(func):
    """
    Wrap a service method so FulfillmentError becomes a failed OperationResult.

    The session is rolled back on failure so nothing is partially applied.
    Any other exception propagates unchanged.
    """
    if inspect.iscoroutinefunction(func):

        @functools.wraps(func)
        async def async_wrapper(self, *args, **kwargs):
            try:
                return _success(await func(self, *args, **kwargs))
            except FulfillmentError as e:
                return _failure(self, func.__name__, e)

        return async_wrapper

    @functools.wraps(func)
    def wrapper(self, *args, **kwargs):
        try:
            return _success(func(self, *args, **kwargs))
        except FulfillmentError as e:
            return _failure(self, func.__name__, e)

    return wrapper
