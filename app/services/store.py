"""Shared error translation for record store access.

Connectivity and driver failures become ``StoreUnavailable`` (503, retryable).
Constraint violations are the caller's fault and become ``ValidationFailed``
(400); retrying them would never succeed.
"""
import functools

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from app.core.errors import StoreUnavailable, ValidationFailed
from app.core.logging import get_logger

logger = get_logger(__name__)


def store_call(method):
    """Wrap a store method whose instance holds ``self.session``."""
    @functools.wraps(method)
    def wrapper(self, *args, **kwargs):
        try:
            return method(self, *args, **kwargs)
        except IntegrityError as e:
            self.session.rollback()
            logger.warning(f"Constraint violation in {type(self).__name__}.{method.__name__}: {e.orig}")
            raise ValidationFailed(
                "Request conflicts with an existing record or omits a required field"
            ) from e
        except SQLAlchemyError as e:
            self.session.rollback()
            logger.error(f"Record store error in {type(self).__name__}.{method.__name__}: {e}")
            raise StoreUnavailable() from e
    return wrapper
