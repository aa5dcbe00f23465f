"""
Error taxonomy for the plan-change workflow

Caller errors and configuration errors carry the HTTP status the route should
answer with; anything else surfacing from Stripe or Supabase is treated as an
unexpected fault by the API layer.
"""
from typing import Any, Dict, Optional


class BillingFlowError(Exception):
    """Base class for errors reported back to the caller"""

    status_code = 400

    def __init__(self, message: str, status_code: Optional[int] = None, debug: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        self.debug = debug

    def to_response(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"error": self.message}
        if self.debug is not None:
            body["debug"] = self.debug
        return body


class InvalidRequestError(BillingFlowError):
    """Missing field, same-plan reselect, invalid action"""

    status_code = 400


class NotFoundError(BillingFlowError):
    """Unknown user, missing profile, or no subscription on the profile"""

    status_code = 404


class PlanConfigurationError(BillingFlowError):
    """A price id does not resolve to a plan in the catalog.

    The debug block goes back to the caller: both price ids, which lookup
    failed and the ids the catalog holds.
    """

    status_code = 400


class DowngradeNotAllowedError(BillingFlowError):
    status_code = 400


class ConcurrentUpdateError(BillingFlowError):
    """Profile kept changing underneath a compare-and-swap write"""

    status_code = 409
