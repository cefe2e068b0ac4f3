"""
Pre-flight admission and cost estimation.

`check_admission` is the pure tier-limit gate (availability, quantity,
resources, queue depth). `QuotaEstimator.estimate` adds the price: a what-if
call to the job service, falling back to the local estimate when the service
is unreachable, compared against the user's balance.

Both are advisory and side-effect free; funds are only reserved at submit.
"""

import logging
from typing import Literal, Optional, Union

from .errors import InsufficientFunds, JobServiceError, QuotaExceeded
from .models import CamelModel, UserGenerationLimits

logger = logging.getLogger(__name__)


class Admit(CamelModel):
    kind: Literal["admit"] = "admit"
    cost: float = 0.0
    estimated_locally: bool = False


class Reject(CamelModel):
    kind: Literal["reject"] = "reject"
    reason: Union[QuotaExceeded, InsufficientFunds]


def check_admission(
    quantity: int,
    resource_count: int,
    limits: UserGenerationLimits,
    queue_depth: int,
) -> Optional[QuotaExceeded]:
    """Returns the first limit hit, or None when the request fits."""
    if not limits.available:
        return QuotaExceeded(
            limit="availability",
            message=limits.message or "Generation is currently disabled",
        )
    if quantity > limits.per_request_quantity_cap:
        return QuotaExceeded(
            limit="quantity",
            message=f"You can generate at most {limits.per_request_quantity_cap} outputs per request",
            requested=quantity,
            allowed=limits.per_request_quantity_cap,
        )
    if resource_count > limits.per_request_resource_cap:
        return QuotaExceeded(
            limit="resources",
            message=f"You can use at most {limits.per_request_resource_cap} resources per request",
            requested=resource_count,
            allowed=limits.per_request_resource_cap,
        )
    if queue_depth + 1 > limits.queue_capacity:
        return QuotaExceeded(
            limit="queue",
            message=f"Your queue is full ({queue_depth}/{limits.queue_capacity}). Wait for a generation to finish.",
            requested=queue_depth + 1,
            allowed=limits.queue_capacity,
        )
    return None


class QuotaEstimator:
    """Admission + price check against a job client and a billing collaborator."""

    def __init__(self, job_client, billing):
        self.job_client = job_client
        self.billing = billing

    async def price(
        self,
        step_type: str,
        engine_input: dict,
        quantity: int,
        engine_id: Optional[str] = None,
        tags: Optional[list[str]] = None,
    ) -> tuple[float, bool]:
        """(cost, estimated_locally). Only transient what-if failures fall back."""
        try:
            return await self.job_client.what_if(step_type, engine_input, tags), False
        except JobServiceError as e:
            if not e.retryable:
                raise
            logger.warning(f"What-if unavailable for {engine_id}: {e.message}. Using local estimate")
            return self.billing.estimate_cost(engine_input, quantity, engine_id), True

    async def estimate(
        self,
        user_id: str,
        limits: UserGenerationLimits,
        queue_depth: int,
        quantity: int,
        resource_count: int,
        step_type: str,
        engine_input: dict,
        engine_id: Optional[str] = None,
        tags: Optional[list[str]] = None,
    ) -> Union[Admit, Reject]:
        exceeded = check_admission(quantity, resource_count, limits, queue_depth)
        if exceeded is not None:
            logger.info(f"Quota reject for user {user_id}: {exceeded.limit} ({exceeded.requested}/{exceeded.allowed})")
            return Reject(reason=exceeded)

        cost, local = await self.price(step_type, engine_input, quantity, engine_id, tags)
        balance = await self.billing.get_balance(user_id)
        if balance < cost:
            logger.info(f"Insufficient funds for user {user_id}: need {cost}, have {balance}")
            return Reject(reason=InsufficientFunds(required=cost, available=balance))
        return Admit(cost=cost, estimated_locally=local)
