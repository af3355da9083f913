"""Usage event definitions for the metering pipeline.

Backend deployments stream two kinds of log events: one per function
execution and periodic storage snapshots.  Both carry a ``convex`` block
naming the deployment; the accumulator resolves that name to the workspace
and owner who pay for it.
"""

from __future__ import annotations

from datetime import UTC, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, Field


class UsageTopic(str, Enum):
    FUNCTION_EXECUTION = "function_execution"
    CURRENT_STORAGE_USAGE = "current_storage_usage"


class FunctionType(str, Enum):
    QUERY = "query"
    MUTATION = "mutation"
    ACTION = "action"
    HTTP_ACTION = "http_action"

    @property
    def is_action(self) -> bool:
        """Actions run on metered compute; queries and mutations do not."""
        return self in (FunctionType.ACTION, FunctionType.HTTP_ACTION)


class SkipReason(str, Enum):
    """Why an event was counted but not applied."""

    NO_DEPLOYMENT_MAPPING = "no_deployment_mapping"
    NO_OWNER = "no_owner"
    NO_ACTIVE_SUBSCRIPTION = "no_active_subscription"
    UNRECOGNIZED_EVENT_TYPE = "unrecognized_event_type"


class DeploymentContext(BaseModel):
    deployment_name: str | None = None
    deployment_type: str | None = None
    project_name: str | None = None
    project_slug: str | None = None


class FunctionInfo(BaseModel):
    type: FunctionType
    path: str = ""
    cached: bool = False
    request_id: str | None = None


class ResourceUsage(BaseModel):
    database_read_bytes: int = 0
    database_write_bytes: int = 0
    file_storage_read_bytes: int = 0
    file_storage_write_bytes: int = 0
    vector_storage_read_bytes: int = 0
    vector_storage_write_bytes: int = 0


class _UsageEventBase(BaseModel):
    timestamp: int = Field(description="Milliseconds since the epoch")
    convex: DeploymentContext = Field(default_factory=DeploymentContext)

    @property
    def occurred_at(self) -> datetime:
        return datetime.fromtimestamp(self.timestamp / 1000, tz=UTC)

    @property
    def deployment_name(self) -> str | None:
        return self.convex.deployment_name


class FunctionExecutionEvent(_UsageEventBase):
    """One function execution with its resource counters."""

    topic: Literal["function_execution"] = "function_execution"
    function: FunctionInfo
    execution_time_ms: int = 0
    status: str = "success"
    usage: ResourceUsage = Field(default_factory=ResourceUsage)

    @property
    def is_cached_query(self) -> bool:
        return self.function.cached

    @property
    def is_action(self) -> bool:
        return self.function.type.is_action


class StorageUsageEvent(_UsageEventBase):
    """Point-in-time storage totals for a deployment."""

    topic: Literal["current_storage_usage"] = "current_storage_usage"
    total_document_size_bytes: int = 0
    total_index_size_bytes: int = 0
    total_file_storage_bytes: int = 0
    total_vector_storage_bytes: int = 0
    total_backup_storage_bytes: int = 0


UsageEvent = FunctionExecutionEvent | StorageUsageEvent

_EVENT_MODELS: dict[str, type[FunctionExecutionEvent] | type[StorageUsageEvent]] = {
    UsageTopic.FUNCTION_EXECUTION.value: FunctionExecutionEvent,
    UsageTopic.CURRENT_STORAGE_USAGE.value: StorageUsageEvent,
}


def event_deployment_name(raw: dict[str, Any]) -> str | None:
    """Deployment name of a raw event, without validating the rest of it."""
    context = raw.get("convex")
    if not isinstance(context, dict):
        return None
    name = context.get("deployment_name")
    return name or None


def parse_usage_event(raw: dict[str, Any]) -> UsageEvent | None:
    """Validate a raw event payload.

    Returns ``None`` for topics this pipeline does not meter.

    Raises
    ------
    pydantic.ValidationError
        If a known topic carries a malformed payload.
    """
    model = _EVENT_MODELS.get(str(raw.get("topic", "")))
    if model is None:
        return None
    return model.model_validate(raw)


class BillingOwner(BaseModel):
    """Who pays for a deployment's usage."""

    deployment_id: str
    deployment_name: str
    workspace_id: str
    owner_id: str
    stripe_customer_id: str | None = None
    has_active_subscription: bool = False


class BillableDeployment(BaseModel):
    """A deployment with unsynced fractional usage, joined to its owner."""

    deployment_id: str
    deployment_name: str
    workspace_id: str
    owner_id: str
    stripe_customer_id: str | None = None
    has_active_subscription: bool = False
    credits_used_this_period: Decimal


class UsagePeriodStatus(str, Enum):
    """Lifecycle of a workspace's ``usage_periods`` row.

    ``PENDING`` while the period is open or has changed since its last
    report, ``CALCULATED`` once a closed period's final total has been
    computed, ``REPORTED`` after that total reached the metering sink.
    """

    PENDING = "PENDING"
    CALCULATED = "CALCULATED"
    REPORTED = "REPORTED"
    BILLED = "BILLED"
    PAID = "PAID"


class PeriodUsage(BaseModel):
    """One workspace's ``usage_periods`` row, joined to its owner."""

    period_id: int
    workspace_id: str
    owner_id: str
    stripe_customer_id: str | None = None
    has_active_subscription: bool = False
    period_start: datetime
    period_end: datetime
    closed_usage_credits: Decimal = Decimal("0")
    peak_database_storage_bytes: int = 0
    peak_file_storage_bytes: int = 0
    peak_vector_storage_bytes: int = 0
    status: UsagePeriodStatus = UsagePeriodStatus.PENDING
