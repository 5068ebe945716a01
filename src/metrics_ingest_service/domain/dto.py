"""Pydantic DTOs and value types for metrics ingest."""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    StrictFloat,
    StrictInt,
    StrictStr,
    TypeAdapter,
    ValidationError,
    model_validator,
)

# Metric fields are an open set of name -> scalar; nested structures are rejected.
MetricValue = Union[StrictStr, StrictInt, StrictFloat]
MetricPayload = dict[str, MetricValue]

metric_payload_adapter: TypeAdapter[MetricPayload] = TypeAdapter(MetricPayload)

ALL_TASKS = "all"


class BulkMetricDTO(BaseModel):
    """One element of a bulk request; everything besides the ids is metric payload."""

    model_config = ConfigDict(extra="allow")

    workflow_id: StrictStr = Field(alias="WorkflowID", min_length=1)
    experiment_id: StrictStr = Field(alias="ExperimentID", min_length=1)
    task_id: StrictStr | None = Field(default=None, alias="TaskID")

    @model_validator(mode="after")
    def check_metric_values(self) -> "BulkMetricDTO":
        try:
            metric_payload_adapter.validate_python(self.model_extra or {})
        except ValidationError as exc:
            fields = ", ".join(sorted({str(error["loc"][0]) for error in exc.errors()}))
            raise ValueError(f"metric values must be strings or numbers: {fields}") from exc
        return self

    def payload(self) -> MetricPayload:
        return dict(self.model_extra or {})


@dataclass(frozen=True, slots=True)
class PartitionKey:
    """Resolved storage location of a sample.

    ``task`` is the lower-cased task id or ``None`` when the sample was
    written for the whole workflow.
    """

    workflow: str
    task: str | None

    @property
    def name(self) -> str:
        return f"{self.workflow}_{self.task or ALL_TASKS}"


@dataclass(frozen=True, slots=True)
class MetricWrite:
    """A normalized sample ready for the write executor."""

    partition: str
    sub_type: str
    document: dict[str, Any]


@dataclass(frozen=True, slots=True)
class BulkItemResult:
    """Backend outcome for one bulk item, in request order."""

    record_id: str | None
    status: int
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None and self.status < 300


class ProvisionOutcome(str, Enum):
    EXISTED = "existed"
    CREATED = "created"
    CREATION_FAILED = "creation_failed"


class IngestStep(str, Enum):
    RESOLVE = "resolve"
    PROVISION = "provision"
    NORMALIZE = "normalize"
    WRITE = "write"
    LINK = "link"
