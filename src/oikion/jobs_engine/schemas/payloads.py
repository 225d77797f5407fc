"""
Job payload and result schemas.

Both are tagged unions discriminated on ``type``, which must equal the job's
``job_type``. Field names are stored snake_case; camelCase input (as sent by
the container workers) is accepted through aliases.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, model_validator
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel
from typing_extensions import Annotated

from oikion.exceptions.handlers import ValidationError
from oikion.jobs_engine.models.job import JobType


class _PayloadModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, extra="forbid"
    )


class _ResultModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, extra="allow"
    )


# Payloads


class MarketIntelPayload(_PayloadModel):
    type: Literal["market-intel-scrape"] = "market-intel-scrape"
    platforms: List[str] = Field(..., min_length=1)
    target_areas: List[str] = Field(default_factory=list)
    target_municipalities: List[str] = Field(default_factory=list)
    transaction_types: List[str] = Field(default_factory=list)
    property_types: List[str] = Field(default_factory=list)
    min_price: Optional[float] = Field(default=None, ge=0)
    max_price: Optional[float] = Field(default=None, ge=0)
    max_pages_per_platform: int = Field(default=5, ge=1)

    @model_validator(mode="after")
    def _check_price_range(self) -> "MarketIntelPayload":
        if (
            self.min_price is not None
            and self.max_price is not None
            and self.min_price > self.max_price
        ):
            raise ValueError("min_price must not exceed max_price")
        return self


class NewsletterPayload(_PayloadModel):
    type: Literal["newsletter-send"] = "newsletter-send"
    campaign_id: str = Field(..., min_length=1)
    subscriber_ids: Optional[List[str]] = None
    batch_size: Optional[int] = Field(default=None, ge=1)


class PortalPublishPayload(_PayloadModel):
    type: Literal["portal-publish-xe"] = "portal-publish-xe"
    action: Literal["add", "remove"]
    property_ids: List[str] = Field(..., min_length=1)
    skip_assets: Optional[bool] = None


class BulkExportPayload(_PayloadModel):
    type: Literal["bulk-export"] = "bulk-export"
    export_type: Literal["crm", "mls", "reports", "calendar"]
    format: Literal["xlsx", "xls", "csv", "pdf", "xml"]
    filters: Optional[Dict[str, Any]] = None
    locale: Optional[Literal["en", "el"]] = None


JobPayload = Annotated[
    Union[MarketIntelPayload, NewsletterPayload, PortalPublishPayload, BulkExportPayload],
    Field(discriminator="type"),
]


# Results


class PlatformScrapeResult(_ResultModel):
    platform: str
    status: Literal["completed", "failed"]
    listings_found: int = 0
    listings_new: int = 0
    listings_updated: int = 0
    errors: Optional[List[str]] = None


class MarketIntelResult(_ResultModel):
    type: Literal["market-intel-scrape"] = "market-intel-scrape"
    platforms: List[PlatformScrapeResult] = Field(default_factory=list)
    total_listings: int = 0
    total_new: int = 0
    total_updated: int = 0
    duration: float = 0


class NewsletterResult(_ResultModel):
    type: Literal["newsletter-send"] = "newsletter-send"
    campaign_id: str
    total_recipients: int = 0
    sent_count: int = 0
    failed_count: int = 0
    bounce_count: Optional[int] = None
    duration: float = 0


class PortalPublishResult(_ResultModel):
    type: Literal["portal-publish-xe"] = "portal-publish-xe"
    action: Literal["add", "remove"]
    total_properties: int = 0
    success_count: int = 0
    failed_count: int = 0
    portal_response: Optional[Any] = None
    duration: float = 0


class BulkExportResult(_ResultModel):
    type: Literal["bulk-export"] = "bulk-export"
    export_type: str
    format: str
    row_count: int = Field(..., ge=0)
    file_url: Optional[str] = None
    file_size: Optional[int] = None
    expires_at: Optional[datetime] = None
    duration: float = 0


JobResult = Annotated[
    Union[MarketIntelResult, NewsletterResult, PortalPublishResult, BulkExportResult],
    Field(discriminator="type"),
]

_payload_adapter: TypeAdapter = TypeAdapter(JobPayload)
_result_adapter: TypeAdapter = TypeAdapter(JobResult)


def _coerce_job_type(job_type: Union[JobType, str]) -> JobType:
    try:
        return JobType(job_type)
    except ValueError as exc:
        raise ValidationError(f"Unknown job type: {job_type}", field="type") from exc


def _tagged_dict(job_type: JobType, raw: Any, *, field: str) -> Dict[str, Any]:
    if isinstance(raw, BaseModel):
        raw = raw.model_dump(mode="json", exclude_none=True)
    if not isinstance(raw, dict):
        raise ValidationError(f"{field} must be an object", field=field)
    data = dict(raw)
    tag = data.setdefault("type", job_type.value)
    if tag != job_type.value:
        raise ValidationError(
            f"{field} type '{tag}' does not match job type '{job_type.value}'",
            field=f"{field}.type",
        )
    return data


def _validate(adapter: TypeAdapter, job_type: JobType, data: Dict[str, Any], *, field: str):
    try:
        return adapter.validate_python(data)
    except PydanticValidationError as exc:
        raise ValidationError(
            f"Invalid {field} for {job_type.value}",
            field=field,
            errors=exc.errors(include_url=False, include_context=False),
        ) from exc


def parse_payload(job_type: Union[JobType, str], raw: Any) -> BaseModel:
    resolved = _coerce_job_type(job_type)
    data = _tagged_dict(resolved, raw, field="payload")
    return _validate(_payload_adapter, resolved, data, field="payload")


def parse_result(job_type: Union[JobType, str], raw: Any) -> BaseModel:
    resolved = _coerce_job_type(job_type)
    data = _tagged_dict(resolved, raw, field="result")
    return _validate(_result_adapter, resolved, data, field="result")


def validated_payload(job_type: Union[JobType, str], raw: Any) -> Dict[str, Any]:
    """
    Validate ``raw`` against the job type's payload model and return it as
    stored: a copy of the caller's dict, without the ``type`` tag added for
    validation. The job's own type column carries the tag.
    """
    resolved = _coerce_job_type(job_type)
    data = _tagged_dict(resolved, raw, field="payload")
    _validate(_payload_adapter, resolved, data, field="payload")
    if isinstance(raw, BaseModel):
        return data
    return dict(raw)


def validated_result(job_type: Union[JobType, str], raw: Any) -> Dict[str, Any]:
    """Validated result normalised to JSON-safe snake_case for storage."""
    return parse_result(job_type, raw).model_dump(mode="json", exclude_none=True)
