"""Schema checks for extracted records.

A record that fails validation is dropped on its own; the task that
produced it still counts as completed.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from catalogcue.errors import RecordValidationError


class ProductRecord(BaseModel):
    """A product as adapters report it. Unknown fields are kept."""

    model_config = ConfigDict(extra="allow", str_strip_whitespace=True)

    id: str = Field(..., min_length=1, description="Site-unique product identifier")
    name: str = Field(..., min_length=1, description="Product title")
    url: str = Field(..., description="Product page URL")
    price: Optional[float] = Field(default=None, ge=0.0, description="Current price")
    currency: Optional[str] = Field(default=None, description="ISO currency code")
    brand: Optional[str] = Field(default=None, description="Brand or vendor")
    sku: Optional[str] = Field(default=None, description="Stock keeping unit")
    category: Optional[str] = Field(default=None, description="Product type or category")
    availability: Optional[str] = Field(default=None, description="in_stock / out_of_stock / ...")
    image_urls: list[str] = Field(default_factory=list, description="Image URLs")
    variants: list[dict[str, Any]] = Field(default_factory=list, description="Raw variant data")
    scraped_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        description="When the record was extracted",
    )

    @field_validator("id", mode="before")
    @classmethod
    def coerce_id(cls, v: Any) -> Any:
        """Numeric ids are common; store them as strings."""
        if isinstance(v, int) and not isinstance(v, bool):
            return str(v)
        return v

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        if not v.startswith(("http://", "https://")):
            raise ValueError("URL must start with http:// or https://")
        return v

    @field_validator("currency")
    @classmethod
    def normalize_currency(cls, v: Optional[str]) -> Optional[str]:
        return v.upper() if v else v


class RecordValidator:
    """Validates and normalizes records against a pydantic model.

    Pass ``schema=None`` to accept records as they are.
    """

    def __init__(self, schema: type[BaseModel] | None = ProductRecord) -> None:
        self.schema = schema

    def validate(self, record: Any) -> dict[str, Any]:
        """
        Return the normalized record.

        Raises:
            RecordValidationError: If the record doesn't fit the schema.
        """
        if not isinstance(record, dict):
            raise RecordValidationError(
                f"Record must be a mapping, got {type(record).__name__}", None
            )
        if self.schema is None:
            return dict(record)
        try:
            model = self.schema.model_validate(record)
        except ValidationError as e:
            raise RecordValidationError(_format_errors(e), record) from e
        return model.model_dump(mode="json")

    def validate_many(
        self, records: list[Any]
    ) -> tuple[list[dict[str, Any]], list[RecordValidationError]]:
        """Split records into (valid, errors)."""
        valid: list[dict[str, Any]] = []
        errors: list[RecordValidationError] = []
        for record in records:
            try:
                valid.append(self.validate(record))
            except RecordValidationError as e:
                errors.append(e)
        return valid, errors


def _format_errors(error: ValidationError) -> str:
    parts = []
    for item in error.errors():
        loc = ".".join(str(p) for p in item["loc"]) or "record"
        parts.append(f"{loc}: {item['msg']}")
    return "Record validation failed: " + "; ".join(parts)
