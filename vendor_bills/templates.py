"""Vendor template configuration schema.

Template-based field extraction runs outside the engine, but the template
that produced a parsed document travels with it. It is validated here so a
malformed template is rejected at ingestion instead of being stored as an
open map.
"""

import hashlib
import json
import re
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field, ValidationError as PydanticValidationError, field_validator, model_validator

from core.errors import ValidationError


class HeaderField(str, Enum):
    """Header fields a template can extract."""
    INVOICE_NO = "invoice_no"
    INVOICE_DATE = "invoice_date"
    PO_NUMBER = "po_number"
    VENDOR_NAME = "vendor_name"
    CURRENCY = "currency"
    SUBTOTAL = "subtotal"
    TAX = "tax"
    TOTAL = "total"


class LineField(str, Enum):
    """Line columns a template can extract."""
    SKU = "sku"
    DESCRIPTION = "description"
    QTY = "qty"
    UNIT = "unit"
    UNIT_PRICE = "unit_price"
    EXT_PRICE = "ext_price"


class RegexRule(BaseModel):
    """Extract a value with a regular expression."""
    kind: Literal["regex"] = "regex"
    pattern: str = Field(..., min_length=1)
    group: int = Field(default=1, ge=0)
    ignore_case: bool = False

    @field_validator("pattern")
    @classmethod
    def pattern_compiles(cls, v: str) -> str:
        try:
            re.compile(v)
        except re.error as e:
            raise ValueError(f"invalid regex: {e}")
        return v

    @model_validator(mode="after")
    def group_exists(self) -> "RegexRule":
        if self.group > re.compile(self.pattern).groups:
            raise ValueError(f"pattern has no group {self.group}")
        return self


class ZoneRule(BaseModel):
    """Extract the text inside a page region (fractions of the page)."""
    kind: Literal["zone"] = "zone"
    page: int = Field(default=1, ge=1)
    x: float = Field(..., ge=0.0, le=1.0)
    y: float = Field(..., ge=0.0, le=1.0)
    width: float = Field(..., gt=0.0, le=1.0)
    height: float = Field(..., gt=0.0, le=1.0)

    @model_validator(mode="after")
    def inside_page(self) -> "ZoneRule":
        if self.x + self.width > 1.0 or self.y + self.height > 1.0:
            raise ValueError("zone extends past the page edge")
        return self


class FixedRule(BaseModel):
    """Always yield the same value (e.g. currency for a domestic vendor)."""
    kind: Literal["fixed"] = "fixed"
    value: str


ExtractionRule = Annotated[Union[RegexRule, ZoneRule, FixedRule], Field(discriminator="kind")]


class TemplateConfig(BaseModel):
    """Per-vendor extraction template.

    Attributes:
        template_id: Template identifier
        version: Template revision
        vendor_id: Vendor the template belongs to, if any
        header_fields: Header field -> extraction rule
        line_columns: Line column -> extraction rule
    """
    template_id: str = Field(..., min_length=1)
    version: int = Field(default=1, ge=1)
    vendor_id: Optional[str] = None
    header_fields: Dict[HeaderField, ExtractionRule]
    line_columns: Dict[LineField, ExtractionRule] = Field(default_factory=dict)

    @field_validator("header_fields")
    @classmethod
    def requires_invoice_no(cls, v):
        if HeaderField.INVOICE_NO not in v:
            raise ValueError("template must define an invoice_no rule")
        return v

    def config_hash(self) -> str:
        """Stable SHA256 of the template contents."""
        payload = json.dumps(self.model_dump(mode="json"), sort_keys=True)
        return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def _format_errors(error: PydanticValidationError) -> List[str]:
    return [
        f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}"
        for err in error.errors()
    ]


def validate_template(raw: Union[TemplateConfig, Dict[str, Any]]) -> TemplateConfig:
    """Validate a template config.

    Raises:
        ValidationError: With every schema violation listed
    """
    if isinstance(raw, TemplateConfig):
        return raw
    try:
        return TemplateConfig.model_validate(raw)
    except PydanticValidationError as e:
        raise ValidationError("Invalid template config: " + "; ".join(_format_errors(e))) from e
