"""
Pydantic models for the forms API.

Input models are deliberately lenient: unknown keys are ignored and missing
optional attributes fall back to defaults. Only the checks in
`app.forms.document.validate_for_create_or_replace` reject a payload.
"""
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class _LenientInput(BaseModel):
    model_config = ConfigDict(extra="ignore", coerce_numbers_to_str=True, populate_by_name=True)


class FormSettings(BaseModel):
    """Branding bag stored on a form. Unrecognised keys are kept as-is."""
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    logo_url: Optional[str] = Field(None, alias="logoUrl")
    primary_color: Optional[str] = Field(None, alias="primaryColor")
    background_color: Optional[str] = Field(None, alias="backgroundColor")
    font_family: Optional[str] = Field(None, alias="fontFamily")


class StepInput(_LenientInput):
    id: Optional[str] = None  # temporary, client-generated
    title: Optional[str] = None
    description: Optional[str] = None


class FieldInput(_LenientInput):
    id: Optional[str] = None
    type: Optional[str] = None
    label: Optional[str] = None
    placeholder: Optional[str] = None
    content: Optional[str] = None
    required: bool = False
    options: List[str] = Field(default_factory=list)
    step_id: Optional[str] = None  # temporary step reference

    @field_validator("required", mode="before")
    @classmethod
    def _none_is_false(cls, value):
        return False if value is None else value

    @field_validator("options", mode="before")
    @classmethod
    def _none_is_empty(cls, value):
        return [] if value is None else value


class FormInput(_LenientInput):
    """Complete desired state of a form for create or full replace."""
    title: Optional[str] = None
    description: Optional[str] = None
    company_id: Optional[str] = None
    form_type: str = "single"
    steps: List[StepInput] = Field(default_factory=list)
    fields: List[FieldInput] = Field(default_factory=list)
    settings: Dict[str, Any] = Field(default_factory=dict)
    use_default_colors: bool = True

    @field_validator("form_type", mode="before")
    @classmethod
    def _default_form_type(cls, value):
        return value or "single"

    @field_validator("steps", "fields", mode="before")
    @classmethod
    def _null_list(cls, value):
        return [] if value is None else value

    @field_validator("settings", mode="before")
    @classmethod
    def _settings_bag(cls, value):
        if not isinstance(value, dict):
            return {}
        return FormSettings.model_validate(value).model_dump(by_alias=True, exclude_none=True)

    @field_validator("use_default_colors", mode="before")
    @classmethod
    def _default_colors(cls, value):
        return True if value is None else value


class StepRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    form_id: str
    title: str
    description: Optional[str] = None
    order_index: int = 0
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class FieldRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    form_id: str
    type: str
    label: Optional[str] = None
    placeholder: Optional[str] = None
    content: Optional[str] = None
    required: bool = False
    options: List[str] = Field(default_factory=list)
    order_index: int = 0
    step_id: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @field_validator("options", mode="before")
    @classmethod
    def _none_is_empty(cls, value):
        return [] if value is None else value


class FormDocument(BaseModel):
    """A form with its steps and fields attached, ready to render or submit."""
    id: str
    title: str
    description: Optional[str] = None
    company_id: str
    created_by: Optional[str] = None
    form_type: str  # effective type
    stored_form_type: str
    is_active: bool = True
    order_index: int = 0
    settings: Dict[str, Any] = Field(default_factory=dict)
    use_default_colors: Optional[bool] = True
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    steps: List[StepRead] = Field(default_factory=list)
    fields: List[FieldRead] = Field(default_factory=list)

    @property
    def is_multi_step(self) -> bool:
        return self.form_type == "multi-step"


class FormEnvelope(BaseModel):
    form: FormDocument
    message: Optional[str] = None


class FormListEnvelope(BaseModel):
    forms: List[FormDocument]


class SubmitRequest(_LenientInput):
    # Left untyped so a non-list payload reaches the service and fails as a ValidationError
    responses: Any = None
    submitted_by: Optional[str] = None


class SubmitResult(BaseModel):
    success: bool = True
    response_id: str


class ReorderRequest(_LenientInput):
    form_ids: Any = Field(None, alias="formIds")
    company_id: Optional[str] = Field(None, alias="companyId")


class ReorderEntry(BaseModel):
    id: str
    order: int


class ReorderResult(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    success: bool = True
    message: str = "Forms reordered successfully"
    updated_count: int = Field(0, alias="updatedCount")
    final_order: List[ReorderEntry] = Field(default_factory=list, alias="finalOrder")


class ResponseDataRead(BaseModel):
    field_id: str
    field_label: str
    value: Optional[str] = None


class ResponseRead(BaseModel):
    id: str
    form_id: str
    submitted_by: Optional[str] = None
    submitted_at: Optional[datetime] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    username: Optional[str] = None
    data: List[ResponseDataRead] = Field(default_factory=list)


class ResponseListEnvelope(BaseModel):
    responses: List[ResponseRead]


class DeleteResult(BaseModel):
    success: bool = True
