import uuid
from datetime import datetime, timezone

from sqlalchemy import Column, Integer, String, Boolean, DateTime, ForeignKey, Text, Index, JSON, CheckConstraint
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from app.db.database import Base


def _new_id() -> str:
    return str(uuid.uuid4())


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class Form(Base):
    """A tenant-owned form definition."""
    __tablename__ = "forms"
    __table_args__ = (
        Index("ix_forms_company_order", "company_id", "order_index"),
        CheckConstraint("form_type IN ('single', 'multi-step')", name="ck_forms_form_type"),
    )

    id = Column(String(36), primary_key=True, default=_new_id)
    title = Column(String(255), nullable=False)
    description = Column(Text)
    company_id = Column(String(100), nullable=False, index=True)
    created_by = Column(String(100))
    form_type = Column(String(20), nullable=False, default="single")
    is_active = Column(Boolean, nullable=False, default=True)
    order_index = Column(Integer, nullable=False, default=0)
    settings = Column(JSON, nullable=False, default=dict)
    use_default_colors = Column(Boolean, default=True)
    created_at = Column(DateTime(timezone=True), default=utc_now, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), default=utc_now, server_default=func.now())

    steps = relationship("FormStep", back_populates="form", cascade="all, delete-orphan", passive_deletes=True)
    fields = relationship("FormField", back_populates="form", cascade="all, delete-orphan", passive_deletes=True)
    responses = relationship("FormResponse", back_populates="form", cascade="all, delete-orphan", passive_deletes=True)


class FormStep(Base):
    """An ordered phase of a multi-step form."""
    __tablename__ = "form_steps"
    __table_args__ = (
        Index("ix_form_steps_form_order", "form_id", "order_index"),
    )

    id = Column(String(36), primary_key=True, default=_new_id)
    form_id = Column(String(36), ForeignKey("forms.id", ondelete="CASCADE"), nullable=False)
    title = Column(String(255), nullable=False)
    description = Column(Text)
    order_index = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), default=utc_now, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), default=utc_now, server_default=func.now())

    form = relationship("Form", back_populates="steps")
    fields = relationship("FormField", back_populates="step", passive_deletes=True)


class FormField(Base):
    __tablename__ = "form_fields"
    __table_args__ = (
        Index("ix_form_fields_form_order", "form_id", "order_index"),
        CheckConstraint(
            "type IN ('text', 'email', 'phone', 'select', 'checkbox', 'textarea', 'heading', 'paragraph')",
            name="ck_form_fields_type",
        ),
    )

    id = Column(String(36), primary_key=True, default=_new_id)
    form_id = Column(String(36), ForeignKey("forms.id", ondelete="CASCADE"), nullable=False)
    step_id = Column(String(36), ForeignKey("form_steps.id", ondelete="CASCADE"), nullable=True, index=True)
    type = Column(String(20), nullable=False)
    label = Column(String(500))
    placeholder = Column(String(500))
    content = Column(Text)  # heading / paragraph text
    required = Column(Boolean, nullable=False, default=False)
    options = Column(JSON, nullable=False, default=list)
    order_index = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), default=utc_now, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), default=utc_now, server_default=func.now())

    form = relationship("Form", back_populates="fields")
    step = relationship("FormStep", back_populates="fields")


class FormResponse(Base):
    """One submission against a form."""
    __tablename__ = "form_responses"
    __table_args__ = (
        Index("ix_form_responses_form_submitted", "form_id", "submitted_at"),
    )

    id = Column(String(36), primary_key=True, default=_new_id)
    form_id = Column(String(36), ForeignKey("forms.id", ondelete="CASCADE"), nullable=False)
    submitted_by = Column(String(100), nullable=True)
    username = Column(String(255), nullable=True)  # resolved display name, best effort
    submitted_at = Column(DateTime(timezone=True), default=utc_now, server_default=func.now())
    ip_address = Column(String(100))
    user_agent = Column(String(500))

    form = relationship("Form", back_populates="responses")
    data = relationship("FormResponseData", back_populates="response", cascade="all, delete-orphan", passive_deletes=True)


class FormResponseData(Base):
    __tablename__ = "form_response_data"

    id = Column(String(36), primary_key=True, default=_new_id)
    response_id = Column(String(36), ForeignKey("form_responses.id", ondelete="CASCADE"), nullable=False, index=True)
    # No FK to form_fields: answers outlive the field rows a full replace deletes
    field_id = Column(String(36), nullable=False, index=True)
    value = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utc_now, server_default=func.now())

    response = relationship("FormResponse", back_populates="data")
