"""
Forms Module
Form documents (steps + fields), the write-path orchestrator and exports.
"""
from .document import assemble, select_renderable_fields, validate_for_create_or_replace
from .service import FormOrchestrator
from .schemas import FormDocument, FormInput

__all__ = [
    "FormOrchestrator",
    "FormDocument",
    "FormInput",
    "assemble",
    "select_renderable_fields",
    "validate_for_create_or_replace",
]
