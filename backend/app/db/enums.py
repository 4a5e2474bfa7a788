import enum


class FormType(str, enum.Enum):
    single = "single"
    multi_step = "multi-step"


class FieldType(str, enum.Enum):
    text = "text"
    email = "email"
    phone = "phone"
    select = "select"
    checkbox = "checkbox"
    textarea = "textarea"
    heading = "heading"
    paragraph = "paragraph"


# Display-only field types carry `content` instead of label/placeholder/required
CONTENT_FIELD_TYPES = frozenset({FieldType.heading.value, FieldType.paragraph.value})


class AccessLevel(str, enum.Enum):
    admin = "admin"
    customer = "customer"
    no_access = "no_access"
