"""camelCase schema bases.

Python stays snake_case; JSON on the wire is camelCase. Request bodies accept
either spelling.
"""
from pydantic import BaseModel
from pydantic.alias_generators import to_camel

_CAMEL = {
    "alias_generator": to_camel,
    "populate_by_name": True,
    "protected_namespaces": (),
}


class CamelModel(BaseModel):
    """Request bodies and plain response envelopes."""
    model_config = dict(_CAMEL)


class CamelORMModel(BaseModel):
    """Responses built from attribute objects: ORM rows, task and notification dataclasses."""
    model_config = {**_CAMEL, "from_attributes": True}
