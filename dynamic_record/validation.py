"""
Validation hooks run by ``DynamicRecord.save``.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Optional, Protocol, Sequence, Type

from pydantic import BaseModel, ValidationError

if TYPE_CHECKING:
    from .record import DynamicRecord


class Validator(Protocol):
    """Checks a record and reports errors through ``record.add_error``."""

    def validate(self, record: "DynamicRecord", attributes: Optional[Sequence[str]] = None) -> bool: ...


class PydanticValidator:
    """
    Validate record attributes against a pydantic model.

    Errors are recorded per attribute (the first element of the pydantic error
    location). When ``attributes`` is given, errors on other attributes are
    ignored.
    """

    def __init__(self, model: Type[BaseModel]):
        self.model = model

    def validate(self, record: "DynamicRecord", attributes: Optional[Sequence[str]] = None) -> bool:
        values = record.get_attributes()
        for name in type(record).declared_fields():
            values.setdefault(name, getattr(record, name, None))
        try:
            self.model.model_validate(values)
        except ValidationError as exc:
            valid = True
            for error in exc.errors():
                name = str(error["loc"][0]) if error["loc"] else ""
                if attributes is not None and name not in attributes:
                    continue
                record.add_error(name, error["msg"])
                valid = False
            return valid
        return True
