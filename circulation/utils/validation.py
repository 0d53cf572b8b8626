"""Payload validation kept outside the engine's transactional core."""
from dataclasses import dataclass, field
from typing import Any, Generic, List, Optional, Type, TypeVar
from pydantic import BaseModel, ValidationError

T = TypeVar("T", bound=BaseModel)

@dataclass(frozen=True)
class FieldError:
    field: str
    message: str

@dataclass(frozen=True)
class ValidationResult(Generic[T]):
    value: Optional[T] = None
    errors: List[FieldError] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors

def validate_payload(schema: Type[T], payload: Any) -> ValidationResult[T]:
    """Validate ``payload`` against ``schema`` without raising.

    Returns either the parsed value or one ``FieldError`` per failing field."""
    try:
        return ValidationResult(value=schema.model_validate(payload))
    except ValidationError as e:
        errors = [
            FieldError(
                field=".".join(str(part) for part in err["loc"]) or "__root__",
                message=err["msg"],
            )
            for err in e.errors()
        ]
        return ValidationResult(errors=errors)
