from typing import Any, Dict, Protocol, Type
from pydantic import BaseModel
import pydantic

import jsonschema

from notechat.domain.models.tool import ValidationFailure, ValidationResult, ValidationSuccess


class SchemaValidator(Protocol):
    """Validates raw tool arguments, never raises"""

    def validate(self, args: Dict[str, Any]) -> ValidationResult:
        ...

    def json_schema(self) -> Dict[str, Any]:
        ...


class PydanticArgsValidator:
    """Validates arguments against a pydantic model; success carries the coerced values"""

    def __init__(self, model: Type[BaseModel]):
        self.model = model

    def validate(self, args: Dict[str, Any]) -> ValidationResult:
        try:
            parsed = self.model.model_validate(args or {})
        except pydantic.ValidationError as e:
            errors = [
                f"{'.'.join(str(part) for part in error['loc']) or 'args'}: {error['msg']}"
                for error in e.errors()
            ]
            return ValidationFailure(errors=errors)
        return ValidationSuccess(args=parsed.model_dump())

    def json_schema(self) -> Dict[str, Any]:
        return self.model.model_json_schema()


class JsonSchemaValidator:
    """Validates arguments against a JSON schema document"""

    def __init__(self, schema: Dict[str, Any]):
        jsonschema.Draft202012Validator.check_schema(schema)
        self.schema = schema
        self._validator = jsonschema.Draft202012Validator(schema)

    def validate(self, args: Dict[str, Any]) -> ValidationResult:
        errors = sorted(self._validator.iter_errors(args or {}), key=lambda e: list(e.path))
        if errors:
            return ValidationFailure(errors=[
                f"{'.'.join(str(part) for part in error.path) or 'args'}: {error.message}"
                for error in errors
            ])
        return ValidationSuccess(args=dict(args or {}))

    def json_schema(self) -> Dict[str, Any]:
        return self.schema
