import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from livequery.exceptions import SchemaError
from livequery.validator import Validator

Number = Union[int, float]
_UNSET = object()  # Sentinel object to differentiate an absent column from a None value


class Field:
    """
    Represents a single column in a row schema.
    """
    def __init__(self, name: str):
        self.name = name
        self.type: Union[type, str, None] = None
        self.required_flag: bool = False
        self.optional_flag: bool = False
        self.nullable_flag: bool = False
        self.trim_flag: bool = False
        self.validation_functions: List[Callable[[Any], Optional[str]]] = []
        self.default_value_attr: Any = _UNSET
        self.required_message: str = "This field is required."

    # -- Primitives ---
    def string(self) -> 'Field':
        """Sets the field type to string."""
        self.type = str
        return self

    def int(self) -> 'Field':
        """Sets the field type to integer. Numeric strings are converted."""
        self.type = int
        return self

    def float(self) -> 'Field':
        """Sets the field type to float. Numeric strings are converted."""
        self.type = float
        return self

    def bool(self) -> 'Field':
        """Sets the field type to boolean. "true"/"false" strings are converted."""
        self.type = bool
        return self

    def list(self) -> 'Field':
        self.type = list
        return self

    def dict(self) -> 'Field':
        self.type = dict
        return self

    def datetime(self) -> 'Field':
        """Sets the field type to datetime. ISO-8601 strings (including a trailing Z) are parsed."""
        self.type = "datetime"
        return self
    # -- End Primitives ---

    def trim(self) -> 'Field':
        """Marks the field to have its value trimmed before validation."""
        self.trim_flag = True
        return self

    def required(self, error_message: str = "This field is required.") -> 'Field':
        """
        Marks the field as required.
        - It must be present in the row.
        - It cannot be None unless `.nullable()` is also used.
        - This is ignored if `.optional()` is used.
        """
        self.required_flag = True
        self.optional_flag = False
        self.required_message = error_message
        return self

    def optional(self) -> 'Field':
        """
        Marks the field as optional: it may be absent, and is validated when present.
        """
        self.optional_flag = True
        self.required_flag = False
        return self

    def nullable(self) -> 'Field':
        """Allows `None` as a valid value; other rules are skipped for None."""
        self.nullable_flag = True
        return self

    def default_value(self, value: Any) -> 'Field':
        """Value used when the column is absent from the row."""
        self.default_value_attr = value
        return self

    @property
    def has_default(self) -> bool:
        return self.default_value_attr is not _UNSET

    def min_length(self, length: int, error_message: str = None) -> 'Field':
        self.validation_functions.append(Validator.min_length(length, error_message))
        return self

    def max_length(self, length: int, error_message: str = None) -> 'Field':
        self.validation_functions.append(Validator.max_length(length, error_message))
        return self

    def email(self, error_message: str = "Must be a valid email address.") -> 'Field':
        self.validation_functions.append(lambda value: Validator.email(value, error_message))
        return self

    def url(self, error_message: str = "Must be a valid URL.") -> 'Field':
        self.validation_functions.append(lambda value: Validator.url(value, error_message))
        return self

    def uuid(self, error_message: str = "Must be a valid UUID.") -> 'Field':
        self.validation_functions.append(lambda value: Validator.uuid(value, error_message))
        return self

    def regex(self, pattern: str, error_message: str = "Invalid format.") -> 'Field':
        self.validation_functions.append(Validator.regex(pattern, error_message))
        return self

    def min_value(self, min_val: Number, error_message: str = None) -> 'Field':
        self.validation_functions.append(Validator.min_value(min_val, error_message))
        return self

    def max_value(self, max_val: Number, error_message: str = None) -> 'Field':
        self.validation_functions.append(Validator.max_value(max_val, error_message))
        return self

    def one_of(self, *choices, error_message: Optional[str] = None) -> 'Field':
        self.validation_functions.append(Validator.one_of(choices, error_message))
        return self

    def custom(self, validation_func: Callable[[Any], Optional[str]]) -> 'Field':
        self.validation_functions.append(Validator.custom(validation_func))
        return self

    def convert(self, value: Any) -> Any:
        """Best-effort conversion of a wire value to the declared type."""
        if value is None or self.type is None:
            return value
        try:
            if self.type is int and isinstance(value, str):
                return int(value.strip())
            if self.type is int and isinstance(value, float) and value.is_integer():
                return int(value)
            if self.type is float and isinstance(value, str):
                return float(value.strip())
            if self.type is bool and isinstance(value, str):
                lowered = value.strip().lower()
                if lowered in ("true", "t", "1", "yes"):
                    return True
                if lowered in ("false", "f", "0", "no"):
                    return False
            if self.type == "datetime" and isinstance(value, str):
                text = value.strip()
                if text.endswith("Z"):
                    text = text[:-1] + "+00:00"
                return datetime.datetime.fromisoformat(text)
        except ValueError:
            # Left as-is; the type check reports it
            return value
        return value


class Schema:
    """
    Declares the columns of one resource's rows.

        schema = Schema("gallery")
        schema.field("id").string().required()
        schema.field("title").string().trim().max_length(200)
        row = schema.coerce(payload)
    """
    def __init__(self, resource: str = None):
        self.resource = resource
        self.fields: Dict[str, Field] = {}

    def field(self, name: str) -> Field:
        if name not in self.fields:
            self.fields[name] = Field(name)
        return self.fields[name]

    def _process(self, row: Dict[str, Any]) -> Tuple[Dict[str, Any], Dict[str, List[str]]]:
        data = dict(row)
        errors: Dict[str, List[str]] = {}

        for field_name, field in self.fields.items():
            field_errors = []
            value = row.get(field_name, _UNSET)

            if value is _UNSET and field.has_default:
                value = field.default_value_attr
                data[field_name] = value

            # Optional and absent: nothing to check
            if value is _UNSET and not field.required_flag:
                continue

            if field.trim_flag and isinstance(value, str):
                value = value.strip()

            if field.required_flag:
                error_message = Validator.required(
                    value if value is not _UNSET else None,
                    field.required_message,
                    allow_none=field.nullable_flag and value is not _UNSET,
                )
                if error_message:
                    errors[field_name] = [error_message]
                    continue

            # Null columns skip the remaining rules
            if value is None:
                continue

            value = field.convert(value)
            data[field_name] = value

            if field.type is not None:
                type_error = Validator.type_of(field.type)(value)
                if type_error:
                    errors[field_name] = [type_error]
                    continue

            for validation_func in field.validation_functions:
                error_message = validation_func(value)
                if error_message:
                    field_errors.append(error_message)

            if field_errors:
                errors[field_name] = list(dict.fromkeys(field_errors))

        return data, errors

    def validate(self, row: Dict[str, Any]) -> Dict[str, List[str]]:
        """Validates a row against the schema. Returns {column: [messages]}; empty when valid."""
        if not isinstance(row, dict):
            return {"__row__": ["Row must be an object."]}
        return self._process(row)[1]

    def coerce(self, row: Dict[str, Any]) -> Dict[str, Any]:
        """
        Returns a converted copy of ``row``: declared columns are converted to their types and
        defaults filled; undeclared columns pass through unchanged.

        Raises:
            SchemaError: if any declared column fails validation.
        """
        if not isinstance(row, dict):
            raise SchemaError({"__row__": ["Row must be an object."]}, self.resource)
        data, errors = self._process(row)
        if errors:
            raise SchemaError(errors, self.resource)
        return data
