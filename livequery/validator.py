import datetime
import logging
import re
from typing import Any, Callable, Optional, Union
from uuid import UUID as PyUUID

logger = logging.getLogger(__name__)


class Validator:
    """
    Provides a set of built-in validation functions for row values.
    Each returns an error message, or None when the value passes.
    """

    @staticmethod
    def required(value: Any, error_message: str = "This field is required.", allow_none: bool = False) -> Optional[str]:
        """Checks if a value is present, potentially allowing None."""
        if value is None:
            return None if allow_none else error_message
        if isinstance(value, str) and not value:
            return error_message
        return None

    @staticmethod
    def type_of(expected: Union[type, str], error_message: str = None) -> Callable[[Any], Optional[str]]:
        """Creates a validation function that checks a coerced value's type."""
        names = {str: "text", int: "an integer", float: "a number", bool: "a boolean",
                 dict: "an object", list: "a list", "datetime": "an ISO timestamp"}

        def validate(value: Any) -> Optional[str]:
            if expected == "datetime":
                ok = isinstance(value, datetime.datetime)
            elif expected is float:
                ok = isinstance(value, (int, float)) and not isinstance(value, bool)
            elif expected is int:
                ok = isinstance(value, int) and not isinstance(value, bool)
            else:
                ok = isinstance(value, expected)
            if not ok:
                return error_message or f"Must be {names.get(expected, expected)}."
            return None
        return validate

    @staticmethod
    def min_length(length: int, error_message: str = None) -> Callable[[str], Optional[str]]:
        """Creates a validation function that checks for minimum length."""
        def validate(value: str) -> Optional[str]:
            if value is not None and len(str(value)) < length:
                return error_message or f"Must be at least {length} characters long."
            return None
        return validate

    @staticmethod
    def max_length(length: int, error_message: str = None) -> Callable[[str], Optional[str]]:
        """Creates a validation function that checks for maximum length."""
        def validate(value: str) -> Optional[str]:
            if value is not None and len(str(value)) > length:
                return error_message or f"Must be at most {length} characters long."
            return None
        return validate

    @staticmethod
    def email(value: str, error_message: str = None) -> Optional[str]:
        """Checks if a value is a valid email address."""
        if value is None or value == "":
            return None
        email_pattern = r"^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$"
        return Validator.regex(email_pattern, error_message or "Must be a valid email address.")(value)

    @staticmethod
    def url(value: str, error_message: str = None) -> Optional[str]:
        """Checks if a value is an http(s) URL."""
        if value is None or value == "":
            return None
        url_pattern = r"^https?://[^\s/$.?#][^\s]*$"
        return Validator.regex(url_pattern, error_message or "Must be a valid URL.")(value)

    @staticmethod
    def uuid(value: str, error_message: str = None) -> Optional[str]:
        """Checks if a value is a valid UUID."""
        if value is None or value == "":
            return None
        try:
            PyUUID(str(value))
            return None
        except (ValueError, AttributeError, TypeError):
            return error_message or "Must be a valid UUID."

    @staticmethod
    def regex(pattern: str, error_message: str = None) -> Callable[[str], Optional[str]]:
        """Creates a validation function that checks against a regex pattern."""
        compiled_pattern = re.compile(pattern)

        def validate(value: str) -> Optional[str]:
            if value is not None and not compiled_pattern.fullmatch(str(value)):
                return error_message or "Invalid format."
            return None
        return validate

    @staticmethod
    def min_value(min_val: Union[int, float], error_message: str = None) -> Callable[[Union[int, float]], Optional[str]]:
        """Creates a validation function that checks for minimum value."""
        def validate(value: Union[int, float]) -> Optional[str]:
            if value is not None:
                try:
                    if float(value) < min_val:
                        return error_message or f"Must be at least {min_val}."
                except (ValueError, TypeError):
                    return "Must be a valid number."
            return None
        return validate

    @staticmethod
    def max_value(max_val: Union[int, float], error_message: str = None) -> Callable[[Union[int, float]], Optional[str]]:
        """Creates a validation function that checks for maximum value."""
        def validate(value: Union[int, float]) -> Optional[str]:
            if value is not None:
                try:
                    if float(value) > max_val:
                        return error_message or f"Must be at most {max_val}."
                except (ValueError, TypeError):
                    return "Must be a valid number."
            return None
        return validate

    @staticmethod
    def one_of(choices, error_message: str = None) -> Callable[[Any], Optional[str]]:
        """Creates a validation function that restricts a value to a fixed set."""
        allowed = tuple(choices)

        def validate(value: Any) -> Optional[str]:
            if value is not None and value not in allowed:
                return error_message or f"Must be one of: {', '.join(map(str, allowed))}."
            return None
        return validate

    @staticmethod
    def custom(validation_func: Callable[[Any], Optional[str]]) -> Callable[[Any], Optional[str]]:
        """Wraps a custom validation function so a crash reads as a failed check."""
        def safe_validate(value: Any) -> Optional[str]:
            try:
                return validation_func(value)
            except Exception as e:
                logger.warning("Error in custom validator: %s", e)
                return "Validation failed due to an internal error."
        return safe_validate
