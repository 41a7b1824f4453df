"""Validation of schedule range definitions at config-acceptance time."""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone, tzinfo
from typing import Mapping, Optional, Tuple, Union

from .models import ScheduleConfigurationError
from .ranges import RangeResolver, RangeParseError, LegacyRangeResolver


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FieldError:
    """A validation failure tied to a configuration field."""

    field_path: Tuple[str, ...]
    message: str

    def __str__(self) -> str:
        return f"{'.'.join(self.field_path)}: {self.message}"


class RangeValidationError(ScheduleConfigurationError):
    """Exception raised when a schedule's ranges are rejected."""

    def __init__(self, error: FieldError):
        super().__init__(str(error))
        self.error = error


@dataclass(frozen=True)
class ValidationResult:
    """Outcome of validating a schedule's ranges."""

    error: Optional[FieldError] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def __bool__(self) -> bool:
        return self.ok

    @classmethod
    def success(cls) -> 'ValidationResult':
        return cls()

    @classmethod
    def failure(cls, field_path: Tuple[str, ...], message: str) -> 'ValidationResult':
        return cls(error=FieldError(field_path=field_path, message=message))

    def raise_for_error(self) -> None:
        """Raise RangeValidationError if validation failed."""
        if self.error is not None:
            raise RangeValidationError(self.error)


class RangeValidator:
    """Checks that every range key and value of a schedule parses."""

    FIELD_PATH = ("ranges",)

    def __init__(self, resolver: Optional[RangeResolver] = None):
        self.resolver = resolver or LegacyRangeResolver()

    def validate(
        self,
        ranges: Optional[Mapping[str, str]],
        reference: Optional[datetime] = None,
        timezone_str: Union[str, tzinfo] = 'UTC'
    ) -> ValidationResult:
        """Validate a ranges mapping, stopping at the first invalid pair.

        Args:
            ranges: Day rule -> time ranges mapping (None counts as empty)
            reference: Instant the values are expanded against (default: now)
            timezone_str: Timezone used for the expansion

        Returns:
            ValidationResult carrying the first FieldError, if any
        """
        if not ranges:
            return ValidationResult.success()

        if reference is None:
            reference = datetime.now(timezone.utc)
        elif reference.tzinfo is None:
            reference = reference.replace(tzinfo=timezone.utc)

        for key in sorted(ranges):
            value = ranges[key]

            try:
                self.resolver.parse_day_rule(key)
            except RangeParseError as e:
                logger.debug(f"Rejected range key '{key}': {e}")
                return ValidationResult.failure(
                    self.FIELD_PATH,
                    f"Invalid time specification '{key}': {e}"
                )

            try:
                self.resolver.expand_time_ranges(value, reference.date(), timezone_str)
            except RangeParseError as e:
                logger.debug(f"Rejected range value '{value}': {e}")
                return ValidationResult.failure(
                    self.FIELD_PATH,
                    f"Invalid time range definition '{value}': {e}"
                )

        return ValidationResult.success()
