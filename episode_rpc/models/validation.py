"""Syntactic validation of RPC arguments before they reach storage."""
import re
from typing import Any, Optional

from pydantic import ValidationError as PydanticValidationError

from episode_rpc.errors import (
    InvalidCount,
    InvalidFormatOptions,
    InvalidIdentifier,
    InvalidSequenceName,
)
from .numbering import FormatOptions


class RequestValidator:
    """Fail-fast checks for identifiers, sequence names, counts and formats."""

    UUID_PATTERN = re.compile(
        r"^[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}$"
    )

    SEQUENCE_NAME_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._:/-]{0,127}$")

    @staticmethod
    def validate_resource_id(resource_id: Any) -> str:
        """Return the id unchanged if it is a canonical hyphenated UUID."""
        if not isinstance(resource_id, str) or not RequestValidator.UUID_PATTERN.match(resource_id):
            raise InvalidIdentifier(f"Invalid identifier: {resource_id!r}")
        return resource_id

    @staticmethod
    def validate_sequence_name(sequence_name: Any) -> str:
        if not isinstance(sequence_name, str) or not RequestValidator.SEQUENCE_NAME_PATTERN.match(sequence_name):
            raise InvalidSequenceName(f"Invalid sequence name: {sequence_name!r}")
        return sequence_name

    @staticmethod
    def validate_count(count: Any, max_count: int) -> int:
        # bool is an int subclass; True must not mean 1
        if isinstance(count, bool) or not isinstance(count, int):
            raise InvalidCount(f"count must be an integer, got {count!r}")
        if count < 1:
            raise InvalidCount(f"count must be at least 1, got {count}")
        if count > max_count:
            raise InvalidCount(f"count must not exceed {max_count}, got {count}")
        return count

    @staticmethod
    def parse_format_options(
        raw: Optional[Any],
    ) -> Optional[FormatOptions]:
        if raw is None or isinstance(raw, FormatOptions):
            return raw
        try:
            return FormatOptions.model_validate(raw)
        except PydanticValidationError as exc:
            raise InvalidFormatOptions(f"Invalid format options: {exc.errors()[0]['msg']}") from exc
