"""Number generator: unique, increasing, formatted numbers from named sequences."""
import logging
from typing import Any, List, Optional

from episode_rpc.config import Settings, get_settings
from episode_rpc.models import FormatOptions, RequestValidator
from episode_rpc.retry import store_retrying
from episode_rpc.storage import SequenceStore


logger = logging.getLogger(__name__)

DEFAULT_FORMAT = FormatOptions()


class NumberGenerator:
    """Allocates ranges from a ``SequenceStore`` and formats them.

    Numbers are never handed out twice for a name.  Gaps are possible when a
    caller drops numbers it was given; the generator itself leaves none.
    """

    def __init__(self, sequences: SequenceStore, settings: Optional[Settings] = None):
        self.sequences = sequences
        self.settings = settings or get_settings()

    def allocate(
        self,
        sequence_name: str,
        count: int = 1,
        format_options: Optional[Any] = None,
    ) -> List[str]:
        """Reserve ``count`` numbers and return them formatted, in order.

        ``format_options`` may be a ``FormatOptions``, a dict, or None to use
        the options stored with the sequence.  All validation happens before
        storage is touched.  ``StoreUnavailable`` is retried; a failed attempt
        reserves nothing, so a retry cannot produce duplicates.
        """
        RequestValidator.validate_sequence_name(sequence_name)
        RequestValidator.validate_count(count, self.settings.max_allocation_count)
        options = RequestValidator.parse_format_options(format_options)

        retrying = store_retrying(self.settings)
        if options is None:
            options = retrying(self.sequences.get_format_options, sequence_name) or DEFAULT_FORMAT

        last = retrying(self.sequences.increment, sequence_name, count)
        first = last - count + 1
        numbers = [options.format(value) for value in range(first, last + 1)]

        logger.info("numbers_allocated", extra={
            "sequence_name": sequence_name, "count": count,
            "first_value": first, "last_value": last,
        })
        return numbers

    def allocate_raw(self, sequence_name: str, count: int = 1) -> range:
        """Reserve ``count`` numbers and return the raw half-open range."""
        RequestValidator.validate_sequence_name(sequence_name)
        RequestValidator.validate_count(count, self.settings.max_allocation_count)
        last = store_retrying(self.settings)(self.sequences.increment, sequence_name, count)
        return range(last - count + 1, last + 1)
