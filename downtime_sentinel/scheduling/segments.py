"""Selection of the next maintenance segment across a schedule's ranges."""

import logging
from datetime import datetime, timezone
from typing import Mapping, Optional

from .models import Segment, NO_SEGMENT
from .ranges import RangeResolver, LegacyRangeResolver


logger = logging.getLogger(__name__)


class SegmentFinder:
    """Queries the resolver once per range and keeps the earliest future segment."""

    def __init__(self, resolver: Optional[RangeResolver] = None):
        self.resolver = resolver or LegacyRangeResolver()

    def find_next_segment(
        self,
        ranges: Mapping[str, str],
        reference: datetime,
        now: Optional[datetime] = None,
        timezone_str: str = 'UTC'
    ) -> Segment:
        """Find the next upcoming segment for a set of ranges.

        Args:
            ranges: Day rule -> time ranges mapping
            reference: Instant the ranges are resolved against
            now: Segments beginning before this instant are discarded
                (default: the reference)
            timezone_str: Timezone the ranges are evaluated in

        Returns:
            The segment with the earliest begin, or NO_SEGMENT
        """
        if reference.tzinfo is None:
            reference = reference.replace(tzinfo=timezone.utc)
        if now is None:
            now = reference
        elif now.tzinfo is None:
            now = now.replace(tzinfo=timezone.utc)

        logger.debug(f"Finding next segment for {len(ranges)} ranges at {reference.isoformat()}")

        best_key = None
        best_segment = NO_SEGMENT

        # Sorted so that equal begins resolve to the lexicographically first key
        for key in sorted(ranges):
            value = ranges[key]
            logger.debug(f"Evaluating range '{key}': '{value}'")

            try:
                segment = self.resolver.resolve(key, value, reference, timezone_str)
            except Exception as e:
                logger.warning(f"Failed to resolve range '{key}': '{value}': {e}")
                continue

            if segment is None:
                continue

            logger.debug(f"Considering segment {segment} from '{key}'")

            if segment.begin < now:
                logger.debug(f"Rejecting segment {segment} from '{key}': begins in the past")
                continue

            if best_key is None or segment.begin < best_segment.begin:
                best_key = key
                best_segment = segment

        if best_key is not None:
            logger.debug(f"Selected segment {best_segment} from '{best_key}'")

        return best_segment
