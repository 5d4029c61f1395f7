"""Split raw timestamped unit output into per-step segments.

The backend prints every line prefixed with the elapsed time since the unit
started (``00h00m03s120ms  ...``) and marks the start of each shell
invocation with a line such as ``00h00m03s120ms  [workspace] $ /bin/sh -xe
/tmp/ci123.sh``. Each text between two such markers belongs to one step, in
declaration order. Backends with another output format supply their own
``LogSegmenter``.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import List, Optional

from .units import UnitResult

logger = logging.getLogger(__name__)

DEFAULT_DELIMITER = r"\n\w{14}\s{2}\[.*?\].*?\.sh"
DEFAULT_TIMESTAMP = r"(?:^|\n)(\w{14})  "
DEFAULT_CHECKOUT_MARKER = "  Cloning the remote Git repository\n"
DEFAULT_SUCCESS_MARKER = "  Finished: SUCCESS\n"
DEFAULT_FAILURE_MARKER = "  Finished: FAILURE\n"

_ELAPSED = re.compile(r"^(\d+)h(\d+)m(\d+)s(\d+)ms$")


@dataclass
class Segment:
    text: str
    start_offset: Optional[int] = None
    end_offset: Optional[int] = None

    @property
    def duration(self) -> Optional[int]:
        if self.start_offset is None or self.end_offset is None:
            return None
        return self.end_offset - self.start_offset

    def body(self) -> str:
        """Segment text without the delimiter remnant on its first line."""
        _, sep, rest = self.text.partition("\n")
        return rest if sep else ""


@dataclass
class SegmentedLog:
    preamble: Segment
    segments: List[Segment] = field(default_factory=list)


def parse_offset(stamp: str) -> int:
    """Convert an elapsed stamp like ``01h02m03s004ms`` to milliseconds."""
    match = _ELAPSED.match(stamp.strip())
    if match is None:
        raise ValueError(f"unrecognised elapsed time stamp: {stamp!r}")
    hours, minutes, seconds, millis = (int(g) for g in match.groups())
    return ((hours * 60 + minutes) * 60 + seconds) * 1000 + millis


class LogSegmenter:
    """Delimiter regex in, ordered segments with start/end offsets out."""

    def __init__(
        self,
        delimiter: str = DEFAULT_DELIMITER,
        timestamp: str = DEFAULT_TIMESTAMP,
        checkout_marker: str = DEFAULT_CHECKOUT_MARKER,
        success_marker: str = DEFAULT_SUCCESS_MARKER,
        failure_marker: str = DEFAULT_FAILURE_MARKER,
    ) -> None:
        self._delimiter = re.compile(delimiter)
        self._timestamp = re.compile(timestamp)
        self.checkout_marker = checkout_marker
        self.success_marker = success_marker
        self.failure_marker = failure_marker

    def _segment(self, text: str) -> Segment:
        stamps = self._timestamp.findall(text)
        segment = Segment(text=text)
        if not stamps:
            return segment
        try:
            segment.start_offset = parse_offset(stamps[0])
            segment.end_offset = parse_offset(stamps[-1])
        except ValueError as exc:
            logger.error(f"failed to parse step time: {exc}")
            segment.start_offset = segment.end_offset = None
        return segment

    def split(self, raw_output: str) -> SegmentedLog:
        parts = self._delimiter.split(raw_output or "")
        return SegmentedLog(
            preamble=self._segment(parts[0]),
            segments=[self._segment(part) for part in parts[1:]],
        )

    def has_checkout(self, raw_output: str) -> bool:
        parts = self._delimiter.split(raw_output or "", maxsplit=1)
        return self.checkout_marker in parts[0]

    def detect_result(self, raw_output: str) -> Optional[UnitResult]:
        if not raw_output:
            return None
        if raw_output.endswith(self.success_marker):
            return UnitResult.SUCCESS
        if raw_output.endswith(self.failure_marker):
            return UnitResult.FAILURE
        return None
