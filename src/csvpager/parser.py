"""Streaming CSV parser with a row window and a record filter.

Records are cut from the byte stream incrementally, so memory use is bounded
by ``max_record_chars`` rather than the file size. The first non-blank record
is the header row; data rows are numbered from 1 and only rows inside
``[range_start, range_end)`` are decoded, filtered and emitted. Reading stops
once the window is passed.

Quoting is relaxed: a quote only opens a quoted field at the start of a field,
and stray quotes elsewhere are kept as literal text. Rows that still fail to
decode, or whose column count differs from the header, are skipped with a
warning and keep their row position. A record that outgrows
``max_record_chars`` (typically an unclosed quote) is skipped the same way and
parsing resumes at its first line break, so one bad quote neither swallows the
rest of the file nor buffers it.
"""

from __future__ import annotations

import codecs
import csv
from collections.abc import AsyncIterable, AsyncIterator, Callable
from contextlib import aclosing
from dataclasses import dataclass

import structlog

from csvpager.models.page import Record

log = structlog.get_logger()

RecordFilter = Callable[[Record], bool]

# Record splitter states
_FIELD_START = 0
_UNQUOTED = 1
_QUOTED = 2
_QUOTE_IN_QUOTED = 3
_DISCARD = 4

DEFAULT_MAX_RECORD_CHARS = 1_048_576


@dataclass(frozen=True)
class ParseOptions:
    range_start: int = 1
    range_end: int | None = None
    record_filter: RecordFilter | None = None
    trim: bool = True
    delimiter: str = ","
    encoding: str = "utf-8-sig"
    max_record_chars: int = DEFAULT_MAX_RECORD_CHARS


def contains_text(needle: str | None) -> RecordFilter | None:
    """Build a case-insensitive substring predicate over a record's string values.

    Returns ``None`` for an empty needle, meaning "keep everything".
    """
    if not needle:
        return None
    lowered = needle.lower()

    def predicate(record: Record) -> bool:
        return any(
            isinstance(value, str) and lowered in value.lower() for value in record.values()
        )

    return predicate


class _RecordSplitter:
    """Cuts decoded text into raw records without interpreting field contents.

    At most ``max_record_chars`` of an unfinished record are buffered. A record
    that grows past the limit, or a quoted field still open at end of input, is
    reported as ``None``: it is cut at its first line break and the buffered
    text after that break is scanned again from a field start. A record longer
    than the limit with no line break at all is discarded up to the next one.
    """

    def __init__(
        self,
        delimiter: str,
        quotechar: str = '"',
        skip_leading_space: bool = True,
        max_record_chars: int = DEFAULT_MAX_RECORD_CHARS,
    ) -> None:
        self._delimiter = delimiter
        self._quotechar = quotechar
        self._skip_leading_space = skip_leading_space
        self._max_record_chars = max_record_chars
        self._state = _FIELD_START
        self._pending: list[str] = []
        self._pending_size = 0

    @property
    def buffered_size(self) -> int:
        return self._pending_size

    def feed(self, text: str) -> list[str | None]:
        records: list[str | None] = []
        while text:
            self._scan(text, records)
            text = (
                self._cut_oversized(records)
                if self._pending_size > self._max_record_chars
                else ""
            )
        return records

    def flush(self) -> list[str | None]:
        """Return the records still buffered once the input has ended."""
        records: list[str | None] = []
        while self._state == _QUOTED:
            self._scan(self._cut_oversized(records), records)
        if self._pending:
            records.append("".join(self._pending))
        self._reset()
        return records

    def _reset(self) -> None:
        self._pending = []
        self._pending_size = 0
        self._state = _FIELD_START

    def _cut_oversized(self, records: list[str | None]) -> str:
        buffered = "".join(self._pending)
        self._reset()
        records.append(None)
        cut = buffered.find("\n")
        if cut == -1:
            self._state = _DISCARD
            return ""
        return buffered[cut + 1 :]

    def _scan(self, text: str, records: list[str | None]) -> None:
        start = 0
        state = self._state
        for i, ch in enumerate(text):
            if state == _DISCARD:
                if ch == "\n":
                    start = i + 1
                    state = _FIELD_START
            elif state == _QUOTED:
                if ch == self._quotechar:
                    state = _QUOTE_IN_QUOTED
            elif ch == "\n":
                self._pending.append(text[start : i + 1])
                records.append("".join(self._pending))
                self._pending = []
                self._pending_size = 0
                start = i + 1
                state = _FIELD_START
            elif ch == self._delimiter:
                state = _FIELD_START
            elif state == _FIELD_START:
                if ch == self._quotechar:
                    state = _QUOTED
                elif not (self._skip_leading_space and ch == " "):
                    state = _UNQUOTED
            elif state == _QUOTE_IN_QUOTED:
                # A doubled quote re-enters the quoted field; anything else is
                # trailing junk kept as literal text.
                state = _QUOTED if ch == self._quotechar else _UNQUOTED
        self._state = state
        if state != _DISCARD and start < len(text):
            self._pending.append(text[start:])
            self._pending_size += len(text) - start


def _decode_fields(raw: str, options: ParseOptions) -> list[str] | None:
    """Decode one raw record, or return None if it is malformed."""
    try:
        rows = list(
            csv.reader([raw], delimiter=options.delimiter, skipinitialspace=options.trim)
        )
    except csv.Error:
        return None
    if len(rows) != 1:
        return None
    fields = rows[0]
    if options.trim:
        fields = [field.strip() for field in fields]
    return fields


def _is_blank(raw: str) -> bool:
    return not raw.strip()


async def _raw_records(
    chunks: AsyncIterable[bytes], options: ParseOptions
) -> AsyncIterator[str | None]:
    decoder = codecs.getincrementaldecoder(options.encoding)(errors="replace")
    splitter = _RecordSplitter(
        options.delimiter,
        skip_leading_space=options.trim,
        max_record_chars=options.max_record_chars,
    )
    async for chunk in chunks:
        for raw in splitter.feed(decoder.decode(chunk)):
            yield raw
    for raw in splitter.feed(decoder.decode(b"", final=True)):
        yield raw
    for raw in splitter.flush():
        yield raw


async def parse_records(
    chunks: AsyncIterable[bytes], options: ParseOptions | None = None
) -> AsyncIterator[Record]:
    """Yield records inside the window that pass ``options.record_filter``, in file order."""
    options = options or ParseOptions()
    columns: list[str] | None = None
    row_number = 0

    async with aclosing(_raw_records(chunks, options)) as raws:
        async for raw in raws:
            if raw is not None and _is_blank(raw):
                continue

            if columns is None:
                header = None if raw is None else _decode_fields(raw, options)
                if header is None:
                    log.warning("csv_header_unreadable", raw=None if raw is None else raw[:200])
                    return
                columns = header
                continue

            row_number += 1
            if options.range_end is not None and row_number >= options.range_end:
                return
            if row_number < options.range_start:
                continue

            if raw is None:
                log.warning(
                    "csv_row_skipped",
                    row=row_number,
                    reason="record_too_long",
                    max_record_chars=options.max_record_chars,
                )
                continue

            fields = _decode_fields(raw, options)
            if fields is None or len(fields) != len(columns):
                log.warning(
                    "csv_row_skipped",
                    row=row_number,
                    expected_columns=len(columns),
                    found_columns=None if fields is None else len(fields),
                )
                continue

            record: Record = dict(zip(columns, fields, strict=True))
            if options.record_filter is not None and not options.record_filter(record):
                continue
            yield record
