# ABOUTME: Parsers that turn calibredb stdout lines into records.
# ABOUTME: Buffered JSON for `list --for-machine`, quote-aware multi-line CSV for `list_categories`.

import json
import logging
from typing import Any, Protocol, TypeVar

logger = logging.getLogger(__name__)

T_co = TypeVar("T_co", covariant=True)

# Some calibre builds print a desktop-integration banner into stdout.
_INTEGRATION_STATUS = "Integration status"
_INTEGRATION_NOISE = (f"{_INTEGRATION_STATUS}: True", f"{_INTEGRATION_STATUS}: False")

_QUOTE = '"'


class CalibreOutputError(Exception):
    """Raised when calibredb output cannot be parsed."""


def strip_noise(line: str) -> str:
    """Remove calibre's integration status banner from an output line."""
    if _INTEGRATION_STATUS in line:
        for noise in _INTEGRATION_NOISE:
            line = line.replace(noise, "")
    return line


class LineParser(Protocol[T_co]):
    """Incremental parser fed one physical output line at a time."""

    def feed(self, line: str) -> list[T_co]: ...

    def finish(self) -> list[T_co]: ...


class JsonDocumentParser:
    """Buffers every line and parses the whole payload as one JSON document.

    Lines are concatenated with no separator. An array document yields its
    elements as records; any other document is a single record. An empty
    payload means "no document" and yields nothing.
    """

    def __init__(self) -> None:
        self._parts: list[str] = []

    def feed(self, line: str) -> list[Any]:
        self._parts.append(strip_noise(line).strip())
        return []

    def finish(self) -> list[Any]:
        document = self.document()
        if document is None:
            return []
        if isinstance(document, list):
            return document
        return [document]

    def document(self) -> Any | None:
        """Parse the buffered payload.

        Raises:
            CalibreOutputError: If the payload is not valid JSON.
        """
        payload = "".join(self._parts)
        if not payload:
            return None
        try:
            return json.loads(payload)
        except json.JSONDecodeError as exc:
            raise CalibreOutputError(f"Malformed calibredb JSON output: {exc}") from exc


class CsvRecordParser:
    """Reassembles delimited records that may span several physical lines.

    A field is only split on the delimiter while an even number of quote
    characters has been seen in it. When a line ends with the quote count
    odd, the next line continues the same field, joined by a line break. The
    first physical line is the header and is discarded.
    """

    def __init__(self, delimiter: str = ",", *, has_header: bool = True) -> None:
        self._delimiter = delimiter
        self._skip_header = has_header
        self._fields: list[str] = []
        self._current: list[str] = []
        self._in_quotes = False
        self._pending = False

    @property
    def pending(self) -> bool:
        """Whether a record is waiting for its closing quote."""
        return self._pending

    def feed(self, line: str) -> list[tuple[str | None, ...]]:
        line = strip_noise(line)
        if self._skip_header:
            self._skip_header = False
            return []

        if self._pending:
            self._current.append("\n")
        elif not line.strip():
            return []

        for char in line:
            if char == _QUOTE:
                self._in_quotes = not self._in_quotes
                self._current.append(char)
            elif char == self._delimiter and not self._in_quotes:
                self._end_field()
            else:
                self._current.append(char)

        if self._in_quotes:
            self._pending = True
            return []

        self._end_field()
        record = tuple(_clean_field(raw) for raw in self._fields)
        self._fields = []
        self._pending = False
        return [record]

    def finish(self) -> list[tuple[str | None, ...]]:
        if self._pending:
            logger.warning(
                "Dropping unterminated record: %r", [*self._fields, "".join(self._current)]
            )
        self._fields = []
        self._current = []
        self._in_quotes = False
        self._pending = False
        return []

    def _end_field(self) -> None:
        self._fields.append("".join(self._current))
        self._current = []


def _clean_field(raw: str) -> str | None:
    """Strip one surrounding quote pair and collapse doubled quotes.

    An empty unquoted field is None; an empty quoted field is ``""``.
    """
    if not raw:
        return None
    if len(raw) >= 2 and raw[0] == _QUOTE and raw[-1] == _QUOTE:
        return raw[1:-1].replace(_QUOTE * 2, _QUOTE)
    return raw
