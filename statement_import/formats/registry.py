"""
Bank Format Registry

A statement layout is a strategy record: an id, a predicate over the
header row, and a row mapper. The registry is an ordered list of them.

DESIGN DECISION: Ordered predicate dispatch, not inheritance. Headers can
match more than one layout, so the ORDER is part of the behaviour:
most specific formats first, the catch-all last. The registry refuses to
build if the catch-all is missing or not last.
"""

from dataclasses import dataclass
from typing import Callable, Iterable, Sequence

from statement_import.models.statement import RawImportRow


@dataclass(frozen=True)
class BankFormat:
    """One known statement layout."""

    id: str
    detect: Callable[[Sequence[str]], bool]
    map_row: Callable[[dict[str, str]], RawImportRow]
    catch_all: bool = False

    def matches(self, headers: Sequence[str]) -> bool:
        return bool(self.detect(headers))


class FormatRegistry:
    """
    Ordered collection of bank formats with a total fallback.

    detect() never fails: the catch-all predicate always matches.
    """

    def __init__(self, formats: Iterable[BankFormat]):
        self._formats = tuple(formats)

        if not self._formats or not self._formats[-1].catch_all:
            raise ValueError("The catch-all format must be registered last")
        if any(fmt.catch_all for fmt in self._formats[:-1]):
            raise ValueError("Only the last format may be a catch-all")

        ids = [fmt.id for fmt in self._formats]
        if len(ids) != len(set(ids)):
            raise ValueError(f"Duplicate bank format ids: {ids}")

    @property
    def formats(self) -> tuple[BankFormat, ...]:
        return self._formats

    @property
    def fallback(self) -> BankFormat:
        return self._formats[-1]

    def detect(self, headers: Sequence[str]) -> BankFormat:
        """Return the first format whose predicate accepts the header row."""
        for fmt in self._formats:
            if fmt.matches(headers):
                return fmt
        return self.fallback

    def get(self, format_id: str) -> BankFormat:
        for fmt in self._formats:
            if fmt.id == format_id:
                return fmt
        raise KeyError(format_id)


def normalize_headers(headers: Sequence[str]) -> list[str]:
    """Trim and lower-case headers for comparison."""
    return [str(h).strip().lower() for h in headers if h is not None]
