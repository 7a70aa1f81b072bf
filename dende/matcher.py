import re
from dataclasses import dataclass
from typing import Optional, Pattern

from .errors import ConfigError


@dataclass(frozen=True)
class Matcher:
    """Line matcher: literal substring or unanchored regex search."""

    literal: Optional[str] = None
    regex: Optional[Pattern[str]] = None

    @classmethod
    def compile(cls, search: Optional[str] = None, regex: Optional[str] = None) -> "Matcher":
        if search is not None and regex is not None:
            raise ConfigError("specify either 'search' or 'regex', not both")
        if search is not None:
            return cls(literal=search)
        if regex is not None:
            try:
                return cls(regex=re.compile(regex))
            except re.error as e:
                raise ConfigError(f"invalid regex {regex!r}: {e}") from e
        raise ConfigError("specify 'search' or 'regex'")

    @property
    def mode(self) -> str:
        return "literal" if self.regex is None else "regex"

    def matches(self, line: str) -> bool:
        if self.regex is not None:
            return self.regex.search(line) is not None
        return self.literal in line

    def __str__(self) -> str:
        if self.regex is not None:
            return f"regex({self.regex.pattern!r})"
        return f"literal({self.literal!r})"
