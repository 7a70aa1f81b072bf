import html
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from .util import timestamp

if TYPE_CHECKING:
    from .poller import Found


@dataclass
class MatchEvent:
    path: str
    line_no: int
    line: str
    ts: str = field(default_factory=timestamp)

    kind = "log-watcher"

    @property
    def source(self) -> str:
        return f"{self.path}:{self.line_no}"

    def text(self) -> str:
        return (
            f"!dende::{self.kind}::matched!\n\n"
            f"Date: {self.ts}\n"
            f"Filename and line: {self.source}\n"
            f"Content matched:\n\n{self.line.rstrip()}"
        )

    def html(self) -> str:
        return (
            f"<b>!dende::{self.kind}::matched!</b>\n\n"
            f"<i>Date:</i> <b>{self.ts}</b>\n"
            f"<i>Filename and line:</i> <b>{html.escape(self.source)}</b>\n"
            f"<i>Content matched:</i>\n\n{html.escape(self.line.rstrip())}"
        )


@dataclass
class ReputationEvent:
    hash: str
    result: "Found"
    ts: str = field(default_factory=timestamp)

    kind = "virustotal-watcher"

    @property
    def source(self) -> str:
        return self.hash

    def _rows(self):
        r = self.result
        return [
            ("Date", self.ts),
            ("Hash", self.hash),
            ("Filename", r.filename),
            ("Description", r.description),
            ("URL", r.url),
            ("First seen", r.first_seen),
            ("Community reputation", str(r.reputation)),
            ("Detection score", f"{r.ratio} ({r.malicious} engines flagged)"),
        ]

    def text(self) -> str:
        body = "\n".join(f"{k}: {v}" for k, v in self._rows())
        return f"!dende::{self.kind}::matched!\n\n{body}"

    def html(self) -> str:
        body = "\n".join(f"<i>{k}:</i> <b>{html.escape(str(v))}</b>" for k, v in self._rows())
        return f"<b>!dende::{self.kind}::matched!</b>\n\n{body}"
