import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Optional, Tuple

from .errors import JobInitError, TailReadError
from .events import MatchEvent
from .matcher import Matcher
from .util import discover_files


logger = logging.getLogger("dende.tailer")


@dataclass
class TailState:
    """Per-job bookkeeping: path -> byte offset and path -> lines seen."""

    offsets: Dict[str, int] = field(default_factory=dict)
    line_nums: Dict[str, int] = field(default_factory=dict)

    def get(self, path: str) -> Tuple[int, int]:
        return self.offsets.get(path, 0), self.line_nums.get(path, 0)

    def set(self, path: str, offset: int, line_no: int) -> None:
        self.offsets[path] = offset
        self.line_nums[path] = line_no

    def forget(self, path: str) -> None:
        self.offsets.pop(path, None)
        self.line_nums.pop(path, None)

    def __contains__(self, path: str) -> bool:
        return path in self.offsets


class FileTailer:
    """Reads appended lines of watched files and hands matches to a notifier.

    The notifier only needs a non-blocking ``notify(event)`` method.
    """

    def __init__(self, matcher: Matcher, notifier, state: Optional[TailState] = None):
        self.matcher = matcher
        self.notifier = notifier
        self.state = state if state is not None else TailState()

    def initialize(self, target: Path, recursive: bool = False, read_existing: bool = True) -> int:
        """Discover files under target and either scan them or start at EOF.

        Returns the number of files now tracked.
        """
        target = Path(target)
        if not target.exists():
            raise JobInitError(f"non-existent file or directory: {target}")
        count = 0
        try:
            for p in discover_files(target, recursive):
                key = str(p)
                if read_existing:
                    try:
                        self.read_from(key, from_scratch=True)
                    except TailReadError as e:
                        logger.error("skipping initial scan of %s: %s", key, e)
                        continue
                else:
                    try:
                        size = os.path.getsize(key)
                    except OSError:
                        size = 0
                    self.state.set(key, size, 0)
                count += 1
        except OSError as e:
            raise JobInitError(f"initial scan of {target} failed: {e}") from e
        logger.debug("tracking %d file(s) under %s (read_existing=%s)", count, target, read_existing)
        return count

    def read_from(self, path: str, from_scratch: bool = False) -> int:
        """Read complete lines after the stored offset; return matches emitted.

        A length smaller than the stored offset means the file was truncated or
        rotated in place: reading restarts at offset 0 with a fresh line count.
        A trailing line without its newline is left for a later pass.
        """
        path = str(path)
        try:
            f = open(path, "rb")
        except FileNotFoundError:
            logger.debug("file vanished before read (rotation?): %s", path)
            return 0
        except OSError as e:
            raise TailReadError(f"open error {path}: {e}") from e

        with f:
            offset, line_no = self.state.get(path)
            try:
                size = os.fstat(f.fileno()).st_size
                if from_scratch:
                    offset = 0
                elif size < offset:
                    logger.info("truncation detected on %s (%d < %d), reading from start", path, size, offset)
                    offset = 0
                if offset == 0:
                    line_no = 0
                f.seek(offset)
            except OSError as e:
                raise TailReadError(f"seek error {path}: {e}") from e

            cursor = offset
            matches = 0
            try:
                for raw in f:
                    if not raw.endswith(b"\n"):
                        break
                    cursor += len(raw)
                    line_no += 1
                    line = raw.rstrip(b"\r\n").decode("utf-8", errors="replace")
                    if self.matcher.matches(line):
                        logger.info("match in %s:%d for %s", path, line_no, self.matcher)
                        self.notifier.notify(MatchEvent(path=path, line_no=line_no, line=line))
                        matches += 1
            except OSError as e:
                logger.error("%s", TailReadError(f"read error {path} after line {line_no}: {e}"))
            self.state.set(path, cursor, line_no)
        return matches

    def forget(self, path: str) -> None:
        self.state.forget(str(path))
