import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator, Optional


def timestamp() -> str:
    return datetime.now().strftime("%Y/%m/%d %H:%M:%S")


def iso_utc(epoch: Optional[int]) -> Optional[str]:
    if epoch is None:
        return None
    try:
        return datetime.fromtimestamp(int(epoch), tz=timezone.utc).isoformat()
    except (TypeError, ValueError, OverflowError, OSError):
        return None


def discover_files(target: Path, recursive: bool) -> Iterator[Path]:
    """Yield regular files under target (depth 1 unless recursive).

    A file target yields itself.
    """
    if target.is_file():
        yield target
        return
    if recursive:
        for root, _dirs, files in os.walk(target):
            for name in sorted(files):
                p = Path(root) / name
                if p.is_file():
                    yield p
        return
    for p in sorted(target.iterdir()):
        if p.is_file():
            yield p
