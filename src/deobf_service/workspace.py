import logging
import re
import shutil
import time
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)

_UNSAFE_RE = re.compile(r"[^a-zA-Z0-9._-]")


def sanitize_filename(filename: str) -> str:
    base = filename.replace("\\", "/").rsplit("/", 1)[-1]
    safe = _UNSAFE_RE.sub("_", base)
    if not safe.strip("."):
        return "upload"
    return safe


@dataclass
class Workspace:
    """Scratch directory owned by exactly one request."""

    root: Path
    request_id: str
    safe_name: str
    output_suffix: str = ".lua"

    @classmethod
    def create(cls, root: str | Path, request_id: str, filename: str, output_suffix: str = ".lua") -> "Workspace":
        ws = cls(Path(root), request_id, sanitize_filename(filename), output_suffix)
        ws.path.mkdir(parents=True, exist_ok=False)
        return ws

    @property
    def path(self) -> Path:
        return self.root / self.request_id

    @property
    def input_path(self) -> Path:
        return self.path / f"input_{self.safe_name}"

    @property
    def output_path(self) -> Path:
        return self.path / f"output{self.output_suffix}"

    def cleanup(self) -> None:
        if not self.path.exists():
            return
        try:
            shutil.rmtree(self.path)
        except OSError:
            logger.warning("[%s] Failed to clean up work dir %s", self.request_id, self.path, exc_info=True)


def sweep_stale(root: str | Path, max_age_sec: float, now: float | None = None) -> int:
    root = Path(root)
    if not root.is_dir():
        return 0
    now = time.time() if now is None else now
    removed = 0
    for entry in root.iterdir():
        try:
            if now - entry.stat().st_mtime <= max_age_sec:
                continue
            if entry.is_dir():
                shutil.rmtree(entry)
            else:
                entry.unlink()
            removed += 1
        except OSError:
            logger.warning("Failed to remove stale entry %s", entry, exc_info=True)
    return removed
