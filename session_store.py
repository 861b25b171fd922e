from __future__ import annotations

import logging
import shutil
from dataclasses import dataclass, field
from pathlib import Path


LOG = logging.getLogger("taskdash_whatsapp")


@dataclass(frozen=True)
class ClearResult:
    removed: tuple[Path, ...] = ()
    failures: tuple[str, ...] = field(default_factory=tuple)

    @property
    def ok(self) -> bool:
        return not self.failures


class SessionStore:
    def __init__(self, session_dir: Path, cache_dir: Path):
        self.session_dir = session_dir
        self.cache_dir = cache_dir

    def has_session(self) -> bool:
        try:
            return self.session_dir.is_dir() and any(self.session_dir.iterdir())
        except OSError:
            return False

    def describe(self) -> dict[str, bool]:
        return {
            "session_dir_exists": self.session_dir.exists(),
            "cache_dir_exists": self.cache_dir.exists(),
            "session_present": self.has_session(),
        }

    def clear(self) -> ClearResult:
        removed: list[Path] = []
        failures: list[str] = []
        for path in (self.session_dir, self.cache_dir):
            if not path.exists():
                continue
            LOG.info("Clearing WhatsApp session artifacts: %s", path)
            try:
                shutil.rmtree(path)
                removed.append(path)
                continue
            except OSError as exc:
                LOG.warning("Could not remove %s in one pass: %s", path, exc)
            leftovers = _remove_files_individually(path)
            if leftovers:
                failures.extend(leftovers)
            else:
                removed.append(path)

        result = ClearResult(removed=tuple(removed), failures=tuple(failures))
        if not result.ok:
            LOG.warning("Session clear left %d item(s) behind", len(result.failures))
        return result


def _remove_files_individually(root: Path) -> list[str]:
    failures: list[str] = []
    try:
        entries = sorted(root.rglob("*"), key=lambda p: len(p.parts), reverse=True)
    except OSError as exc:
        return [f"{root}: {exc}"]

    for entry in entries:
        try:
            if entry.is_dir() and not entry.is_symlink():
                entry.rmdir()
            else:
                entry.unlink()
        except OSError as exc:
            failures.append(f"{entry}: {exc}")
    try:
        root.rmdir()
    except OSError as exc:
        if not failures:
            failures.append(f"{root}: {exc}")
    return failures
