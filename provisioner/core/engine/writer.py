"""
ArtifactWriter — the only code path that writes host files.

Writes are atomic (temp file, then rename) and serialized by a single
lock. Before the first change to a path in a run, its previous content
is kept so a rollback can put it back exactly.
"""

from __future__ import annotations

import logging
import os
import tempfile
import threading
from dataclasses import dataclass
from pathlib import Path

from provisioner.core.models.artifact import ConfigArtifact

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class _Backup:
    existed: bool
    content: bytes | None = None
    link_target: str | None = None
    mode: int | None = None


class ArtifactWriter:
    """Single-writer access to host files.

    Args:
        root: Filesystem root prefix. ``None`` means the real root.
    """

    def __init__(self, root: Path | None = None):
        self.root = root
        self._lock = threading.Lock()
        self._backups: dict[str, _Backup] = {}
        self._written: list[str] = []

    def host_path(self, path: str) -> Path:
        if self.root is None:
            return Path(path)
        return self.root / path.lstrip("/")

    @property
    def written(self) -> list[str]:
        """Paths changed in this run, in order."""
        return list(self._written)

    # ── Mutations ───────────────────────────────────────────────

    def write(self, path: str, content: ConfigArtifact | str, mode: int = 0o644) -> bool:
        """Write ``content`` to ``path``. Returns False when already identical."""
        text = content.rendered_text if isinstance(content, ConfigArtifact) else content
        data = text.encode("utf-8")
        target = self.host_path(path)

        with self._lock:
            if target.is_file() and not target.is_symlink() and target.read_bytes() == data:
                logger.debug("%s unchanged", path)
                return False
            self._remember(path, target)
            target.parent.mkdir(parents=True, exist_ok=True)
            _atomic_write(target, data, mode)
            self._written.append(path)
        logger.info("Wrote %s (%d bytes)", path, len(data))
        return True

    def symlink(self, link: str, target: str) -> bool:
        """Point ``link`` at ``target``. Returns False when it already does."""
        link_path = self.host_path(link)
        target_path = str(self.host_path(target))

        with self._lock:
            if link_path.is_symlink() and os.readlink(link_path) == target_path:
                return False
            self._remember(link, link_path)
            link_path.parent.mkdir(parents=True, exist_ok=True)
            if link_path.is_symlink() or link_path.exists():
                link_path.unlink()
            link_path.symlink_to(target_path)
            self._written.append(link)
        logger.info("Linked %s → %s", link, target)
        return True

    def remove(self, path: str) -> bool:
        """Delete ``path`` (file or symlink). Returns False when absent."""
        target = self.host_path(path)
        with self._lock:
            if not (target.is_symlink() or target.exists()):
                return False
            self._remember(path, target)
            target.unlink()
            self._written.append(path)
        logger.info("Removed %s", path)
        return True

    def restore(self, path: str) -> bool:
        """Undo every change made to ``path`` in this run.

        Returns False when the path was never touched.
        """
        target = self.host_path(path)
        with self._lock:
            backup = self._backups.pop(path, None)
            if backup is None:
                return False
            if target.is_symlink() or target.exists():
                target.unlink()
            if backup.link_target is not None:
                target.symlink_to(backup.link_target)
            elif backup.existed and backup.content is not None:
                _atomic_write(target, backup.content, backup.mode or 0o644)
        logger.info("Restored %s", path)
        return True

    def touched(self, path: str) -> bool:
        return path in self._backups

    # ── Internals ───────────────────────────────────────────────

    def _remember(self, path: str, target: Path) -> None:
        if path in self._backups:
            return
        if target.is_symlink():
            self._backups[path] = _Backup(existed=True, link_target=os.readlink(target))
        elif target.is_file():
            self._backups[path] = _Backup(
                existed=True,
                content=target.read_bytes(),
                mode=target.stat().st_mode & 0o7777,
            )
        else:
            self._backups[path] = _Backup(existed=False)


def _atomic_write(target: Path, data: bytes, mode: int) -> None:
    fd, tmp_name = tempfile.mkstemp(dir=target.parent, prefix=f".{target.name}.", suffix=".tmp")
    tmp = Path(tmp_name)
    try:
        with open(fd, "wb") as f:
            f.write(data)
        tmp.chmod(mode)
        tmp.replace(target)
    except OSError:
        tmp.unlink(missing_ok=True)
        raise
