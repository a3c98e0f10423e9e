from __future__ import annotations

import json
import logging
import os
import re
import time
import uuid
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple, TypeVar

try:
    import fcntl
except ImportError:  # pragma: no cover - non-POSIX hosts run without advisory locks
    fcntl = None  # type: ignore[assignment]


JsonDict = Dict[str, Any]
T = TypeVar("T")

logger = logging.getLogger(__name__)

_UNSAFE_RE = re.compile(r"[^A-Za-z0-9_.-]")
_MAX_KEY_LEN = 200
_DATA_SUFFIX = ".json"
_TMP_SUFFIX = ".tmp"
_LOCK_SUFFIX = ".lock"


class StateDirectoryError(RuntimeError):
    """The state directory could not be created or is not usable."""


def sanitize_key(key: str) -> str:
    """Map an externally supplied identifier onto a safe file name stem."""
    cleaned = _UNSAFE_RE.sub("_", key or "").lstrip(".")
    return cleaned[:_MAX_KEY_LEN] or "_"


def _touch(fd: int) -> None:
    """Refresh a held lock file's mtime so stale cleanup leaves it alone."""
    try:
        os.utime(fd)
    except OSError as err:
        logger.debug("lock touch failed: %r", err)

class StateStore:
    """
    Key-addressed JSON documents, one file per key.

    Writes go to a per-writer temp file and are renamed into place, so a
    reader never observes a torn document. Missing and unparsable files
    both load as None.
    """

    def __init__(self, base_dir: Path) -> None:
        self._base_dir = Path(base_dir)
        self._ensure_dir()

    @property
    def base_dir(self) -> Path:
        return self._base_dir

    def _ensure_dir(self) -> None:
        try:
            self._base_dir.mkdir(mode=0o700, parents=True, exist_ok=True)
            os.chmod(self._base_dir, 0o700)
        except OSError as err:
            raise StateDirectoryError(f"cannot use state directory {self._base_dir}: {err}") from err
        if not self._base_dir.is_dir():
            raise StateDirectoryError(f"state path is not a directory: {self._base_dir}")

    def _path(self, key: str) -> Path:
        return self._base_dir / f"{sanitize_key(key)}{_DATA_SUFFIX}"

    def load(self, key: str) -> Optional[JsonDict]:
        path = self._path(key)
        try:
            raw = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as err:
            logger.debug("state read failed for %s: %r", path.name, err)
            return None
        try:
            data = json.loads(raw)
        except ValueError:
            logger.debug("discarding corrupt state file %s", path.name)
            return None
        return data if isinstance(data, dict) else None

    def save(self, key: str, value: JsonDict) -> bool:
        path = self._path(key)
        tmp = path.with_name(f".{path.name}.{os.getpid()}.{uuid.uuid4().hex[:8]}{_TMP_SUFFIX}")
        try:
            body = json.dumps(value, ensure_ascii=False, separators=(",", ":"), default=str)
            fd = os.open(tmp, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(body)
            os.replace(tmp, path)
            return True
        except (OSError, TypeError, ValueError) as err:
            logger.warning("state write failed for %s: %r", path.name, err)
            try:
                tmp.unlink()
            except OSError:
                pass
            return False

    def delete(self, key: str) -> bool:
        try:
            self._path(key).unlink()
            return True
        except FileNotFoundError:
            return False
        except OSError as err:
            logger.debug("state delete failed for %s: %r", key, err)
            return False

    def list_keys(self, prefix: str = "") -> List[str]:
        safe_prefix = sanitize_key(prefix) if prefix else ""
        keys: List[str] = []
        try:
            entries = list(self._base_dir.iterdir())
        except OSError as err:
            logger.debug("state listing failed: %r", err)
            return keys
        for entry in entries:
            name = entry.name
            if not name.endswith(_DATA_SUFFIX) or name.startswith("."):
                continue
            stem = name[: -len(_DATA_SUFFIX)]
            if stem.startswith(safe_prefix):
                keys.append(stem)
        return sorted(keys)

    @contextmanager
    def locked(self, key: str) -> Iterator[None]:
        """
        Exclusive advisory lock for a read-modify-write on one key.

        Only processes that also take the lock are excluded; plain loads
        still see the last complete save.
        """
        if fcntl is None:
            yield
            return
        lock_path = self._base_dir / f".{sanitize_key(key)}{_LOCK_SUFFIX}"
        try:
            fd = os.open(lock_path, os.O_RDWR | os.O_CREAT, 0o600)
        except OSError as err:
            logger.debug("lock unavailable for %s: %r", key, err)
            yield
            return
        try:
            fcntl.flock(fd, fcntl.LOCK_EX)
            _touch(fd)
            yield
        finally:
            try:
                fcntl.flock(fd, fcntl.LOCK_UN)
            finally:
                os.close(fd)

    def update(
        self, key: str, fn: Callable[[Optional[JsonDict]], Tuple[Optional[JsonDict], T]]
    ) -> Optional[T]:
        """
        Locked read-modify-write. `fn` receives the current document (or
        None) and returns (new_document, result); a None document leaves
        the file untouched. Returns None instead of the result when the
        new document could not be written.
        """
        with self.locked(key):
            current = self.load(key)
            new_doc, result = fn(current)
            if new_doc is not None and not self.save(key, new_doc):
                return None
            return result

    def _lock_owner_exists(self, lock_name: str) -> bool:
        stem = lock_name[1 : -len(_LOCK_SUFFIX)]
        return (self._base_dir / f"{stem}{_DATA_SUFFIX}").exists()

    def cleanup_stale(self, max_age_s: float, *, prefix: str = "", now: Optional[float] = None) -> int:
        """Delete documents (and leftover temp/lock files) not modified within max_age_s."""
        cutoff = (time.time() if now is None else now) - max_age_s
        safe_prefix = sanitize_key(prefix) if prefix else ""
        removed = 0
        try:
            entries = list(self._base_dir.iterdir())
        except OSError:
            return 0
        for entry in entries:
            name = entry.name
            is_aux = name.startswith(".") and (name.endswith(_TMP_SUFFIX) or name.endswith(_LOCK_SUFFIX))
            if name.endswith(_LOCK_SUFFIX) and self._lock_owner_exists(name):
                continue
            is_doc = name.endswith(_DATA_SUFFIX) and not name.startswith(".") and name.startswith(safe_prefix)
            if not (is_aux or is_doc):
                continue
            try:
                if entry.stat().st_mtime >= cutoff:
                    continue
                entry.unlink()
                removed += 1
            except OSError:
                continue
        if removed:
            logger.debug("removed %d stale state files", removed)
        return removed
