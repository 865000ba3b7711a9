"""Per-document translation cache.

One JSON file per source document at ``<cache_dir>/<relative path>.json``,
mapping ``sha256(chunk)`` to a :class:`CacheEntry`. Writers serialize through
a lock directory next to the file; a lock that cannot be taken in time makes
the write a no-op rather than blocking the pipeline.
"""

import json
import os
import tempfile
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterator

from loguru import logger

META_KEY = "__meta"


@dataclass
class CacheEntry:
    original: str
    translations: dict[str, str] = field(default_factory=dict)
    is_code_or_comment: bool = False
    model: str | None = None
    # values-only entries come from the front-matter pipeline and are
    # accepted on line count alone
    values_only: bool = False
    updated_at: int | None = None

    @classmethod
    def from_dict(cls, data: object) -> "CacheEntry | None":
        if not isinstance(data, dict) or not isinstance(data.get("original"), str):
            return None
        translations = data.get("translations")
        if not isinstance(translations, dict):
            translations = {}
        return cls(
            original=data["original"],
            translations={k: v for k, v in translations.items() if isinstance(v, str)},
            is_code_or_comment=bool(data.get("is_code_or_comment", False)),
            model=data.get("model") if isinstance(data.get("model"), str) else None,
            values_only=bool(data.get("values_only", False)),
            updated_at=data.get("updated_at") if isinstance(data.get("updated_at"), int) else None,
        )

    def to_dict(self) -> dict:
        data = {
            "original": self.original,
            "translations": self.translations,
            "is_code_or_comment": self.is_code_or_comment,
        }
        if self.model is not None:
            data["model"] = self.model
        if self.values_only:
            data["values_only"] = True
        if self.updated_at is not None:
            data["updated_at"] = self.updated_at
        return data


def _pid_alive(pid: int) -> bool:
    if os.name == "nt":
        return True
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except OSError:
        # EPERM: the process exists but belongs to someone else
        return True
    return True


class DirectoryLock:
    """Advisory lock: an atomically created directory holding the owner's pid."""

    def __init__(
        self,
        path: Path,
        timeout: float = 10.0,
        stale_after: float = 60.0,
        poll_interval: float = 0.1,
    ):
        self.path = path
        self.timeout = timeout
        self.stale_after = stale_after
        self.poll_interval = poll_interval

    def acquire(self) -> bool:
        start = time.monotonic()
        while True:
            try:
                os.mkdir(self.path)
            except FileExistsError:
                if self._is_stale():
                    logger.warning(f"Removing stale cache lock: {self.path}")
                    self._remove()
                    continue
            else:
                (self.path / "pid").write_text(str(os.getpid()), encoding="utf-8")
                return True
            if time.monotonic() - start >= self.timeout:
                return False
            time.sleep(self.poll_interval)

    def release(self) -> None:
        self._remove()

    def _is_stale(self) -> bool:
        try:
            pid = int((self.path / "pid").read_text(encoding="utf-8").strip())
        except (OSError, ValueError):
            pid = 0
        if pid > 0 and not _pid_alive(pid):
            return True
        try:
            age = time.time() - self.path.stat().st_mtime
        except OSError:
            return False
        return age > self.stale_after

    def _remove(self) -> None:
        try:
            (self.path / "pid").unlink()
        except FileNotFoundError:
            pass
        try:
            self.path.rmdir()
        except FileNotFoundError:
            pass


class TranslationCache:
    def __init__(self, cache_dir: Path, lock_timeout: float = 10.0, stale_after: float = 60.0):
        self.cache_dir = Path(cache_dir)
        self.lock_timeout = lock_timeout
        self.stale_after = stale_after

    def cache_file_path(self, relative_path: str) -> Path:
        return self.cache_dir / f"{relative_path}.json"

    # ------------------------------------------------------------------
    # Reads (lock-free: writes are atomic renames)
    # ------------------------------------------------------------------

    def get_cached_entry(self, chunk_hash: str, relative_path: str) -> CacheEntry | None:
        data = self._read(self.cache_file_path(relative_path))
        return CacheEntry.from_dict(data.get(chunk_hash))

    def get_cached_translation(self, chunk_hash: str, language: str, relative_path: str) -> str | None:
        entry = self.get_cached_entry(chunk_hash, relative_path)
        if entry is None:
            return None
        return entry.translations.get(language)

    def has_cache_entries(self, relative_path: str) -> bool:
        data = self._read(self.cache_file_path(relative_path))
        return any(key != META_KEY for key in data)

    def find_entry(self, cache_id: str) -> tuple[str, CacheEntry] | None:
        """Locate an entry by id across every cache file: (relative path, entry)."""
        if not self.cache_dir.is_dir():
            return None
        for cache_file in sorted(self.cache_dir.rglob("*.json")):
            entry = CacheEntry.from_dict(self._read(cache_file).get(cache_id))
            if entry is None:
                continue
            relative = cache_file.relative_to(self.cache_dir).as_posix()
            return relative[: -len(".json")], entry
        return None

    # ------------------------------------------------------------------
    # Writes (read-modify-write under the lock directory)
    # ------------------------------------------------------------------

    def save_to_cache(
        self,
        chunk_hash: str,
        original: str,
        language: str,
        translation: str,
        is_code_or_comment: bool,
        relative_path: str,
        model: str | None = None,
        values_only: bool = False,
    ) -> bool:
        cache_file = self.cache_file_path(relative_path)
        with self._locked(cache_file) as acquired:
            if not acquired:
                return False
            data = self._read(cache_file)
            entry = CacheEntry.from_dict(data.get(chunk_hash)) or CacheEntry(
                original=original,
                is_code_or_comment=is_code_or_comment,
            )
            entry.translations[language] = original if is_code_or_comment else translation
            if model is not None:
                entry.model = model
            if values_only:
                entry.values_only = True
            entry.updated_at = int(time.time())
            data[chunk_hash] = entry.to_dict()
            self._write_atomic(cache_file, data)
        return True

    def clear_file_cache(self, relative_path: str) -> None:
        cache_file = self.cache_file_path(relative_path)
        with self._locked(cache_file) as acquired:
            if acquired and cache_file.is_file():
                cache_file.unlink()

    def clear_cache_entry(self, chunk_hash: str, language: str, relative_path: str) -> None:
        """Drop one language from an entry, keeping the others."""
        cache_file = self.cache_file_path(relative_path)
        with self._locked(cache_file) as acquired:
            if not acquired:
                return
            data = self._read(cache_file)
            entry = data.get(chunk_hash)
            if isinstance(entry, dict) and language in entry.get("translations", {}):
                del entry["translations"][language]
                self._write_atomic(cache_file, data)

    def remove_cache_entry(self, chunk_hash: str, relative_path: str) -> None:
        cache_file = self.cache_file_path(relative_path)
        with self._locked(cache_file) as acquired:
            if not acquired:
                return
            data = self._read(cache_file)
            if chunk_hash in data:
                del data[chunk_hash]
                self._write_atomic(cache_file, data)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @contextmanager
    def _locked(self, cache_file: Path) -> Iterator[bool]:
        cache_file.parent.mkdir(parents=True, exist_ok=True)
        lock = DirectoryLock(
            cache_file.with_name(cache_file.name + ".lock"),
            timeout=self.lock_timeout,
            stale_after=self.stale_after,
        )
        if not lock.acquire():
            logger.warning(f"Cache lock timeout, skipping cache write: {cache_file}")
            yield False
            return
        try:
            yield True
        finally:
            lock.release()

    @staticmethod
    def _read(path: Path) -> dict:
        if not path.is_file():
            return {}
        try:
            raw = path.read_text(encoding="utf-8")
        except OSError as e:
            logger.warning(f"Failed to read cache file {path}: {e}")
            return {}
        if raw.strip() == "":
            return {}
        try:
            decoded = json.loads(raw)
        except json.JSONDecodeError as e:
            logger.warning(f"Ignoring corrupt cache file {path}: {e}")
            return {}
        return decoded if isinstance(decoded, dict) else {}

    @staticmethod
    def _write_atomic(path: Path, data: dict) -> None:
        fd, temp_name = tempfile.mkstemp(prefix="cache.", suffix=".json", dir=path.parent)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(data, handle, ensure_ascii=False, indent=4)
            os.chmod(temp_name, path.stat().st_mode & 0o777 if path.exists() else 0o644)
            os.replace(temp_name, path)
        except BaseException:
            try:
                os.unlink(temp_name)
            except FileNotFoundError:
                pass
            raise
