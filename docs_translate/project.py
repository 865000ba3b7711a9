"""Source/target tree helpers: languages, markdown files, assets, role prompt."""

import os
import shutil
import tempfile
from importlib import resources
from pathlib import Path

from loguru import logger

from docs_translate.config import Settings

MARKDOWN_SUFFIX = ".md"
LANGUAGE_TOKEN = "$LANGUAGE"
# languages that are never translation targets
EXCLUDED_LANGUAGES = {"english"}


def resolve_languages(settings: Settings) -> list[str]:
    """Configured languages, or the subdirectories of the target directory."""
    if settings.languages:
        return list(settings.languages)
    target_dir = settings.target_dir()
    if not target_dir.is_dir():
        return []
    source_dir = settings.source_dir().resolve()
    languages = []
    for path in sorted(target_dir.iterdir()):
        if not path.is_dir() or path.resolve() == source_dir:
            continue
        if path.name in EXCLUDED_LANGUAGES or path.name.startswith("."):
            continue
        languages.append(path.name)
    return languages


def find_markdown_files(source_dir: Path) -> list[str]:
    """Relative POSIX paths of every ``*.md`` below ``source_dir``, sorted."""
    return sorted(
        path.relative_to(source_dir).as_posix()
        for path in source_dir.rglob(f"*{MARKDOWN_SUFFIX}")
        if path.is_file()
    )


def resolve_file_path(settings: Settings, file_path: str) -> Path | None:
    """Find a user-supplied path: absolute, project-relative or source-relative."""
    candidate = Path(file_path)
    if candidate.is_absolute():
        return candidate.resolve() if candidate.is_file() else None
    for base in (settings.project_dir, settings.source_dir()):
        path = base / candidate
        if path.is_file():
            return path.resolve()
    return None


def relative_source_path(settings: Settings, absolute_path: Path) -> str | None:
    try:
        return absolute_path.resolve().relative_to(settings.source_dir().resolve()).as_posix()
    except ValueError:
        return None


def read_document(path: Path) -> str:
    """Read UTF-8 text keeping its line endings as they are on disk."""
    return path.read_bytes().decode("utf-8")


def write_document(path: Path, content: str) -> None:
    """Write through a temp file in the same directory, then rename over ``path``."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, temp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "wb") as handle:
            handle.write(content.encode("utf-8"))
        os.chmod(temp_name, path.stat().st_mode & 0o777 if path.exists() else 0o644)
        os.replace(temp_name, path)
    except BaseException:
        try:
            os.unlink(temp_name)
        except FileNotFoundError:
            pass
        raise


def load_role_template(settings: Settings) -> str:
    """The project's role template, or the packaged default."""
    path = settings.project_dir / settings.role_template
    if path.is_file():
        return path.read_text(encoding="utf-8")
    return resources.files("docs_translate").joinpath("templates/translator.role.template.tpl").read_text(
        encoding="utf-8"
    )


def render_role_prompt(template: str, language: str) -> str:
    return template.replace(LANGUAGE_TOKEN, language)


def cleanup_deleted_files(settings: Settings, languages: list[str]) -> list[Path]:
    """Delete translated markdown whose source file no longer exists."""
    removed = []
    source_dir = settings.source_dir()
    for language in languages:
        language_dir = settings.target_dir() / language
        if not language_dir.is_dir():
            continue
        for target in sorted(language_dir.rglob(f"*{MARKDOWN_SUFFIX}")):
            if not target.is_file():
                continue
            relative = target.relative_to(language_dir)
            if not (source_dir / relative).is_file():
                target.unlink()
                removed.append(target)
                logger.info(f"Removed translation of deleted source: {language}/{relative.as_posix()}")
    return removed


def copy_non_markdown_assets(settings: Settings, languages: list[str]) -> list[Path]:
    """Copy images and other non-markdown files into each language tree once."""
    copied = []
    source_dir = settings.source_dir()
    if not source_dir.is_dir():
        return copied
    for source in sorted(source_dir.rglob("*")):
        if not source.is_file() or source.suffix == MARKDOWN_SUFFIX:
            continue
        relative = source.relative_to(source_dir)
        for language in languages:
            target = settings.target_dir() / language / relative
            if target.is_file():
                continue
            target.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(source, target)
            copied.append(target)
    return copied
