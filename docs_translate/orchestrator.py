"""Translate a source tree into every target language, chunk by chunk.

For one (document, language) pair the flow is::

    cache lookup -> model ladder -> repairs -> validation -> cache store
    -> reassembly -> file repairs -> file validation -> write

A chunk that no model gets right fails the file for that language. A file
that fails validation is redone once with the cache bypassed; if it still
fails it is written anyway and reported as a warning.
"""

import hashlib
import itertools
import tempfile
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from loguru import logger

from docs_translate.cache import TranslationCache
from docs_translate.chunker import (
    chunk_index_for_line,
    extract_code_blocks,
    restore_code_blocks,
    split_into_chunks,
    split_values_text,
)
from docs_translate.client import ModelClient, TranslationBackend, safe_name
from docs_translate.config import Settings
from docs_translate.errors import ConfigurationError, ModelClientError
from docs_translate.frontmatter import (
    YamlValuePlan,
    apply_yaml_value_translations,
    build_yaml_value_plan,
    merge_translated_yaml_values,
    normalize_value_lines,
    restore_missing_value_lines,
)
from docs_translate.lines import (
    is_blank,
    is_comment_only,
    is_placeholder,
    line_count,
    link_destinations,
    split_lines,
)
from docs_translate.logs import format_step, log_step
from docs_translate.project import (
    cleanup_deleted_files,
    copy_non_markdown_assets,
    find_markdown_files,
    load_role_template,
    read_document,
    relative_source_path,
    render_role_prompt,
    resolve_file_path,
    resolve_languages,
    write_document,
)
from docs_translate.repairs import (
    ensure_utf8,
    is_valid_utf8,
    normalize_code_block_placeholders,
    normalize_links_with_source,
    normalize_markdown_link_urls,
    repair_chunk,
    restore_link_urls,
    sync_to_source_structure,
)
from docs_translate.validator import ValidationReason, ValidationResult, Validator

MARKDOWN_SUFFIX = ".md"


# ============================================================================
# Result types
# ============================================================================


@dataclass
class TranslationResult:
    """Result of a chunk translation."""
    text: str
    success: bool
    error: str | None = None
    model: str | None = None


@dataclass
class Document:
    """A source document split for translation."""
    relative_path: str
    source: str
    content_with_placeholders: str
    blocks: list[str]
    chunks: list[str]
    yaml_plan: YamlValuePlan | None = None

    @property
    def values_only(self) -> bool:
        return self.yaml_plan is not None


class CheckReason(str, Enum):
    OK = "ok"
    MISSING_TARGET = "missing-target"
    LINE_COUNT = "line-count"
    EMPTY_LINES = "empty-lines"
    VALIDATION = "validation"
    UNTRANSLATED = "untranslated"
    CACHE_MISS = "cache-miss"
    CACHE_MISMATCH = "cache-mismatch"


CHECK_REASON_TEXT = {
    CheckReason.MISSING_TARGET: "missing target file",
    CheckReason.LINE_COUNT: "line count mismatch",
    CheckReason.EMPTY_LINES: "empty-line positions mismatch",
    CheckReason.VALIDATION: "file validation failed (comments/lists/code fences/link urls)",
    CheckReason.UNTRANSLATED: "file validation failed (untranslated chunks)",
    CheckReason.CACHE_MISS: "cache miss (one or more chunks)",
    CheckReason.CACHE_MISMATCH: "cache mismatch (chunk structure)",
}


@dataclass
class UntranslatedReport:
    chunks: list[int] = field(default_factory=list)
    details: list[str] = field(default_factory=list)


@dataclass
class CheckStatus:
    needs_translation: bool
    reason: CheckReason
    validation: ValidationResult | None = None
    untranslated: UntranslatedReport = field(default_factory=UntranslatedReport)
    missing_hashes: list[str] = field(default_factory=list)
    mismatched_hashes: list[str] = field(default_factory=list)


# ============================================================================
# Log formatting
# ============================================================================


def chunk_hash(chunk: str) -> str:
    return hashlib.sha256(chunk.encode("utf-8")).hexdigest()


def shorten_for_log(text: str | None, limit: int = 120) -> str:
    if text is None:
        return '""'
    clean = text.replace("\r", " ").replace("\n", " ")
    if len(clean) > limit:
        clean = clean[: limit - 3] + "..."
    return f'"{clean}"'


def format_chunk_list(chunks: list[int], limit: int = 8) -> str:
    unique = sorted(set(chunks))
    shown = ",".join(str(n) for n in unique[:limit])
    return shown + (",..." if len(unique) > limit else "")


def format_validation_detail(validation: ValidationResult) -> str:
    """`` (rule=<reason> line=<n> src="..." tgt="...")`` or an empty string."""
    parts = []
    if validation.reason != ValidationReason.OK:
        parts.append(f"rule={validation.reason.value}")
    if validation.line is not None:
        parts.append(f"line={validation.line}")
    is_link = validation.reason == ValidationReason.LINK_URL
    if is_link and validation.source is not None and validation.target is not None:
        parts.append("src_urls=" + ", ".join(link_destinations(validation.source)))
        parts.append("tgt_urls=" + ", ".join(link_destinations(validation.target)))
    if validation.reason == ValidationReason.UNTRANSLATED:
        if validation.jaccard is not None:
            parts.append(f"jaccard={validation.jaccard:.3f}")
        if validation.lcs is not None:
            parts.append(f"lcs={validation.lcs:.3f}")
    if validation.source is not None or validation.target is not None:
        if is_link:
            parts.append(f"src={validation.source}")
            parts.append(f"tgt={validation.target}")
        else:
            parts.append(f"src={shorten_for_log(validation.source)}")
            parts.append(f"tgt={shorten_for_log(validation.target)}")
    return f" ({' '.join(parts)})" if parts else ""


def format_untranslated_detail(report: UntranslatedReport) -> str:
    if not report.chunks:
        return "chunks="
    listed = format_chunk_list(report.chunks)
    if not report.details:
        return f"chunks={listed}"
    return f"chunks={listed} ({' | '.join(report.details)})"


def describe_check_reason(status: CheckStatus) -> str:
    text = CHECK_REASON_TEXT.get(status.reason, status.reason.value)
    if status.reason in (CheckReason.VALIDATION, CheckReason.EMPTY_LINES) and status.validation is not None:
        text += format_validation_detail(status.validation)
    return text


def is_chunk_non_translatable(chunk: str) -> bool:
    """A lone placeholder, or nothing but comment-only and blank lines."""
    if is_placeholder(chunk.strip()):
        return True
    return all(is_blank(line) or is_comment_only(line) for line in split_lines(chunk))


def _elapsed_ms(started: float) -> int:
    return round((time.monotonic() - started) * 1000)


def _blank_positions(lines: list[str]) -> list[int]:
    return [i for i, line in enumerate(lines) if is_blank(line)]


# ============================================================================
# Translator
# ============================================================================


class Translator:
    """Drives translation of a whole project; every public method returns an exit code."""

    def __init__(
        self,
        settings: Settings,
        client: TranslationBackend | None = None,
        cache: TranslationCache | None = None,
        validator: Validator | None = None,
        dump_dir: Path | None = None,
    ):
        self.settings = settings
        self.cache = cache or TranslationCache(settings.cache_dir())
        self.validator = validator or Validator(
            jaccard_threshold=settings.untranslated_jaccard_threshold,
            lcs_threshold=settings.untranslated_lcs_threshold,
            min_tokens=settings.untranslated_min_tokens,
            mismatch_tolerance=settings.structure_mismatch_tolerance,
        )
        self.dump_dir = Path(dump_dir or tempfile.gettempdir())
        self._client = client
        self._client_lock = threading.Lock()
        self._role_template: str | None = None
        self._mismatch_counter = itertools.count(1)

    @property
    def client(self) -> TranslationBackend:
        with self._client_lock:
            if self._client is None:
                if not self.settings.api_key:
                    raise ConfigurationError("OPENROUTER_TRANSLATOR_API_KEY is required")
                self._client = ModelClient(
                    api_key=self.settings.api_key,
                    base_url=self.settings.base_url,
                    timeout=self.settings.openrouter_timeout,
                    max_retries=self.settings.openrouter_retries,
                    dump_response=self.settings.dump_response,
                    dump_dir=self.dump_dir,
                )
            return self._client

    def role_prompt(self, language: str) -> str:
        if self._role_template is None:
            self._role_template = load_role_template(self.settings)
        return render_role_prompt(self._role_template, language)

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    def translate_all(self, force_render: bool = False) -> int:
        source_dir = self._require_source_dir()
        languages = self._languages()
        cleanup_deleted_files(self.settings, languages)

        files = find_markdown_files(source_dir)
        logger.info(f"Translating {len(files)} files into {', '.join(languages)}")
        ok = self._translate_files(files, languages, force_render)

        copy_non_markdown_assets(self.settings, languages)
        return 0 if ok else 1

    def translate_single_file(self, file_path: str, force_render: bool = False) -> int:
        relative_path = self._resolve_markdown(file_path)
        languages = self._languages()
        return 0 if self.translate_file(relative_path, languages, force_render) else 1

    def check_all(self) -> int:
        source_dir = self._require_source_dir()
        languages = self._languages()
        needs_work = False
        for relative_path in find_markdown_files(source_dir):
            if self.check_file(relative_path, languages):
                needs_work = True
        return 1 if needs_work else 0

    def check_single_file(self, file_path: str) -> int:
        relative_path = self._resolve_markdown(file_path)
        return 1 if self.check_file(relative_path, self._languages()) else 0

    def retranslate_cached_chunk(self, cache_id: str) -> int:
        """Force a fresh translation of one cached chunk, then re-render its file."""
        found = self.cache.find_entry(cache_id)
        if found is None:
            logger.error(f"Cache entry not found: {cache_id}")
            return 1
        relative_path, entry = found

        languages = self._languages()
        for language in languages:
            result = self.translate_chunk(
                entry.original,
                language,
                relative_path,
                cache_id=cache_id,
                force=True,
                values_only=entry.values_only,
            )
            if not result.success:
                logger.error(f"Failed to retranslate chunk {cache_id} for {language}: {result.error}")
                return 1

        if not (self.settings.source_dir() / relative_path).is_file():
            logger.error(f"Source file for cache entry no longer exists: {relative_path}")
            return 1
        return 0 if self.translate_file(relative_path, languages, force_render=True) else 1

    # ------------------------------------------------------------------
    # Files
    # ------------------------------------------------------------------

    def prepare_document(self, relative_path: str) -> Document | None:
        source_file = self.settings.source_dir() / relative_path
        if not source_file.is_file():
            return None
        source = read_document(source_file)
        content, blocks = extract_code_blocks(source)
        plan = build_yaml_value_plan(source, self.settings.yaml_keys_to_skip)
        size = self.settings.translation_chunk_size
        if plan is not None:
            chunks = split_values_text(plan.text, size) if plan.text else []
        else:
            chunks = split_into_chunks(content, size)
        return Document(
            relative_path=relative_path,
            source=source,
            content_with_placeholders=content,
            blocks=blocks,
            chunks=chunks,
            yaml_plan=plan,
        )

    def translate_file(self, relative_path: str, languages: list[str], force_render: bool = False) -> bool:
        document = self.prepare_document(relative_path)
        if document is None:
            logger.error(f"Source file not found: {relative_path}")
            return False

        workers = max(1, self.settings.translation_parallel_chunks)
        # parallelize whichever dimension has more work
        if workers > 1 and len(languages) > 1 and len(languages) >= len(document.chunks):
            failed = False
            with ThreadPoolExecutor(max_workers=workers) as executor:
                futures = {
                    executor.submit(self.translate_file_for_language, document, language, force_render, False, False): language
                    for language in languages
                }
                for future in as_completed(futures):
                    if not future.result():
                        failed = True
            return not failed

        failed = False
        for language in languages:
            if not self.translate_file_for_language(document, language, force_render, False, workers > 1):
                failed = True
        return not failed

    def translate_file_for_language(
        self,
        document: Document,
        language: str,
        force_render: bool = False,
        force_translate: bool = False,
        parallel_chunks: bool = False,
    ) -> bool:
        relative_path = document.relative_path
        target_file = self._target_file(language, relative_path)
        target_file.parent.mkdir(parents=True, exist_ok=True)

        if not force_render and not force_translate and not self.needs_translation(document, language, target_file):
            return True

        if self.settings.prompts_only:
            self._dump_prompts_for_document(document, language)
            return True

        if document.yaml_plan is not None:
            if document.yaml_plan.text == "":
                synced = document.source
            else:
                values = self._translate_chunks(document, language, force_translate, parallel_chunks)
                if values is None:
                    return False
                synced = apply_yaml_value_translations(document.source, document.yaml_plan, "\n".join(values))
        else:
            translated = self._translate_chunks(document, language, force_translate, parallel_chunks)
            if translated is None:
                return False
            restored = restore_code_blocks("\n\n".join(translated), document.blocks)
            synced = sync_to_source_structure(document.source, restored)
            synced = merge_translated_yaml_values(
                document.source,
                restored,
                synced,
                self.settings.yaml_keys_to_skip,
            )

        synced = restore_link_urls(document.source, synced)
        synced = ensure_utf8(normalize_markdown_link_urls(synced))

        validation = self.validator.validate_detailed(
            document.source,
            synced,
            check_untranslated=not document.values_only,
        )
        if not validation.ok and validation.reason == ValidationReason.LINK_URL:
            repaired = normalize_links_with_source(document.source, synced)
            if repaired != synced:
                synced = ensure_utf8(normalize_markdown_link_urls(repaired))
                validation = self.validator.validate_detailed(
                    document.source,
                    synced,
                    check_untranslated=not document.values_only,
                )
                if validation.ok:
                    log_step("OK", relative_path, language, message="repaired_link_urls")

        failed = False
        if validation.ok:
            report = self.collect_untranslated_chunk_details(document, synced)
            if report.chunks:
                detail = format_untranslated_detail(report)
                if not force_translate:
                    log_step("RETRY", relative_path, language, message=f"rule=untranslated {detail}")
                    return self.translate_file_for_language(document, language, force_render, True, parallel_chunks)
                failed = True
                log_step("WARNING", relative_path, language, message=f"untranslated {detail} writing_output_anyway")
            else:
                log_step("OK", relative_path, language, message="validated")
        else:
            detail = format_validation_detail(validation) + self._chunk_hint(document, validation)
            if not force_translate:
                log_step("RETRY", relative_path, language, message=f"reason={detail.strip() or 'validation'}")
                return self.translate_file_for_language(document, language, force_render, True, parallel_chunks)
            failed = True
            log_step("WARNING", relative_path, language, message=f"validation_failed{detail} writing_output_anyway")

        write_document(target_file, synced)
        return not failed

    def needs_translation(self, document: Document, language: str, target_file: Path) -> bool:
        status = self.check_file_for_language(document, language, target_file)
        if not status.needs_translation:
            log_step("SKIP", document.relative_path, language, message="up_to_date")
        return status.needs_translation

    # ------------------------------------------------------------------
    # Chunks
    # ------------------------------------------------------------------

    def _translate_chunks(
        self,
        document: Document,
        language: str,
        force: bool,
        parallel: bool,
    ) -> list[str] | None:
        chunks = document.chunks
        prompt = self.role_prompt(language)
        results: list[str | None] = [None] * len(chunks)

        def run(index: int) -> TranslationResult:
            chunk = chunks[index]
            log_step("STARTED", document.relative_path, language, index + 1, message=f"total={len(chunks)}")
            log_step(
                "DEBUG",
                document.relative_path,
                language,
                index + 1,
                message=f"bytes={len(chunk.encode('utf-8'))} total={len(chunks)}",
            )
            return self.translate_chunk(
                chunk,
                language,
                document.relative_path,
                force=force,
                chunk_number=index + 1,
                prompt=prompt,
                values_only=document.values_only,
            )

        if not parallel or len(chunks) < 2:
            for index in range(len(chunks)):
                result = run(index)
                if not result.success:
                    log_step("FAILED", document.relative_path, language, index + 1, message="reason=chunk_failed")
                    return None
                results[index] = result.text
            return results

        with ThreadPoolExecutor(max_workers=self.settings.translation_parallel_chunks) as executor:
            futures = {executor.submit(run, index): index for index in range(len(chunks))}
            for future in as_completed(futures):
                index = futures[future]
                result = future.result()
                if not result.success:
                    log_step("FAILED", document.relative_path, language, index + 1, message="reason=chunk_failed")
                    for pending in futures:
                        pending.cancel()
                    return None
                results[index] = result.text

        if any(text is None for text in results):
            return None
        return results

    def translate_chunk(
        self,
        chunk: str,
        language: str,
        relative_path: str,
        cache_id: str | None = None,
        force: bool = False,
        chunk_number: int | None = None,
        prompt: str | None = None,
        values_only: bool = False,
    ) -> TranslationResult:
        """Translate one chunk through the cache and the language's model ladder."""
        started = time.monotonic()
        key = cache_id or chunk_hash(chunk)

        if not force:
            cached = self._cached_translation(chunk, key, language, relative_path, chunk_number, started)
            if cached is not None:
                return cached

        if not values_only and is_chunk_non_translatable(chunk):
            self.cache.save_to_cache(key, chunk, language, chunk, True, relative_path)
            return TranslationResult(text=chunk, success=True)

        prompt = prompt if prompt is not None else self.role_prompt(language)
        last_error: str | None = None
        for model in self.settings.models_for_language(language):
            log_step("MODEL_TRY", relative_path, language, chunk_number, model)
            if self.settings.dump_prompt:
                self._dump_prompt(relative_path, language, model, prompt, chunk, chunk_number)
            try:
                translated = self.client.translate(
                    model,
                    prompt,
                    chunk,
                    file_name=relative_path,
                    language=language,
                    chunk_number=chunk_number,
                )
            except ModelClientError as e:
                last_error = str(e)
                log_step("MODEL_FAILED", relative_path, language, chunk_number, model, message=f"error={e}")
                continue

            if not is_valid_utf8(translated):
                log_step("WARNING", relative_path, language, chunk_number, model, message="non_utf8_fallback")
                translated = chunk
            translated = repair_chunk(chunk, translated, values_only=values_only)

            if values_only:
                translated = restore_missing_value_lines(chunk, normalize_value_lines(chunk, translated))
                self.cache.save_to_cache(key, chunk, language, translated, False, relative_path, model, values_only=True)
                log_step("OK", relative_path, language, chunk_number, model, message=f"values_only ms={_elapsed_ms(started)}")
                return TranslationResult(text=translated, success=True, model=model)

            validation = self.validator.validate_detailed(chunk, translated)
            if not validation.ok:
                detail = format_validation_detail(validation)
                last_error = f"validation failed{detail}"
                log_step("VALIDATION_FAILED", relative_path, language, chunk_number, model, message=detail.strip())
                if self.settings.stop_on_mismatch:
                    message = self._mismatch_message("Chunk validation failed (stop)", relative_path, language, model, chunk, translated, chunk_number)
                    log_step("FAILED", relative_path, language, chunk_number, model, message=message + detail)
                    return TranslationResult(text="", success=False, error=last_error, model=model)
                continue

            if not self.validator.structure_matches(chunk, translated):
                last_error = "chunk structure mismatch"
                prefix = "Chunk structure mismatch (stop)" if self.settings.stop_on_mismatch else "Chunk structure mismatch"
                message = self._mismatch_message(prefix, relative_path, language, model, chunk, translated, chunk_number)
                log_step("FAILED", relative_path, language, chunk_number, model, message=message)
                if self.settings.stop_on_mismatch:
                    return TranslationResult(text="", success=False, error=last_error, model=model)
                continue

            self.cache.save_to_cache(key, chunk, language, translated, False, relative_path, model)
            log_step("OK", relative_path, language, chunk_number, model, message=f"ms={_elapsed_ms(started)}")
            return TranslationResult(text=translated, success=True, model=model)

        if last_error is not None:
            log_step("FAILED", relative_path, language, chunk_number, message=f"error={last_error}")
        log_step("FAILED", relative_path, language, chunk_number, message=f"ms={_elapsed_ms(started)}")
        return TranslationResult(
            text="",
            success=False,
            error=last_error or "no model produced a valid translation",
        )

    def _cached_translation(
        self,
        chunk: str,
        key: str,
        language: str,
        relative_path: str,
        chunk_number: int | None,
        started: float,
    ) -> TranslationResult | None:
        entry = self.cache.get_cached_entry(key, relative_path)
        cached = entry.translations.get(language) if entry is not None else None
        if entry is None or cached is None:
            log_step("CACHE_MISS", relative_path, language, chunk_number, message=f"hash={key}")
            return None

        normalized = normalize_code_block_placeholders(chunk, cached)
        if normalized != cached:
            cached = normalized
            self.cache.save_to_cache(
                key,
                chunk,
                language,
                cached,
                False,
                relative_path,
                values_only=entry.values_only,
            )

        if entry.values_only:
            valid = line_count(chunk) == line_count(cached)
        else:
            valid = self.validator.validate(chunk, cached)
        if valid and self.validator.structure_matches(chunk, cached):
            log_step("CACHE_HIT", relative_path, language, chunk_number, message=f"hash={key} ms={_elapsed_ms(started)}")
            return TranslationResult(text=cached, success=True, model=entry.model)

        if entry.values_only:
            detail = " values_only"
        else:
            validation = self.validator.validate_detailed(chunk, cached)
            detail = format_validation_detail(validation) if not validation.ok else ""
        log_step("CACHE_MISMATCH", relative_path, language, chunk_number, message=f"hash={key}{detail}")
        return None

    # ------------------------------------------------------------------
    # Check-only
    # ------------------------------------------------------------------

    def check_file(self, relative_path: str, languages: list[str]) -> bool:
        """Print one CHECK line per stale language; True when any work is pending."""
        document = self.prepare_document(relative_path)
        if document is None:
            return False
        needs_work = False
        for language in languages:
            status = self.check_file_for_language(document, language, self._target_file(language, relative_path))
            if not status.needs_translation:
                continue
            needs_work = True
            message = f"reason={describe_check_reason(status)}"
            if status.untranslated.chunks:
                message += f" untranslated_chunks={len(status.untranslated.chunks)}"
                message += f" chunk_list={format_chunk_list(status.untranslated.chunks)}"
            if status.missing_hashes:
                message += f" missing_chunks={len(status.missing_hashes)}"
            if status.mismatched_hashes:
                message += f" mismatched_chunks={len(status.mismatched_hashes)}"
            print(format_step("CHECK", relative_path, language, message=message), flush=True)
        return needs_work

    def check_file_for_language(self, document: Document, language: str, target_file: Path) -> CheckStatus:
        if not target_file.is_file():
            return CheckStatus(True, CheckReason.MISSING_TARGET)

        target = read_document(target_file)
        source_lines = split_lines(document.source)
        target_lines = split_lines(target)
        if len(source_lines) != len(target_lines):
            return CheckStatus(True, CheckReason.LINE_COUNT)

        if _blank_positions(source_lines) != _blank_positions(target_lines):
            validation = next(
                ValidationResult(
                    ok=False,
                    reason=ValidationReason.EMPTY_LINE,
                    line=i + 1,
                    source=src,
                    target=tgt,
                )
                for i, (src, tgt) in enumerate(zip(source_lines, target_lines))
                if is_blank(src) != is_blank(tgt)
            )
            return CheckStatus(True, CheckReason.EMPTY_LINES, validation=validation)

        validation = self.validator.validate_detailed(
            document.source,
            target,
            check_untranslated=False,
        )
        if not validation.ok:
            return CheckStatus(True, CheckReason.VALIDATION, validation=validation)

        report = self.collect_untranslated_chunk_details(document, target)
        if report.chunks:
            return CheckStatus(True, CheckReason.UNTRANSLATED, untranslated=report)

        missing, mismatched = [], []
        for chunk in document.chunks:
            key = chunk_hash(chunk)
            cached = self.cache.get_cached_translation(key, language, document.relative_path)
            if cached is None:
                missing.append(key)
            elif not self.validator.structure_matches(chunk, cached):
                mismatched.append(key)
        if missing:
            return CheckStatus(True, CheckReason.CACHE_MISS, missing_hashes=missing, mismatched_hashes=mismatched)
        if mismatched:
            return CheckStatus(True, CheckReason.CACHE_MISMATCH, mismatched_hashes=mismatched)
        return CheckStatus(False, CheckReason.OK)

    def collect_untranslated_chunk_details(self, document: Document, target: str) -> UntranslatedReport:
        """Chunk numbers whose target text is a near copy of the source text."""
        size = self.settings.translation_chunk_size
        report = UntranslatedReport()
        if document.values_only:
            target_plan = build_yaml_value_plan(target, self.settings.yaml_keys_to_skip)
            if target_plan is None or not target_plan.text:
                return report
            target_chunks = split_values_text(target_plan.text, size)
        else:
            target_chunks = align_target_chunks(document.chunks, extract_code_blocks(target)[0], size)

        for index, (source_chunk, target_chunk) in enumerate(zip(document.chunks, target_chunks), start=1):
            result = self.validator.check_untranslated(source_chunk, target_chunk)
            if result.ok:
                continue
            report.chunks.append(index)
            report.details.append(f"chunk={index} jaccard={result.jaccard:.3f} lcs={result.lcs:.3f}")
        return report

    # ------------------------------------------------------------------
    # Diagnostics
    # ------------------------------------------------------------------

    def _chunk_hint(self, document: Document, validation: ValidationResult) -> str:
        if document.values_only or not validation.line:
            return ""
        index = chunk_index_for_line(
            document.content_with_placeholders,
            document.blocks,
            self.settings.translation_chunk_size,
            validation.line,
        )
        return f" chunk_hint={index}" if index is not None else ""

    def _mismatch_message(
        self,
        prefix: str,
        relative_path: str,
        language: str,
        model: str,
        chunk: str,
        translated: str,
        chunk_number: int | None,
    ) -> str:
        chunk_part = f" chunk={chunk_number}" if chunk_number is not None else ""
        message = (
            f"{prefix}: file={relative_path}{chunk_part}"
            f" src_path={self.settings.source_dir() / relative_path}"
            f" tgt_path={self._target_file(language, relative_path)}"
            f" lang={language} model={model}"
            f" src_lines={line_count(chunk)} tgt_lines={line_count(translated)}"
        )
        dumps = self._dump_mismatch(relative_path, language, model, chunk, translated)
        if dumps is not None:
            message += f" dump_src={dumps[0]} dump_tgt={dumps[1]}"
        return message

    def _dump_mismatch(
        self,
        relative_path: str,
        language: str,
        model: str,
        source: str,
        translated: str,
    ) -> tuple[Path, Path] | None:
        if not self.settings.dump_mismatch:
            return None
        prefix = (
            f"translator-mismatch-{safe_name(relative_path)}-{language}-{safe_name(model)}"
            f"-{next(self._mismatch_counter)}"
        )
        source_path = self.dump_dir / f"{prefix}-src.txt"
        target_path = self.dump_dir / f"{prefix}-tgt.txt"
        source_path.write_text(source, encoding="utf-8")
        target_path.write_text(translated, encoding="utf-8")
        return source_path, target_path

    def _dump_prompt(
        self,
        relative_path: str,
        language: str,
        model: str,
        prompt: str,
        chunk: str,
        chunk_number: int | None,
    ) -> Path:
        digest = hashlib.sha1(chunk.encode("utf-8")).hexdigest()[:8]
        chunk_part = f"-chunk{chunk_number}" if chunk_number is not None else ""
        path = self.dump_dir / (
            f"translator-prompt-{safe_name(relative_path)}-{language}-{safe_name(model)}{chunk_part}-{digest}.txt"
        )
        path.write_text(f"{prompt}\n\n---\n\n{chunk}", encoding="utf-8")
        log_step("PROMPT_DUMP", relative_path, language, chunk_number, model, message=f"path={path}")
        return path

    def _dump_prompts_for_document(self, document: Document, language: str) -> None:
        log_step("PROMPT", document.relative_path, language, message="scope=file")
        prompt = self.role_prompt(language)
        for index, chunk in enumerate(document.chunks, start=1):
            if not document.values_only and is_chunk_non_translatable(chunk):
                continue
            for model in self.settings.models_for_language(language):
                path = self._dump_prompt(document.relative_path, language, model, prompt, chunk, index)
                log_step("PROMPT", document.relative_path, language, index, model, message=f"prompt {path}")
        log_step("PROMPT", document.relative_path, language, message=f"dir={self.dump_dir}")

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _translate_files(self, files: list[str], languages: list[str], force_render: bool) -> bool:
        workers = max(1, self.settings.translation_parallel_files)
        if workers == 1 or len(files) < 2:
            results = [self.translate_file(path, languages, force_render) for path in files]
            return all(results)

        failed = False
        with ThreadPoolExecutor(max_workers=workers) as executor:
            futures = {executor.submit(self.translate_file, path, languages, force_render): path for path in files}
            for future in as_completed(futures):
                if not future.result():
                    failed = True
        return not failed

    def _target_file(self, language: str, relative_path: str) -> Path:
        return self.settings.target_dir() / language / relative_path

    def _require_source_dir(self) -> Path:
        source_dir = self.settings.source_dir()
        if not source_dir.is_dir():
            raise ConfigurationError(f"Source directory not found: {source_dir}")
        return source_dir

    def _languages(self) -> list[str]:
        languages = resolve_languages(self.settings)
        if not languages:
            raise ConfigurationError("No target languages found")
        return languages

    def _resolve_markdown(self, file_path: str) -> str:
        path = resolve_file_path(self.settings, file_path)
        if path is None:
            raise ConfigurationError(f"File not found: {file_path}")
        if path.suffix != MARKDOWN_SUFFIX:
            raise ConfigurationError(f"File must be a markdown file: {file_path}")
        relative_path = relative_source_path(self.settings, path)
        if relative_path is None:
            raise ConfigurationError(f"File is outside the source directory: {file_path}")
        return relative_path


def align_target_chunks(source_chunks: list[str], target_content: str, max_bytes: int) -> list[str]:
    """Cut the target along the source's chunk boundaries.

    With equal line counts each target chunk covers exactly the lines of its
    source chunk; otherwise the target is chunked on its own.
    """
    target_lines = split_lines(target_content)
    heights = [line_count(chunk) for chunk in source_chunks]
    # chunks are joined with one blank line between them
    if sum(heights) + max(0, len(heights) - 1) != len(target_lines):
        return split_into_chunks(target_content, max_bytes)
    aligned = []
    cursor = 0
    for height in heights:
        aligned.append("\n".join(target_lines[cursor : cursor + height]))
        cursor += height + 1
    return aligned
