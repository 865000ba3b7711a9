import io
import re
import tempfile
import threading
import time
import unittest
from contextlib import redirect_stdout
from pathlib import Path
from unittest import mock

from docs_translate.client import TranslationBackend
from docs_translate.config import Settings
from docs_translate.errors import ConfigurationError, ModelClientError
from docs_translate.lines import is_blank, is_comment_only, is_placeholder, split_lines
from docs_translate.orchestrator import (
    CheckReason,
    Translator,
    UntranslatedReport,
    align_target_chunks,
    chunk_hash,
    format_chunk_list,
    format_validation_detail,
    is_chunk_non_translatable,
    shorten_for_log,
)
from docs_translate.validator import ValidationReason, ValidationResult

WORD_RE = re.compile(r"[A-Za-z]+")
LINK_TARGET_RE = re.compile(r"(\]\([^)]*\))")
# front-matter keys stay as they are
YAML_KEY_RE = re.compile(r"^(\s*[A-Za-z_-]+:\s*)(.*)$")


def fake_translate_line(line, prefix):
    if is_blank(line) or is_placeholder(line) or is_comment_only(line):
        return line
    match = YAML_KEY_RE.match(line)
    if match:
        return match.group(1) + fake_translate_line(match.group(2), prefix)
    parts = LINK_TARGET_RE.split(line)
    return "".join(
        part if part.startswith("](") else WORD_RE.sub(lambda m: prefix + m.group(0), part)
        for part in parts
    )


class FakeClient(TranslationBackend):
    """Prefixes every word with ``zz``; models in ``echo_models`` return the input."""

    def __init__(self, prefix="zz", echo_models=(), failing_models=()):
        self.prefix = prefix
        self.echo_models = set(echo_models)
        self.failing_models = set(failing_models)
        self.calls = []
        self._lock = threading.Lock()

    def translate(self, model, system_prompt, content, file_name=None, language=None, chunk_number=None):
        with self._lock:
            self.calls.append((model, language, content))
        if model in self.failing_models:
            raise ModelClientError("provider unavailable")
        if model in self.echo_models:
            return content
        return "\n".join(fake_translate_line(line, self.prefix) for line in split_lines(content))


class TranslatorTestCase(unittest.TestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.project = Path(self._tmp.name).resolve()
        self.settings = Settings(
            project_dir=self.project,
            languages=["french"],
            models=["model-a"],
            translation_parallel_chunks=1,
        )
        self.source = self.settings.source_dir()
        self.source.mkdir(parents=True)
        self.dump_dir = self.project / "dumps"
        self.dump_dir.mkdir()
        self.client = FakeClient()

    def tearDown(self):
        self._tmp.cleanup()

    def translator(self, client=None):
        return Translator(self.settings, client=client or self.client, dump_dir=self.dump_dir)

    def write_source(self, relative_path, text):
        path = self.source / relative_path
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(text, encoding="utf-8")

    def target(self, relative_path, language="french"):
        return (self.settings.target_dir() / language / relative_path).read_text(encoding="utf-8")


class TestTranslateAll(TranslatorTestCase):
    def test_simple_document(self):
        self.write_source("index.md", "# Hello world\n\nThis is a paragraph of text.\n")

        self.assertEqual(self.translator().translate_all(), 0)

        self.assertEqual(self.target("index.md"), "# zzHello zzworld\n\nzzThis zzis zza zzparagraph zzof zztext.\n")
        self.assertEqual(len(self.client.calls), 1)

    def test_second_run_makes_no_model_calls(self):
        self.write_source("index.md", "# Hello world\n\nThis is a paragraph of text.\n")
        self.translator().translate_all()
        first = self.target("index.md")

        self.assertEqual(self.translator().translate_all(), 0)

        self.assertEqual(len(self.client.calls), 1)
        self.assertEqual(self.target("index.md"), first)

    def test_deleted_target_is_rebuilt_from_cache(self):
        self.write_source("index.md", "# Hello world\n\nThis is a paragraph of text.\n")
        self.translator().translate_all()
        first = self.target("index.md")
        (self.settings.target_dir() / "french" / "index.md").unlink()

        self.assertEqual(self.translator().translate_all(), 0)

        self.assertEqual(len(self.client.calls), 1)
        self.assertEqual(self.target("index.md"), first)

    def test_code_blocks_never_reach_the_model(self):
        self.write_source(
            "install.md",
            "Intro text goes here.\n\n```python\nprint('hi')\n```\n\nOutro text.\n",
        )

        self.assertEqual(self.translator().translate_all(), 0)

        self.assertEqual(
            self.target("install.md"),
            "zzIntro zztext zzgoes zzhere.\n\n```python\nprint('hi')\n```\n\nzzOutro zztext.\n",
        )
        for _model, _language, content in self.client.calls:
            self.assertNotIn("print(", content)

    def test_link_urls_survive_the_model(self):
        class LinkMangler(FakeClient):
            def translate(self, *args, **kwargs):
                return super().translate(*args, **kwargs).replace("https://example.com/docs", "https://example.org/x")

        self.write_source("links.md", "See [the docs](https://example.com/docs) for more details.\n")

        self.assertEqual(self.translator(LinkMangler()).translate_all(), 0)

        self.assertEqual(
            self.target("links.md"),
            "zzSee [zzthe zzdocs](https://example.com/docs) zzfor zzmore zzdetails.\n",
        )

    def test_untranslated_output_falls_through_to_next_model(self):
        self.settings.models = ["echo", "model-a"]
        client = FakeClient(echo_models=["echo"])
        self.write_source("index.md", "The quick brown fox jumps over the lazy dog.\n")

        self.assertEqual(self.translator(client).translate_all(), 0)

        self.assertEqual([call[0] for call in client.calls], ["echo", "model-a"])
        self.assertTrue(self.target("index.md").startswith("zzThe zzquick"))

    def test_short_chunk_copied_verbatim_is_accepted(self):
        # fewer distinct tokens than untranslated_min_tokens: a copy can't be told from a translation
        self.settings.models = ["echo", "model-a"]
        client = FakeClient(echo_models=["echo"])
        self.write_source("index.md", "Hello world.\n")

        self.assertEqual(self.translator(client).translate_all(), 0)

        self.assertEqual([call[0] for call in client.calls], ["echo"])
        self.assertEqual(self.target("index.md"), "Hello world.\n")

    def test_lower_min_tokens_catches_short_copies(self):
        self.settings.models = ["echo", "model-a"]
        self.settings.untranslated_min_tokens = 1
        client = FakeClient(echo_models=["echo"])
        self.write_source("index.md", "Hello world.\n")

        self.assertEqual(self.translator(client).translate_all(), 0)

        self.assertEqual([call[0] for call in client.calls], ["echo", "model-a"])
        self.assertEqual(self.target("index.md"), "zzHello zzworld.\n")

    def test_provider_error_falls_through_to_next_model(self):
        self.settings.models = ["down", "model-a"]
        client = FakeClient(failing_models=["down"])
        self.write_source("index.md", "Some words to translate here.\n")

        self.assertEqual(self.translator(client).translate_all(), 0)
        self.assertEqual([call[0] for call in client.calls], ["down", "model-a"])

    def test_every_model_failing_fails_the_file(self):
        self.settings.models = ["down"]
        client = FakeClient(failing_models=["down"])
        self.write_source("index.md", "Some words to translate here.\n")

        self.assertEqual(self.translator(client).translate_all(), 1)
        self.assertFalse((self.settings.target_dir() / "french" / "index.md").exists())

    def test_comment_only_document_needs_no_model(self):
        self.write_source("notes.md", "<!-- generated, do not edit -->\n")

        self.assertEqual(self.translator().translate_all(), 0)

        self.assertEqual(self.client.calls, [])
        self.assertEqual(self.target("notes.md"), "<!-- generated, do not edit -->\n")

    def test_front_matter_only_document(self):
        self.write_source(
            "meta.md",
            "---\ntitle: Getting started\ndescription: How to install the tool\nweight: 10\n---\n",
        )

        self.assertEqual(self.translator().translate_all(), 0)

        self.assertEqual(
            self.target("meta.md"),
            "---\ntitle: zzGetting zzstarted\ndescription: zzHow zzto zzinstall zzthe zztool\nweight: 10\n---\n",
        )
        self.assertEqual(self.client.calls[0][2], "Getting started\nHow to install the tool")

        self.assertEqual(self.translator().translate_all(), 0)
        self.assertEqual(len(self.client.calls), 1)

    def test_front_matter_skip_keys(self):
        self.settings.yaml_keys_to_skip = ["description"]
        self.write_source("meta.md", "---\ntitle: Getting started\ndescription: Keep me as is\n---\n")

        self.assertEqual(self.translator().translate_all(), 0)

        self.assertEqual(self.target("meta.md"), "---\ntitle: zzGetting zzstarted\ndescription: Keep me as is\n---\n")

    def test_front_matter_with_body(self):
        self.settings.yaml_keys_to_skip = ["slug"]
        self.write_source("page.md", "---\ntitle: Welcome\nslug: welcome\n---\n\nBody text for the page.\n")

        self.assertEqual(self.translator().translate_all(), 0)

        self.assertEqual(
            self.target("page.md"),
            "---\ntitle: zzWelcome\nslug: welcome\n---\n\nzzBody zztext zzfor zzthe zzpage.\n",
        )

    def test_crlf_is_preserved(self):
        path = self.source / "win.md"
        path.write_bytes(b"First line here.\r\n\r\nSecond line here.\r\n")

        self.assertEqual(self.translator().translate_all(), 0)

        written = (self.settings.target_dir() / "french" / "win.md").read_bytes()
        self.assertEqual(written, b"zzFirst zzline zzhere.\r\n\r\nzzSecond zzline zzhere.\r\n")

    def test_parallel_chunks_give_the_same_output(self):
        self.settings.translation_chunk_size = 40
        self.settings.translation_parallel_chunks = 4
        paragraphs = [f"Paragraph number {word} has some words." for word in ("one", "two", "three", "four")]
        self.write_source("long.md", "\n\n".join(paragraphs) + "\n")

        self.assertEqual(self.translator().translate_all(), 0)

        self.assertEqual(len(self.client.calls), 4)
        expected = "\n\n".join(fake_translate_line(p, "zz") for p in paragraphs) + "\n"
        self.assertEqual(self.target("long.md"), expected)

    def test_languages_in_parallel(self):
        self.settings.languages = ["french", "german"]
        self.settings.translation_parallel_chunks = 2
        self.write_source("index.md", "Some words to translate here.\n")

        self.assertEqual(self.translator().translate_all(), 0)

        self.assertEqual(sorted(call[1] for call in self.client.calls), ["french", "german"])
        self.assertEqual(self.target("index.md", "german"), "zzSome zzwords zzto zztranslate zzhere.\n")

    def test_files_in_parallel(self):
        self.settings.translation_parallel_files = 3
        for name in ("a.md", "b.md", "c.md"):
            self.write_source(name, f"Document {name[0]} has text.\n")

        self.assertEqual(self.translator().translate_all(), 0)
        self.assertEqual(self.target("c.md"), "zzDocument zzc zzhas zztext.\n")

    def test_deleted_sources_and_assets(self):
        self.write_source("index.md", "Some words to translate here.\n")
        (self.source / "logo.png").write_bytes(b"png")
        stale = self.settings.target_dir() / "french" / "old.md"
        stale.parent.mkdir(parents=True)
        stale.write_text("old", encoding="utf-8")

        self.assertEqual(self.translator().translate_all(), 0)

        self.assertFalse(stale.exists())
        self.assertEqual((self.settings.target_dir() / "french" / "logo.png").read_bytes(), b"png")

    def test_missing_source_directory(self):
        self.settings.source_directory = "nowhere"
        with self.assertRaises(ConfigurationError):
            self.translator().translate_all()

    def test_missing_api_key(self):
        self.write_source("index.md", "Some words to translate here.\n")
        translator = Translator(self.settings, dump_dir=self.dump_dir)
        with self.assertRaises(ConfigurationError):
            translator.translate_all()

    def test_prompts_only_makes_no_calls(self):
        self.settings.prompts_only = True
        self.write_source("index.md", "Some words to translate here.\n")

        self.assertEqual(self.translator().translate_all(), 0)

        self.assertEqual(self.client.calls, [])
        self.assertFalse((self.settings.target_dir() / "french" / "index.md").exists())
        dumps = list(self.dump_dir.glob("translator-prompt-index.md-french-model-a-chunk1-*.txt"))
        self.assertEqual(len(dumps), 1)
        self.assertTrue(dumps[0].read_text(encoding="utf-8").endswith("\n\n---\n\nSome words to translate here.\n"))


class SlowClient(FakeClient):
    """Fails on chunks mentioning ``Alpha`` (or on ``failing_languages``), sleeps on the rest."""

    def __init__(self, failing_languages=(), delay=0.2):
        super().__init__()
        self.failing_languages = set(failing_languages)
        self.delay = delay

    def translate(self, model, system_prompt, content, file_name=None, language=None, chunk_number=None):
        if "Alpha" in content or language in self.failing_languages:
            with self._lock:
                self.calls.append((model, language, content))
            raise ModelClientError("provider unavailable")
        time.sleep(self.delay)
        return super().translate(model, system_prompt, content, file_name, language, chunk_number)


class TestParallelFailures(TranslatorTestCase):
    def test_failed_chunk_fails_only_its_file(self):
        self.settings.translation_chunk_size = 30
        self.settings.translation_parallel_chunks = 2
        words = ("Alpha", "Bravo", "Charlie", "Delta", "Echo", "Foxtrot", "Golf", "Hotel", "India")
        self.write_source("long.md", "\n\n".join(f"Paragraph {word} has words." for word in words) + "\n")
        self.write_source("short.md", "Some words to translate here.\n")
        (self.source / "logo.png").write_bytes(b"png")
        client = SlowClient()

        self.assertEqual(self.translator(client).translate_all(), 1)

        french = self.settings.target_dir() / "french"
        self.assertFalse((french / "long.md").exists())
        self.assertEqual(self.target("short.md"), "zzSome zzwords zzto zztranslate zzhere.\n")
        self.assertEqual((french / "logo.png").read_bytes(), b"png")
        long_calls = [call for call in client.calls if "Paragraph" in call[2]]
        self.assertLess(len(long_calls), len(words))

    def test_failed_language_keeps_the_others(self):
        self.settings.languages = ["french", "german"]
        self.settings.translation_parallel_chunks = 2
        self.write_source("index.md", "Some words to translate here.\n")

        self.assertEqual(self.translator(SlowClient(failing_languages=["german"])).translate_all(), 1)

        self.assertEqual(self.target("index.md"), "zzSome zzwords zzto zztranslate zzhere.\n")
        self.assertFalse((self.settings.target_dir() / "german" / "index.md").exists())

    def test_failed_file_keeps_the_others(self):
        self.settings.translation_parallel_files = 3
        self.write_source("a.md", "Document Alpha has text.\n")
        self.write_source("b.md", "Document b has text.\n")
        self.write_source("c.md", "Document c has text.\n")

        self.assertEqual(self.translator(SlowClient(delay=0.05)).translate_all(), 1)

        self.assertFalse((self.settings.target_dir() / "french" / "a.md").exists())
        self.assertEqual(self.target("b.md"), "zzDocument zzb zzhas zztext.\n")
        self.assertEqual(self.target("c.md"), "zzDocument zzc zzhas zztext.\n")


class TestFileRetry(TranslatorTestCase):
    def test_untranslated_file_is_redone_once_without_cache(self):
        self.write_source("index.md", "Some words to translate here.\n")
        translator = self.translator()
        reports = [UntranslatedReport(chunks=[1], details=["chunk=1 jaccard=1.000 lcs=1.000"]), UntranslatedReport()]

        with mock.patch.object(translator, "collect_untranslated_chunk_details", side_effect=reports):
            self.assertEqual(translator.translate_all(), 0)

        self.assertEqual(len(self.client.calls), 2)

    def test_persistent_failure_is_written_anyway(self):
        self.write_source("index.md", "Some words to translate here.\n")
        translator = self.translator()
        report = UntranslatedReport(chunks=[1], details=["chunk=1 jaccard=1.000 lcs=1.000"])

        with mock.patch.object(translator, "collect_untranslated_chunk_details", return_value=report):
            self.assertEqual(translator.translate_all(), 1)

        self.assertEqual(len(self.client.calls), 2)
        self.assertEqual(self.target("index.md"), "zzSome zzwords zzto zztranslate zzhere.\n")


class TestSingleFile(TranslatorTestCase):
    def test_translate_single_file(self):
        self.write_source("guide/setup.md", "Some words to translate here.\n")
        self.write_source("other.md", "Other words to translate.\n")

        self.assertEqual(self.translator().translate_single_file("guide/setup.md"), 0)

        self.assertEqual(self.target("guide/setup.md"), "zzSome zzwords zzto zztranslate zzhere.\n")
        self.assertFalse((self.settings.target_dir() / "french" / "other.md").exists())

    def test_force_render_uses_the_cache(self):
        self.write_source("index.md", "Some words to translate here.\n")
        translator = self.translator()
        translator.translate_single_file("index.md")

        self.assertEqual(translator.translate_single_file("index.md", force_render=True), 0)
        self.assertEqual(len(self.client.calls), 1)

    def test_rejects_non_markdown(self):
        (self.source / "logo.png").write_bytes(b"png")
        with self.assertRaises(ConfigurationError):
            self.translator().translate_single_file("logo.png")

    def test_rejects_missing_file(self):
        with self.assertRaises(ConfigurationError):
            self.translator().translate_single_file("missing.md")


class TestCheckOnly(TranslatorTestCase):
    def check(self, translator=None):
        out = io.StringIO()
        with redirect_stdout(out):
            code = (translator or self.translator()).check_all()
        return code, out.getvalue()

    def test_missing_target_is_reported(self):
        self.write_source("index.md", "Some words to translate here.\n")

        code, output = self.check()

        self.assertEqual(code, 1)
        self.assertIn("status=CHECK file=french/index.md", output)
        self.assertIn("reason=missing target file", output)
        self.assertFalse((self.settings.target_dir() / "french").exists())
        self.assertEqual(self.client.calls, [])

    def test_up_to_date_tree(self):
        self.write_source("index.md", "Some words to translate here.\n")
        self.translator().translate_all()

        self.assertEqual(self.check(), (0, ""))

    def test_changed_source_is_reported(self):
        self.write_source("index.md", "Some words to translate here.\n")
        self.translator().translate_all()
        self.write_source("index.md", "Some words to translate here.\n\nAnd a new paragraph.\n")

        code, output = self.check()

        self.assertEqual(code, 1)
        self.assertIn("reason=line count mismatch", output)

    def test_cache_miss_is_reported(self):
        self.write_source("index.md", "Some words to translate here.\n")
        self.translator().translate_all()
        for cache_file in list(self.settings.cache_dir().rglob("*.json")):
            cache_file.unlink()

        code, output = self.check()

        self.assertEqual(code, 1)
        self.assertIn("reason=cache miss (one or more chunks) missing_chunks=1", output)

    def test_untranslated_target_is_reported(self):
        self.write_source("index.md", "The quick brown fox jumps over the lazy dog.\n")
        target = self.settings.target_dir() / "french" / "index.md"
        target.parent.mkdir(parents=True)
        target.write_text("The quick brown fox jumps over the lazy dog.\n", encoding="utf-8")
        translator = self.translator()

        status = translator.check_file_for_language(translator.prepare_document("index.md"), "french", target)

        self.assertTrue(status.needs_translation)
        self.assertEqual(status.reason, CheckReason.UNTRANSLATED)
        self.assertEqual(status.untranslated.chunks, [1])

    def test_check_single_file(self):
        self.write_source("index.md", "Some words to translate here.\n")
        with redirect_stdout(io.StringIO()):
            self.assertEqual(self.translator().check_single_file("index.md"), 1)


class TestRetranslateCachedChunk(TranslatorTestCase):
    def test_chunk_is_retranslated_and_file_rerendered(self):
        source = "Some words to translate here.\n"
        self.write_source("index.md", source)
        self.translator().translate_all()

        client = FakeClient(prefix="yy")
        self.assertEqual(self.translator(client).retranslate_cached_chunk(chunk_hash(source)), 0)

        self.assertEqual(len(client.calls), 1)
        self.assertEqual(self.target("index.md"), "yySome yywords yyto yytranslate yyhere.\n")

    def test_unknown_id(self):
        self.assertEqual(self.translator().retranslate_cached_chunk("0" * 64), 1)


class TestHelpers(unittest.TestCase):
    def test_non_translatable_chunks(self):
        self.assertTrue(is_chunk_non_translatable("CODE_BLOCK_2"))
        self.assertTrue(is_chunk_non_translatable("<!-- a -->\n\n<!-- b -->"))
        self.assertFalse(is_chunk_non_translatable("<!-- a -->\ntext"))

    def test_align_target_chunks(self):
        source_chunks = ["a\nb", "c"]
        self.assertEqual(align_target_chunks(source_chunks, "x\ny\n\nz", 100), ["x\ny", "z"])
        # line counts disagree: the target is chunked on its own
        self.assertEqual(align_target_chunks(source_chunks, "x\n\ny", 100), ["x\n\ny"])

    def test_format_chunk_list(self):
        self.assertEqual(format_chunk_list([3, 1, 3]), "1,3")
        self.assertEqual(format_chunk_list(list(range(1, 11))), "1,2,3,4,5,6,7,8,...")

    def test_shorten_for_log(self):
        self.assertEqual(shorten_for_log("a\nb"), '"a b"')
        self.assertEqual(len(shorten_for_log("x" * 500)), 122)

    def test_format_validation_detail(self):
        result = ValidationResult(ok=False, reason=ValidationReason.EMPTY_LINE, line=2, source="", target="x")
        self.assertEqual(format_validation_detail(result), ' (rule=empty-line line=2 src="" tgt="x")')

        link = ValidationResult(ok=False, reason=ValidationReason.LINK_URL, line=1, source="[a](u1)", target="[a](u2)")
        self.assertIn("src_urls=u1 tgt_urls=u2", format_validation_detail(link))


if __name__ == "__main__":
    unittest.main()
