"""Project settings: ``.env``, ``translator.config.yaml``, ``translator.models.yaml``.

Everything is resolved once into a :class:`Settings` value which is handed to
the translator, the model client and the cache. Nothing reads the process
environment after :func:`load_settings` returns.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping

import yaml
from loguru import logger

from docs_translate.client import DEFAULT_BASE_URL
from docs_translate.errors import ConfigurationError

CONFIG_FILE = "translator.config.yaml"
MODELS_FILE = "translator.models.yaml"
ENV_FILE = ".env"

DEFAULT_MODELS = [
    "openai:gpt-4o-mini",
    "claude:claude-3-5-haiku-latest",
    "openai:o3-mini",
    "openai:gpt-4o",
    "claude:claude-3-5-sonnet-latest",
]

MIN_TIMEOUT = 5
MIN_RETRIES = 1
MIN_CHUNK_SIZE = 256


@dataclass
class Settings:
    project_dir: Path
    source_directory: str = "content/english"
    target_directory: str = "content"
    translation_chunk_size: int = 6144
    translation_parallel_chunks: int = 4
    translation_parallel_files: int = 1
    openrouter_timeout: int = 30
    openrouter_retries: int = 2
    role_template: str = "translator.role.tpl"
    cache_directory: str = ".translation-cache"
    languages: list[str] = field(default_factory=list)
    yaml_keys_to_skip: list[str] = field(default_factory=list)
    untranslated_jaccard_threshold: float = 0.8
    untranslated_lcs_threshold: float = 0.8
    untranslated_min_tokens: int = 4
    structure_mismatch_tolerance: float = 0.3

    models: list[str] = field(default_factory=lambda: list(DEFAULT_MODELS))
    models_by_language: dict[str, list[str]] = field(default_factory=dict)

    api_key: str = ""
    base_url: str = DEFAULT_BASE_URL

    debug: bool = False
    stop_on_mismatch: bool = False
    dump_mismatch: bool = False
    dump_prompt: bool = False
    dump_response: bool = False
    prompts_only: bool = False

    def models_for_language(self, language: str) -> list[str]:
        return self.models_by_language.get(language) or self.models

    def source_dir(self) -> Path:
        return self.project_dir / self.source_directory

    def target_dir(self) -> Path:
        return self.project_dir / self.target_directory

    def cache_dir(self) -> Path:
        return self.project_dir / self.cache_directory


def load_env_file(path: Path, environ: dict) -> None:
    """Load ``KEY=value`` lines from a .env file; existing variables win."""
    if not path.exists():
        return
    try:
        for line in path.read_text(encoding="utf-8").splitlines():
            stripped = line.strip()
            if not stripped or stripped.startswith("#"):
                continue
            if "=" not in stripped:
                continue
            key, value = stripped.split("=", 1)
            key = key.strip()
            if key.startswith("export "):
                key = key[len("export "):].strip()
            value = value.strip()
            if value and (value[0] == value[-1]) and value[0] in ("'", '"'):
                value = value[1:-1]
            if key:
                environ.setdefault(key, value)
    except OSError as e:
        logger.warning(f"Failed to read {path}: {e}")


def env_flag(environ: Mapping[str, str], name: str) -> bool:
    return environ.get(name, "").strip().lower() in ("1", "true")


def _env_int(environ: Mapping[str, str], name: str) -> int | None:
    raw = environ.get(name, "").strip()
    if raw == "":
        return None
    try:
        return int(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be an integer, got {raw!r}")


def _env_list(environ: Mapping[str, str], name: str) -> list[str]:
    return [item.strip() for item in environ.get(name, "").split(",") if item.strip()]


def _read_yaml(path: Path) -> dict:
    if not path.is_file():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML in {path}: {e}")
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigurationError(f"{path} must contain a mapping")
    return data


def parse_model_list(entries: list) -> list[str]:
    """Model names from a list of strings or ``{name, priority}`` mappings.

    Entries with a numeric priority come first, lowest priority value first;
    the rest follow in file order.
    """
    ordered: list[str] = []
    prioritized: list[tuple[float, int, str]] = []
    for position, entry in enumerate(entries):
        if isinstance(entry, str):
            ordered.append(entry)
            continue
        if not isinstance(entry, dict) or not isinstance(entry.get("name"), str):
            continue
        priority = entry.get("priority")
        if isinstance(priority, (int, float)) and not isinstance(priority, bool):
            prioritized.append((priority, position, entry["name"]))
        else:
            ordered.append(entry["name"])
    return [name for _priority, _position, name in sorted(prioritized)] + ordered


def _apply_config_file(settings: Settings, data: dict) -> None:
    for key in (
        "source_directory",
        "target_directory",
        "role_template",
        "cache_directory",
    ):
        if data.get(key) is not None:
            setattr(settings, key, str(data[key]))
    for key in (
        "translation_chunk_size",
        "translation_parallel_chunks",
        "translation_parallel_files",
        "openrouter_timeout",
        "openrouter_retries",
        "untranslated_min_tokens",
    ):
        if data.get(key) is not None:
            setattr(settings, key, int(data[key]))
    for key in (
        "untranslated_jaccard_threshold",
        "untranslated_lcs_threshold",
        "structure_mismatch_tolerance",
    ):
        if data.get(key) is not None:
            setattr(settings, key, float(data[key]))
    if isinstance(data.get("languages"), list):
        settings.languages = [str(lang) for lang in data["languages"] if lang]
    if isinstance(data.get("yaml_keys_to_skip"), list):
        settings.yaml_keys_to_skip = [str(key) for key in data["yaml_keys_to_skip"] if key]


def _apply_models_file(settings: Settings, data: dict) -> None:
    models = data.get("models")
    if isinstance(models, list):
        parsed = parse_model_list(models)
        if parsed:
            settings.models = parsed
    elif isinstance(models, dict):
        for language, entries in models.items():
            if not isinstance(entries, list):
                continue
            parsed = parse_model_list(entries)
            if not parsed:
                continue
            if language == "default":
                settings.models = parsed
            else:
                settings.models_by_language[str(language)] = parsed


def load_settings(project_dir: Path, environ: Mapping[str, str] | None = None) -> Settings:
    """Resolve settings for ``project_dir``.

    ``environ`` defaults to a copy of ``os.environ``; the project's ``.env``
    only fills variables that are not already set.
    """
    project_dir = Path(project_dir).resolve()
    env = dict(os.environ if environ is None else environ)
    load_env_file(project_dir / ENV_FILE, env)

    settings = Settings(project_dir=project_dir)
    _apply_config_file(settings, _read_yaml(project_dir / CONFIG_FILE))
    _apply_models_file(settings, _read_yaml(project_dir / MODELS_FILE))

    chunk_size = _env_int(env, "TRANSLATION_CHUNK_SIZE")
    if chunk_size is not None:
        settings.translation_chunk_size = max(MIN_CHUNK_SIZE, chunk_size)
    timeout = _env_int(env, "OPENROUTER_TIMEOUT")
    if timeout is not None:
        settings.openrouter_timeout = timeout
    retries = _env_int(env, "OPENROUTER_RETRIES")
    if retries is not None:
        settings.openrouter_retries = retries
    settings.openrouter_timeout = max(MIN_TIMEOUT, settings.openrouter_timeout)
    settings.openrouter_retries = max(MIN_RETRIES, settings.openrouter_retries)

    languages = _env_list(env, "TRANSLATOR_LANGUAGES")
    if languages:
        settings.languages = languages

    model = env.get("TRANSLATOR_MODEL", "").strip()
    if model:
        settings.models = [model]
        settings.models_by_language = {}
    models = _env_list(env, "TRANSLATOR_MODELS")
    if models:
        settings.models = models
        settings.models_by_language = {}

    settings.api_key = env.get("OPENROUTER_TRANSLATOR_API_KEY", "").strip()
    settings.base_url = env.get("OPENROUTER_BASE_URL", "").strip() or DEFAULT_BASE_URL

    settings.debug = env_flag(env, "TRANSLATOR_DEBUG") or env_flag(env, "DEBUG")
    settings.stop_on_mismatch = env_flag(env, "TRANSLATOR_STOP_ON_MISMATCH")
    settings.dump_mismatch = env_flag(env, "TRANSLATOR_DUMP_MISMATCH")
    settings.dump_prompt = env_flag(env, "TRANSLATOR_DUMP_PROMPT")
    settings.dump_response = env_flag(env, "OPENROUTER_DUMP_RESPONSE")
    settings.prompts_only = env_flag(env, "PROMPT")
    if settings.debug:
        # debug implies every diagnostic
        settings.stop_on_mismatch = True
        settings.dump_mismatch = True
        settings.dump_prompt = True
        settings.dump_response = True

    if settings.translation_chunk_size < 1:
        raise ConfigurationError("translation_chunk_size must be positive")
    return settings
