"""Chat-completions client for OpenAI-compatible providers (OpenRouter by default)."""

import hashlib
import re
import tempfile
import time
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Callable

import openai
from loguru import logger
from openai import OpenAI

from docs_translate.errors import ModelClientError
from docs_translate.repairs import ensure_utf8

DEFAULT_BASE_URL = "https://openrouter.ai/api/v1"
BACKOFF_BASE_SECONDS = 0.2

# provider prefix used in config files -> provider namespace on the wire
MODEL_ALIASES = {
    "openai:": "openai/",
    "claude:": "anthropic/",
}

_UNSAFE_NAME_RE = re.compile(r"[^a-zA-Z0-9._-]")


def normalize_model(model: str) -> str:
    """``openai:gpt-4o`` -> ``openai/gpt-4o``; qualified names pass through."""
    if "/" in model:
        return model
    for alias, namespace in MODEL_ALIASES.items():
        if model.startswith(alias):
            return namespace + model[len(alias):]
    return model


def normalize_response_text(text: str) -> str:
    text = text.replace("\u2028", "\n").replace("\u2029", "\n")
    return ensure_utf8(text)


def safe_name(value: str) -> str:
    return _UNSAFE_NAME_RE.sub("_", value)


class TranslationBackend(ABC):
    """Anything that turns (model, system prompt, chunk) into translated text."""

    @abstractmethod
    def translate(
        self,
        model: str,
        system_prompt: str,
        content: str,
        file_name: str | None = None,
        language: str | None = None,
        chunk_number: int | None = None,
    ) -> str:
        """Return the translation or raise ModelClientError."""


class ModelClient(TranslationBackend):
    """Backend for OpenAI-compatible chat APIs.

    The SDK's own retries are disabled; attempts are counted here so that a
    timeout can end the ladder at once while other failures back off
    exponentially.
    """

    def __init__(
        self,
        api_key: str,
        base_url: str = DEFAULT_BASE_URL,
        timeout: float = 30,
        max_retries: int = 2,
        dump_response: bool = False,
        dump_dir: Path | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.max_retries = max(1, max_retries)
        self.dump_response = dump_response
        self.dump_dir = Path(dump_dir or tempfile.gettempdir())
        self.sleep = sleep
        self._client = OpenAI(
            api_key=api_key,
            base_url=self.base_url,
            timeout=timeout,
            max_retries=0,
        )

    def translate(
        self,
        model: str,
        system_prompt: str,
        content: str,
        file_name: str | None = None,
        language: str | None = None,
        chunk_number: int | None = None,
    ) -> str:
        model = normalize_model(model)
        context = _context_suffix(file_name, language, chunk_number)
        size = len(content.encode("utf-8"))
        last_error: Exception | None = None

        for attempt in range(1, self.max_retries + 1):
            start = time.monotonic()
            logger.info(f"Model attempt {attempt}/{self.max_retries} start model={model} bytes={size}{context}")
            try:
                response = self._client.chat.completions.create(
                    model=model,
                    messages=[
                        {"role": "system", "content": system_prompt},
                        {"role": "user", "content": content},
                    ],
                    temperature=0,
                )
                text = _response_text(response)
            except openai.APITimeoutError as e:
                elapsed_ms = round((time.monotonic() - start) * 1000)
                logger.warning(f"Model attempt {attempt}/{self.max_retries} timeout model={model} ms={elapsed_ms}{context}")
                raise ModelClientError(f"Model request timed out after {self.timeout}s: {e}", timed_out=True) from e
            except (openai.OpenAIError, ModelClientError) as e:
                last_error = e
                elapsed_ms = round((time.monotonic() - start) * 1000)
                logger.warning(
                    f"Model attempt {attempt}/{self.max_retries} error model={model} ms={elapsed_ms} msg={e}{context}"
                )
                if attempt < self.max_retries:
                    self.sleep(BACKOFF_BASE_SECONDS * 2 ** (attempt - 1))
                continue

            elapsed_ms = round((time.monotonic() - start) * 1000)
            logger.info(f"Model attempt {attempt}/{self.max_retries} ok model={model} ms={elapsed_ms}{context}")
            if self.dump_response:
                self._dump_response(model, response, content, language, chunk_number)
            return normalize_response_text(text)

        raise ModelClientError(f"Model request failed after {self.max_retries} attempts: {last_error}")

    def _dump_response(self, model, response, content, language, chunk_number) -> Path:
        digest = hashlib.sha1(f"{content}|{language or ''}|{chunk_number or ''}".encode("utf-8")).hexdigest()[:8]
        lang_part = f"-{language}" if language else ""
        chunk_part = f"-chunk{chunk_number}" if chunk_number is not None else ""
        path = self.dump_dir / f"openrouter-response-{safe_name(model)}{lang_part}{chunk_part}-{digest}.json"
        path.write_text(response.model_dump_json(indent=2), encoding="utf-8")
        logger.debug(f"Model response dumped: {path}")
        return path


def _response_text(response) -> str:
    choices = getattr(response, "choices", None) or []
    if not choices:
        raise ModelClientError("Model response has no choices")
    message = getattr(choices[0], "message", None)
    text = getattr(message, "content", None)
    if not isinstance(text, str):
        raise ModelClientError("Model response missing content")
    return text


def _context_suffix(file_name: str | None, language: str | None, chunk_number: int | None) -> str:
    parts = []
    if file_name:
        parts.append(f" file={file_name}")
    if language:
        parts.append(f" lang={language}")
    if chunk_number is not None:
        parts.append(f" chunk={chunk_number}")
    return "".join(parts)
