import sys

from loguru import logger

LOG_FORMAT = "[{elapsed}] [translator] <level>{level: <7}</level> {message}"

_WARNING_STATUSES = {"WARNING"}
_ERROR_STATUSES = {"FAILED"}
_DEBUG_STATUSES = {"STARTED", "DEBUG"}


def configure_logging(debug: bool = False) -> None:
    logger.remove()
    logger.add(sys.stderr, format=LOG_FORMAT, level="DEBUG" if debug else "INFO")


def format_step(
    status: str,
    relative_path: str | None = None,
    language: str | None = None,
    chunk_number: int | None = None,
    model: str | None = None,
    attempt: str | None = None,
    message: str = "",
) -> str:
    file_part = f"{language}/{relative_path.lstrip('/')}" if relative_path and language else "-"
    line = (
        f"status={status} file={file_part} chunk={chunk_number if chunk_number is not None else '-'} "
        f"model={model or '-'} attempt={attempt or '-'} lang={language or '-'}"
    )
    return f"{line} {message}" if message else line


def log_step(status: str, *args, **kwargs) -> None:
    """One line per pipeline transition, level picked from the status."""
    line = format_step(status, *args, **kwargs)
    if status in _ERROR_STATUSES:
        logger.error(line)
    elif status in _WARNING_STATUSES:
        logger.warning(line)
    elif status in _DEBUG_STATUSES:
        logger.debug(line)
    else:
        logger.info(line)
