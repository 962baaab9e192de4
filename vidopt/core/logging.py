"""
Logging configuration using Loguru.

Standard library loggers are intercepted and routed through Loguru. Raw
FFmpeg stderr goes to its own transcript file through a logger bound to
the job id.
"""

import logging
import sys
from pathlib import Path

from loguru import logger

from vidopt.config import settings

FFMPEG_CHANNEL = "ffmpeg"

CONSOLE_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>"
)
FILE_FORMAT = "{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {name}:{function}:{line} - {message}"
TRANSCRIPT_FORMAT = "{time:YYYY-MM-DD HH:mm:ss.SSS} | job {extra[job_id]} | {message}"


class InterceptHandler(logging.Handler):
    """
    Default handler from examples in loguru documentation.
    See https://loguru.readthedocs.io/en/stable/overview.html#entirely-compatible-with-standard-logging
    """

    def emit(self, record: logging.LogRecord) -> None:
        try:
            level = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        # Find caller from where originated the logged message
        frame, depth = logging.currentframe(), 2
        while frame.f_code.co_filename == logging.__file__:
            frame = frame.f_back
            depth += 1

        logger.opt(depth=depth, exception=record.exc_info).log(level, record.getMessage())


def _is_transcript(record) -> bool:
    return record["extra"].get("channel") == FFMPEG_CHANNEL


def _is_application(record) -> bool:
    return not _is_transcript(record)


def encoder_transcript(job_id: str):
    """Loguru logger that writes one job's FFmpeg stderr to the transcript."""
    return logger.bind(channel=FFMPEG_CHANNEL, job_id=job_id)


def log_directory() -> Path:
    return Path(settings.log_dir) if settings.log_dir else Path.home() / ".vidopt"


def setup_logging(log_dir: Path | None = None) -> None:
    """Configure logging for the application.

    Sinks:
        stderr: application records at INFO (DEBUG with VIDOPT_DEBUG)
        vidopt.log: application records at DEBUG, rotated
        ffmpeg.log: per-job FFmpeg stderr transcripts, rotated
    """
    logging.root.handlers = [InterceptHandler()]
    logging.root.setLevel(logging.DEBUG if settings.debug else logging.INFO)

    # remove every other logger's handlers and propagate to root logger
    for name in logging.root.manager.loggerDict.keys():
        logging.getLogger(name).handlers = []
        logging.getLogger(name).propagate = True

    logger.remove()

    logger.add(
        sys.stderr,
        level="DEBUG" if settings.debug else "INFO",
        format=CONSOLE_FORMAT,
        filter=_is_application,
    )

    log_dir = log_dir or log_directory()
    log_dir.mkdir(parents=True, exist_ok=True)

    logger.add(
        str(log_dir / "vidopt.log"),
        rotation="10 MB",
        retention="1 week",
        compression="zip",
        level="DEBUG",
        format=FILE_FORMAT,
        filter=_is_application,
        enqueue=True,
        backtrace=True,
        diagnose=True,
    )

    logger.add(
        str(log_dir / "ffmpeg.log"),
        rotation="20 MB",
        retention=3,
        level="DEBUG",
        format=TRANSCRIPT_FORMAT,
        filter=_is_transcript,
        enqueue=True,
    )

    logger.info(f"Logging initialized via Loguru (logs in {log_dir})")
