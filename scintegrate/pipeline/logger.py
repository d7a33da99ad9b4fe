"""Structured logging for pipeline runs."""

import logging
import sys
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional, Union


class ColoredFormatter(logging.Formatter):
    """Console formatter that colors the level name."""

    def __init__(self, fmt: str, datefmt: str, colors: dict):
        super().__init__(fmt=fmt, datefmt=datefmt)
        self.colors = colors

    def format(self, record):
        # Format a copy so file handlers never see escape codes
        record = logging.makeLogRecord(record.__dict__)
        color = self.colors.get(record.levelname, self.colors["RESET"])
        record.levelname = f"{color}{record.levelname}{self.colors['RESET']}"
        return super().format(record)


class PipelineLogger:
    """Run logger: timestamped file log plus colored console output.

    Handlers are attached to the package logger ('scintegrate'), so every
    module logging through logging.getLogger(__name__) ends up in the run
    log.

    Parameters
    ----------
    log_dir : str or Path
        Directory for log files
    log_level : str
        Logging level (DEBUG, INFO, WARNING, ERROR)
    log_name : str
        Logger to attach handlers to

    Example
    -------
    >>> plog = PipelineLogger("results/logs", log_level="INFO")
    >>> plog.setup()
    >>> plog.log_stage_start("normalize", "Per-sample normalization")
    >>> plog.log_stage_complete("normalize", 45.2, {"n_samples": 4})
    """

    COLORS = {
        "DEBUG": "\033[0;36m",  # Cyan
        "INFO": "\033[0;34m",  # Blue
        "WARNING": "\033[1;33m",  # Yellow
        "ERROR": "\033[0;31m",  # Red
        "CRITICAL": "\033[1;31m",  # Bold Red
        "RESET": "\033[0m",
    }

    def __init__(
        self,
        log_dir: Union[str, Path],
        log_level: str = "INFO",
        log_name: str = "scintegrate",
    ):
        self.log_dir = Path(log_dir)
        self.log_dir.mkdir(parents=True, exist_ok=True)

        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        self.log_file = self.log_dir / f"run_{timestamp}.log"

        self.log_level = getattr(logging, log_level.upper())
        self.logger = logging.getLogger(log_name)
        self._handlers = []
        self._propagate = self.logger.propagate

    def setup(self, console: bool = True) -> logging.Logger:
        """Attach the file handler and, optionally, the console handler."""
        self.logger.setLevel(self.log_level)

        file_handler = logging.FileHandler(self.log_file, mode="w")
        file_handler.setLevel(self.log_level)
        file_handler.setFormatter(
            logging.Formatter(
                fmt="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
                datefmt="%Y-%m-%d %H:%M:%S",
            )
        )
        self._handlers.append(file_handler)

        if console:
            console_handler = logging.StreamHandler(sys.stdout)
            console_handler.setLevel(self.log_level)
            console_handler.setFormatter(
                ColoredFormatter(
                    fmt="%(asctime)s - %(levelname)s - %(message)s",
                    datefmt="%H:%M:%S",
                    colors=self.COLORS,
                )
            )
            self._handlers.append(console_handler)

        for handler in self._handlers:
            self.logger.addHandler(handler)
        # Console output comes from this logger only while attached
        self._propagate = self.logger.propagate
        self.logger.propagate = not console
        return self.logger

    def close(self) -> None:
        """Detach and close this logger's handlers."""
        for handler in self._handlers:
            self.logger.removeHandler(handler)
            handler.close()
        self._handlers = []
        self.logger.propagate = self._propagate

    def log_stage_start(self, stage_id: str, description: str = "") -> None:
        separator = "=" * 72
        self.logger.info(separator)
        self.logger.info("Starting stage '%s'%s", stage_id, f": {description}" if description else "")
        self.logger.info(separator)

    def log_stage_complete(
        self,
        stage_id: str,
        duration: float,
        summary: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Log successful completion of a stage with an optional summary."""
        self.logger.info(
            "Stage '%s' completed in %s", stage_id, self.format_duration(duration)
        )
        for key, value in (summary or {}).items():
            self.logger.info("  %s: %s", key, value)

    def log_stage_error(self, stage_id: str, error: BaseException) -> None:
        self.logger.error("Stage '%s' failed: %s", stage_id, error)

    @staticmethod
    def format_duration(seconds: float) -> str:
        """Format seconds as '45.2s', '1m 23s' or '2h 15m'."""
        if seconds < 60:
            return f"{seconds:.1f}s"
        elif seconds < 3600:
            mins = int(seconds // 60)
            secs = int(seconds % 60)
            return f"{mins}m {secs}s"
        else:
            hours = int(seconds // 3600)
            mins = int((seconds % 3600) // 60)
            return f"{hours}h {mins}m"
