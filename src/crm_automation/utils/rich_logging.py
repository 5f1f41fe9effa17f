"""Rich logging with enrollment context and better formatting."""

import logging
import os
import sys
import threading
from datetime import datetime
from pathlib import Path
from typing import Optional


class EngineLogFormatter(logging.Formatter):
    """Custom formatter with workflow/enrollment context."""

    def __init__(self, worker_id: str, use_colors: bool = True):
        super().__init__()
        self.worker_id = worker_id
        self.use_colors = use_colors

    def format(self, record: logging.LogRecord) -> str:
        """Format log record with context."""
        timestamp = datetime.fromtimestamp(record.created).strftime("%H:%M:%S")

        workflow_context = ""
        if hasattr(record, "workflow_id"):
            workflow_context = f"[{record.workflow_id}] "

        enrollment_context = ""
        if hasattr(record, "enrollment_id"):
            enrollment_context = f"[{record.enrollment_id[:12]}] "

        step_context = ""
        if hasattr(record, "step_id"):
            step_context = f"[{record.step_id}] "

        if self.use_colors:
            level_colors = {
                "DEBUG": "\033[36m",      # Cyan
                "INFO": "\033[32m",       # Green
                "WARNING": "\033[33m",    # Yellow
                "ERROR": "\033[31m",      # Red
                "CRITICAL": "\033[35m",   # Magenta
            }
            reset = "\033[0m"
            level_color = level_colors.get(record.levelname, "")
        else:
            level_color = ""
            reset = ""

        message = (
            f"{timestamp} {level_color}{record.levelname:8s}{reset} "
            f"[{self.worker_id}] {workflow_context}{enrollment_context}{step_context}"
            f"{record.getMessage()}"
        )
        if record.exc_info:
            message = f"{message}\n{self.formatException(record.exc_info)}"
        return message


class ContextLogger(logging.LoggerAdapter):
    """Logger adapter that adds enrollment context to all log messages.

    Context is per thread: pool workers each drive their own enrollment.
    """

    def __init__(self, logger: logging.Logger, worker_id: str):
        super().__init__(logger, {})
        self.worker_id = worker_id
        self._local = threading.local()

    @property
    def current_workflow_id(self) -> Optional[str]:
        return getattr(self._local, "workflow_id", None)

    @property
    def current_enrollment_id(self) -> Optional[str]:
        return getattr(self._local, "enrollment_id", None)

    @property
    def current_step_id(self) -> Optional[str]:
        return getattr(self._local, "step_id", None)

    def set_enrollment_context(
        self,
        workflow_id: Optional[str] = None,
        enrollment_id: Optional[str] = None,
        step_id: Optional[str] = None,
    ):
        """Set current enrollment context for logging."""
        if workflow_id:
            self._local.workflow_id = workflow_id
        if enrollment_id:
            self._local.enrollment_id = enrollment_id
        # Allow clearing the step with None
        self._local.step_id = step_id

    def clear_context(self):
        """Clear enrollment context."""
        self._local.workflow_id = None
        self._local.enrollment_id = None
        self._local.step_id = None

    def process(self, msg, kwargs):
        """Add context to log record."""
        extra = kwargs.get("extra", {})

        if self.current_workflow_id:
            extra["workflow_id"] = self.current_workflow_id
        if self.current_enrollment_id:
            extra["enrollment_id"] = self.current_enrollment_id
        if self.current_step_id:
            extra["step_id"] = self.current_step_id

        kwargs["extra"] = extra
        return msg, kwargs

    def enrollment_started(self, workflow_id: str, enrollment_id: str, subject_id: str):
        """Log the start of a processing pass for an enrollment."""
        self.set_enrollment_context(workflow_id=workflow_id, enrollment_id=enrollment_id)
        self.info(f"📋 Processing enrollment for subject {subject_id}")

    def step_executed(self, step_id: str, step_type: str, outcome: str):
        """Log a single step outcome."""
        self.set_enrollment_context(step_id=step_id)
        step_emoji = {
            "wait": "⏳",
            "condition": "🔀",
            "split": "🔀",
            "go_to": "↪️",
            "end": "🏁",
        }
        emoji = step_emoji.get(step_type, "⚙️")
        self.info(f"{emoji} {step_type}: {outcome}")

    def enrollment_finished(self, status: str, reason: Optional[str] = None):
        """Log a terminal transition and clear context."""
        if status == "failed":
            self.error(f"❌ Enrollment failed: {reason or 'unknown'}")
        else:
            self.info(f"✅ Enrollment {status}")
        self.clear_context()


def setup_rich_logging(
    worker_id: str,
    workspace: Path,
    log_level: str = "INFO",
    use_file: bool = True,
    use_json: bool = False,
) -> ContextLogger:
    """
    Setup rich logging with better formatting.

    Args:
        worker_id: Worker identifier (e.g. "scheduler", "worker-1")
        workspace: Workspace path
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        use_file: Write to log file
        use_json: Use JSON structured logging

    Returns:
        ContextLogger instance
    """
    # Module loggers propagate to the package root, so handlers live there
    logger = logging.getLogger("crm_automation")
    logger.setLevel(getattr(logging, log_level.upper()))

    # Close existing handlers before clearing (prevents file descriptor leak)
    for handler in logger.handlers[:]:
        handler.close()
        logger.removeHandler(handler)

    if use_json:
        formatter = logging.Formatter(
            '{"timestamp":"%(asctime)s","worker":"%(worker)s","level":"%(levelname)s",'
            '"message":"%(message)s","module":"%(module)s","function":"%(funcName)s"}',
            defaults={"worker": worker_id},
        )
    else:
        formatter = EngineLogFormatter(worker_id, use_colors=sys.stdout.isatty())

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    if use_file:
        log_dir = workspace / "logs"
        log_dir.mkdir(parents=True, exist_ok=True)

        # Plain formatter for files (no ANSI codes)
        plain_formatter = EngineLogFormatter(worker_id, use_colors=False)

        file_handler = logging.FileHandler(log_dir / f"{worker_id}-{os.getpid()}.log")
        file_handler.setFormatter(plain_formatter)
        logger.addHandler(file_handler)

    return ContextLogger(logger, worker_id)
