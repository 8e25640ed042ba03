"""I/O utilities for atomic writes and logging setup."""

import logging
import tempfile
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from shutil import move


def setup_logging(log_dir: Path | None = None, log_level: str = "INFO") -> logging.Logger:
    """Set up logging configuration for vid2anim.

    Args:
        log_dir: Directory to store log files (None = console only)
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)

    Returns:
        Configured logger instance
    """
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if log_dir is not None:
        log_dir.mkdir(parents=True, exist_ok=True)
        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        handlers.append(logging.FileHandler(log_dir / f"vid2anim_{timestamp}.log"))

    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=handlers,
        force=True,
    )

    return logging.getLogger("vid2anim")


@contextmanager
def atomic_write(target_path: Path, mode: str = "w"):
    """Context manager for atomic file writes using temporary files.

    Args:
        target_path: Final path where file should be written
        mode: File open mode

    Yields:
        File handle for writing

    Example:
        with atomic_write(Path("history.json")) as f:
            json.dump(snapshot, f)
    """
    target_path.parent.mkdir(parents=True, exist_ok=True)

    # Temporary file lives beside the target so the final move is atomic
    with tempfile.NamedTemporaryFile(
        mode=mode,
        dir=target_path.parent,
        delete=False,
        suffix=f".tmp_{target_path.name}",
    ) as temp_file:
        try:
            yield temp_file
            temp_file.flush()
            move(temp_file.name, target_path)
        except Exception:
            Path(temp_file.name).unlink(missing_ok=True)
            raise
