import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Mapping, Optional


def get_run_logger(run_name: str, *, output_dir: Optional[str] = None) -> logging.Logger:
    """
    Logger for a single MCEM run. Safe to call multiple times.

    With ``output_dir`` the run gets its own timestamped log file and stops
    propagating to the package logger. Without it, records propagate to
    ``erplatency`` so library users control handlers themselves.
    """
    name = str(run_name).strip().replace(" ", "_") or "run"
    logger = logging.getLogger(f"erplatency.run.{name}")
    if output_dir is None or logger.handlers:
        return logger

    logger.setLevel(logging.INFO)
    out_dir = Path(output_dir)
    out_dir.mkdir(parents=True, exist_ok=True)
    ts = datetime.now().strftime("%Y%m%d_%H%M%S")
    log_path = out_dir / f"{name}_{ts}.log"

    fh = logging.FileHandler(log_path, encoding="utf-8")
    fh.setFormatter(logging.Formatter("%(asctime)s | %(levelname)s | %(message)s"))
    logger.addHandler(fh)
    logger.propagate = False
    logger.info("Log file: %s", str(log_path))
    return logger


def close_run_logger(logger: logging.Logger) -> None:
    """Detach file handlers so a later run with the same name opens a new file."""
    for handler in list(logger.handlers):
        handler.close()
        logger.removeHandler(handler)
    logger.propagate = True


def log_section(logger: logging.Logger, title: Optional[str] = None, *, width: int = 72) -> None:
    line = "=" * int(width)
    if title:
        logger.info(line)
        logger.info("%s", str(title))
    logger.info(line)


def log_mapping(logger: logging.Logger, values: Mapping[str, Any]) -> None:
    """One ``key=value`` line per entry, in insertion order."""
    for key, value in values.items():
        logger.info("%s=%s", str(key), str(value))
