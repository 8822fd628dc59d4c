# -*- coding: utf-8 -*-
"""
Logging helpers shared by the CLI and the pipeline runner.

All loggers live under the ``q2_monitor`` namespace so a single call to
:func:`setup_logging` configures the library modules as well.
"""

from __future__ import annotations

import logging
import os
import sys
import time
from pathlib import Path
from typing import Optional

import psutil


LOGGER_NAME = "q2_monitor"

# Wall-clock start for elapsed logging
_PROCESS_START_TIME = time.time()


def setup_logging(
    *,
    out_dir: Optional[Path] = None,
    run_label: Optional[str] = None,
    verbose: bool = False,
) -> logging.Logger:
    """
    Configure logging to stderr (human) and optionally to a file (machine).

    The file log captures DEBUG+ with timestamps; the stderr stream shows
    INFO+ (DEBUG+ when ``verbose``) with compact formatting.

    Parameters
    ----------
    out_dir : pathlib.Path, optional
        If given, ``<out_dir>/run_debug.log`` receives a DEBUG-level copy.
    run_label : str, optional
        Identifier for the run; written in the banner lines.
    verbose : bool
        Show DEBUG messages on stderr.

    Returns
    -------
    logging.Logger
        Configured ``q2_monitor`` logger.
    """
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(logging.DEBUG)
    # Avoid duplicate handlers if reinitialised
    logger.handlers.clear()
    logger.propagate = False

    stream_handler = logging.StreamHandler(stream=sys.stderr)
    stream_handler.setLevel(logging.DEBUG if verbose else logging.INFO)
    stream_handler.setFormatter(logging.Formatter("%(levelname)s: %(message)s"))
    logger.addHandler(stream_handler)

    if out_dir is not None:
        out_dir = Path(out_dir)
        out_dir.mkdir(parents=True, exist_ok=True)
        log_file = out_dir / "run_debug.log"
        file_handler = logging.FileHandler(filename=log_file, mode="a", encoding="utf-8")
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(
            logging.Formatter("%(asctime)s | %(levelname)s | %(name)s | %(message)s")
        )
        logger.addHandler(file_handler)
        logger.debug("Debug log: %s", log_file)

    if run_label:
        logger.info("Run label: %s", run_label)
    logger.debug("Python version: %s", " ".join(map(str, sys.version_info)))
    logger.debug("Command line: %s", " ".join(sys.argv))
    return logger


def log_section(*, logger: logging.Logger, title: str) -> None:
    """Emit a visible section divider in logs."""
    sep = "=" * max(10, min(80, len(title) + 8))
    logger.info("%s", sep)
    logger.info("== %s ==", title)
    logger.info("%s", sep)


def log_memory_usage(
    logger: logging.Logger,
    prefix: str = "",
    extra_msg: Optional[str] = None,
) -> None:
    """
    Log resident memory of the monitoring process itself plus elapsed time.

    This is the controller's own footprint, not a step's; step memory is
    measured by :class:`q2_monitor.sampler.ResourceSampler`.
    """
    parts = []
    if prefix:
        parts.append(prefix.strip())
    try:
        rss_gb = psutil.Process(os.getpid()).memory_info().rss / (1024 ** 3)
        parts.append(f"RAM: {rss_gb:.2f} GB")
    except psutil.Error as err:
        logger.debug("Could not read own RSS: %s", err)

    elapsed_min = max(0.0, time.time() - _PROCESS_START_TIME) / 60.0
    parts.append(f"Elapsed: {elapsed_min:.1f} min")
    if extra_msg:
        parts.append(extra_msg)
    logger.info(" | ".join(parts))
