"""Best-effort status display.

``show`` is called after every state-affecting observation. Nothing here may
disturb sampling, so :func:`safe_show` swallows every error.
"""

from __future__ import annotations

import logging
import os
import tempfile
from pathlib import Path
from typing import Iterable, Optional, Union

logger = logging.getLogger(__name__)

__all__ = ["StatusDisplay", "LogStatusDisplay", "FileStatusDisplay", "MultiStatusDisplay", "safe_show"]


class StatusDisplay:
    def show(self, text: str) -> None:
        raise NotImplementedError


class LogStatusDisplay(StatusDisplay):
    """Writes status lines to the log, skipping unchanged text."""

    def __init__(self) -> None:
        self.last_text: Optional[str] = None

    def show(self, text: str) -> None:
        if text == self.last_text:
            return
        self.last_text = text
        logger.info("Status: %s", text)


class FileStatusDisplay(StatusDisplay):
    """Keeps the current status in a one-line text file (atomic replace)."""

    def __init__(self, path: Union[str, Path]) -> None:
        self.path = Path(path)

    def show(self, text: str) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(prefix=".status-", dir=str(self.path.parent))
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(text + "\n")
            os.replace(tmp, self.path)
        except OSError:
            try:
                os.unlink(tmp)
            except OSError:
                pass
            raise


class MultiStatusDisplay(StatusDisplay):
    def __init__(self, displays: Iterable[StatusDisplay]) -> None:
        self.displays = list(displays)

    def show(self, text: str) -> None:
        for display in self.displays:
            safe_show(display, text)


def safe_show(display: Optional[StatusDisplay], text: str) -> None:
    if display is None:
        return
    try:
        display.show(text)
    except Exception as e:
        logger.debug("Status display %r failed: %s", display, e)
