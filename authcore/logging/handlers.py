"""File handler for log streams that may hold full client addresses."""

from __future__ import annotations

import os
from contextlib import suppress
from logging.handlers import WatchedFileHandler
from typing import TextIO

_OWNER_ONLY = 0o600


class SecureWatchedFileHandler(WatchedFileHandler):
    """Append to a log file that only its owner may read.

    The file is created with owner-only permissions rather than tightened
    after the fact, and an existing file is narrowed on every reopen (for
    instance after logrotate moved the old one away).
    """

    def _open(self) -> TextIO:  # noqa: D401
        truncate = "w" in self.mode
        flags = os.O_WRONLY | os.O_CREAT | (os.O_TRUNC if truncate else os.O_APPEND)
        fd = os.open(self.baseFilename, flags, _OWNER_ONLY)
        # fchmod is missing on some platforms and refused by some filesystems.
        with suppress(AttributeError, OSError):
            os.fchmod(fd, _OWNER_ONLY)
        return os.fdopen(
            fd, "w" if truncate else "a", encoding=self.encoding, errors=self.errors
        )
