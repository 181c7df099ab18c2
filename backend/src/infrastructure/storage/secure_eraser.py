"""Multi-pass secure erase of files on local disk.

erase() overwrites a file with cryptographically random bytes for a
configurable number of passes, then once with zeros, forcing each pass to
durable storage before unlinking the file. It is independent of database
state: the caller decides when a file may be erased and records progress.

Unlike archive building, failures are never swallowed. A file that might
still hold plaintext raises SecureDeleteError and must be retried.
"""

import logging
import os
from typing import Callable

from domain.lifecycle.errors import SecureDeleteError

logger = logging.getLogger(__name__)

DEFAULT_PASSES = 3

# Overwrite in bounded chunks so large attachments are not held in memory
CHUNK_SIZE = 1024 * 1024


class SecureEraser:
    """Overwrite-then-unlink file eraser.

    Args:
        passes: Number of random passes before the final zero pass
        random_source: Callable returning n cryptographically random bytes
    """

    def __init__(
        self,
        passes: int = DEFAULT_PASSES,
        random_source: Callable[[int], bytes] = os.urandom,
    ):
        if passes < 1:
            raise ValueError("passes must be >= 1")
        self.passes = passes
        self._random_source = random_source

    def erase(self, path: str) -> None:
        """Securely erase one file.

        No-op if the path does not exist, so retries are idempotent.

        Raises:
            SecureDeleteError: If the file cannot be opened, overwritten,
                flushed or unlinked
        """
        if not os.path.lexists(path):
            logger.debug(f"Secure erase skipped, path does not exist: {path}")
            return

        if os.path.islink(path):
            raise SecureDeleteError(path, "refusing to overwrite through a symlink")
        if os.path.isdir(path):
            raise SecureDeleteError(path, "path is a directory, use erase_directory")

        try:
            fd = os.open(path, os.O_RDWR)
        except OSError as e:
            raise SecureDeleteError(path, f"open failed: {e}") from e

        try:
            # Size is captured once; later growth or truncation is ignored
            size = os.fstat(fd).st_size

            for _ in range(self.passes):
                self._overwrite(fd, size, self._random_source)
            self._overwrite(fd, size, _zeros)

        except OSError as e:
            raise SecureDeleteError(path, f"overwrite failed: {e}") from e
        finally:
            try:
                os.close(fd)
            except OSError:
                logger.warning(f"Closing {path} after overwrite failed", exc_info=True)

        try:
            os.unlink(path)
        except FileNotFoundError:
            pass
        except OSError as e:
            raise SecureDeleteError(path, f"unlink failed: {e}") from e

        logger.info(
            f"Securely deleted: {path}",
            extra={"path": path, "size_bytes": size, "passes": self.passes + 1},
        )

    def erase_directory(self, dir_path: str) -> None:
        """Securely erase every file below dir_path, then remove the directories.

        Symlinks are unlinked without touching their targets.

        Raises:
            SecureDeleteError: On the first file that cannot be erased
        """
        if not os.path.lexists(dir_path):
            return

        for root, dirs, files in os.walk(dir_path, topdown=False):
            for name in files:
                file_path = os.path.join(root, name)
                if os.path.islink(file_path):
                    self._unlink(file_path)
                else:
                    self.erase(file_path)
            for name in dirs:
                sub_path = os.path.join(root, name)
                if os.path.islink(sub_path):
                    self._unlink(sub_path)
                else:
                    self._rmdir(sub_path)

        self._rmdir(dir_path)
        logger.info(f"Securely deleted directory: {dir_path}")

    def _overwrite(self, fd: int, size: int, source: Callable[[int], bytes]) -> None:
        """One full pass over the first `size` bytes, flushed to disk."""
        os.lseek(fd, 0, os.SEEK_SET)
        remaining = size
        while remaining > 0:
            chunk = source(min(CHUNK_SIZE, remaining))
            view = memoryview(chunk)
            while view:
                written = os.write(fd, view)
                view = view[written:]
            remaining -= len(chunk)
        os.fsync(fd)

    @staticmethod
    def _unlink(path: str) -> None:
        try:
            os.unlink(path)
        except OSError as e:
            raise SecureDeleteError(path, f"unlink failed: {e}") from e

    @staticmethod
    def _rmdir(path: str) -> None:
        try:
            os.rmdir(path)
        except OSError as e:
            raise SecureDeleteError(path, f"rmdir failed: {e}") from e


def _zeros(n: int) -> bytes:
    return bytes(n)
