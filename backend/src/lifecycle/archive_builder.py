"""Archive builder - produces the export zip for one group.

The archive holds:
- chat_history.txt: header plus one "[timestamp] sender: text" entry per
  message, streamed into the zip while messages are fetched in creation order
- files/<original filename>: every attachment that could be read

Attachment failures (missing or unreadable file, undecryptable path) are
logged and skipped. Database failures abort the whole archive with
ArchiveError and remove the partial file.

The returned digest is computed from the bytes on disk after the archive is
closed, so it matches exactly what recipients receive.
"""

import glob
import hashlib
import io
import logging
import os
import re
import shutil
import zipfile
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional, Set
from uuid import UUID

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from domain.lifecycle.errors import ArchiveError, CryptoError, SecureDeleteError
from domain.lifecycle.ports import Clock, SystemClock
from infrastructure.encryption.content_cipher import ContentCipher
from models.attachment import Attachment
from models.group import Group
from models.message import Message
from models.user import User

logger = logging.getLogger(__name__)

TRANSCRIPT_NAME = "chat_history.txt"
FILES_PREFIX = "files/"
UNDECRYPTABLE_PLACEHOLDER = "[UNABLE TO DECRYPT MESSAGE]"
EMPTY_CONTENT_PLACEHOLDER = "[File/Media]"
FETCH_BATCH_SIZE = 200
HASH_CHUNK_SIZE = 64 * 1024


@dataclass
class ArchiveResult:
    """Outcome of a successful archive build.

    Attributes:
        group_id: Group the archive was built for
        group_name: Group name at export time
        path: Final archive location
        sha256: Hex digest of the archive bytes on disk
        size_bytes: Archive size
        message_count: Transcript entries written
        file_count: Attachments included under files/
        skipped_files: Attachment ids left out because they could not be read
    """
    group_id: UUID
    group_name: str
    path: str
    sha256: str
    size_bytes: int
    message_count: int = 0
    file_count: int = 0
    skipped_files: List[UUID] = field(default_factory=list)


def file_sha256(path: str) -> str:
    """SHA-256 hex digest of a file, read from disk in chunks."""
    digest = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(HASH_CHUNK_SIZE), b""):
            digest.update(chunk)
    return digest.hexdigest()


def safe_archive_name(name: str) -> str:
    """Filesystem-safe version of a group name for the archive file name.

    Example:
        >>> safe_archive_name('Trip / Berlin 2025')
        'Trip_Berlin_2025'
    """
    name = re.sub(r"[^\w.-]", "_", name)
    name = re.sub(r"_+", "_", name).strip("._")
    return name[:100] or "group"


def archive_file_name(group_name: str, group_id: UUID, tag: Optional[str] = None) -> str:
    """Archive file name for a group.

    Sweep exports are named by group id alone, so a retry after a crash
    lands on the same path and leftovers are easy to find.
    """
    stem = f"{safe_archive_name(group_name)}_{group_id.hex}"
    if tag:
        stem = f"{stem}_{tag}"
    return stem + ".zip"


def stale_archives(export_dir: str, group_id: UUID) -> List[str]:
    """Sweep archives and partial archives of a group left in export_dir."""
    pattern = os.path.join(glob.escape(export_dir), f"*_{group_id.hex}.zip")
    return sorted(glob.glob(pattern) + glob.glob(pattern + ".part"))


def attachment_entry_name(file_name: str, attachment_id: UUID, used: Set[str]) -> str:
    """Archive entry for an attachment, keeping the original filename.

    Path components are dropped so an entry can never escape files/.
    Clashing names get the attachment id prefixed.
    """
    base = os.path.basename(file_name.replace("\\", "/")).strip() or str(attachment_id)
    entry = FILES_PREFIX + base
    if entry in used:
        entry = f"{FILES_PREFIX}{attachment_id.hex[:8]}_{base}"
    used.add(entry)
    return entry


def format_transcript_line(created_at: datetime, sender: str, text: str) -> str:
    """One transcript entry. Continuation lines are indented so every
    entry starts with exactly one "[" line."""
    stamp = created_at.strftime("%Y-%m-%d %H:%M:%S")
    text = text.replace("\r\n", "\n").replace("\n", "\n    ")
    return f"[{stamp}] {sender}: {text}\n"


class ArchiveBuilder:
    """Builds the export archive for a group.

    Args:
        cipher: Content cipher used to decrypt message content and file paths
        export_dir: Directory receiving finished archives
        clock: Time source for the export date
        eraser: Optional secure eraser used to remove partial archives,
            which contain decrypted content
    """

    def __init__(
        self,
        cipher: ContentCipher,
        export_dir: str,
        clock: Optional[Clock] = None,
        eraser=None,
    ):
        self.cipher = cipher
        self.export_dir = export_dir
        self.clock = clock or SystemClock()
        self.eraser = eraser

    def build(self, session: Session, group_id: UUID, tag: Optional[str] = None) -> ArchiveResult:
        """Build the archive for one group.

        Args:
            session: Database session, used read-only
            group_id: Group to export
            tag: Extra file name part for archives built outside the sweep

        Returns:
            ArchiveResult with the final path and on-disk digest

        Raises:
            ArchiveError: If the group or its messages cannot be read, or the
                archive cannot be written
        """
        try:
            group = session.get(Group, group_id)
        except SQLAlchemyError as e:
            raise ArchiveError(f"Failed to load group {group_id}: {e}", group_id) from e
        if group is None:
            raise ArchiveError(f"Group {group_id} not found", group_id)

        now = self.clock.now()
        file_name = archive_file_name(group.name, group.id, tag)
        final_path = os.path.join(self.export_dir, file_name)
        partial_path = final_path + ".part"

        result = ArchiveResult(
            group_id=group.id,
            group_name=group.name,
            path=final_path,
            sha256="",
            size_bytes=0,
        )

        renamed = False
        try:
            os.makedirs(self.export_dir, exist_ok=True)
            with zipfile.ZipFile(
                partial_path, "w", compression=zipfile.ZIP_DEFLATED, compresslevel=9
            ) as zf:
                result.message_count = self._write_transcript(zf, session, group, now)
                self._write_attachments(zf, session, group, result)

            with open(partial_path, "rb+") as f:
                os.fsync(f.fileno())
            os.replace(partial_path, final_path)
            renamed = True

            result.sha256 = file_sha256(final_path)
            result.size_bytes = os.path.getsize(final_path)

        except SQLAlchemyError as e:
            self._discard(final_path if renamed else partial_path)
            raise ArchiveError(
                f"Failed to fetch content for group {group_id}: {e}", group_id
            ) from e
        except OSError as e:
            self._discard(final_path if renamed else partial_path)
            raise ArchiveError(f"Failed to write archive for group {group_id}: {e}", group_id) from e

        logger.info(
            f"Built export archive for group {group_id}",
            extra={
                "group_id": str(group_id),
                "path": final_path,
                "messages": result.message_count,
                "files": result.file_count,
                "skipped_files": len(result.skipped_files),
            },
        )
        return result

    def _write_transcript(self, zf: zipfile.ZipFile, session: Session, group: Group, now: datetime) -> int:
        """Stream the transcript into the archive; returns the entry count."""
        count = 0
        with zf.open(TRANSCRIPT_NAME, "w") as raw:
            out = io.TextIOWrapper(raw, encoding="utf-8", newline="\n")
            out.write(f"DropDeck Chat Export: {group.name}\n")
            out.write(f"Export Date: {now.strftime('%Y-%m-%d %H:%M:%S %Z').strip()}\n")
            out.write("=" * 60 + "\n\n")

            rows = (
                session.query(Message, User.name)
                .join(User, Message.user_id == User.id)
                .filter(Message.group_id == group.id)
                .order_by(Message.created_at.asc(), Message.id.asc())
                .yield_per(FETCH_BATCH_SIZE)
            )
            for message, sender in rows:
                out.write(format_transcript_line(message.created_at, sender, self._message_text(message)))
                count += 1

            out.flush()
            out.detach()
        return count

    def _message_text(self, message: Message) -> str:
        if not message.content:
            return EMPTY_CONTENT_PLACEHOLDER
        try:
            return self.cipher.decrypt(message.content) or EMPTY_CONTENT_PLACEHOLDER
        except CryptoError:
            logger.warning(
                f"Could not decrypt message {message.id} for export",
                extra={"group_id": str(message.group_id), "message_id": str(message.id)},
            )
            return UNDECRYPTABLE_PLACEHOLDER

    def _write_attachments(self, zf: zipfile.ZipFile, session: Session, group: Group, result: ArchiveResult) -> None:
        attachments = (
            session.query(Attachment)
            .join(Message, Attachment.message_id == Message.id)
            .filter(Message.group_id == group.id)
            .order_by(Attachment.uploaded_at.asc(), Attachment.id.asc())
            .all()
        )

        used_names: Set[str] = set()
        for attachment in attachments:
            # Source-side failures skip the attachment; archive write failures
            # below propagate and abort the build.
            try:
                source_path = self.cipher.decrypt(attachment.file_path)
                src = open(source_path, "rb")
            except (CryptoError, OSError) as e:
                result.skipped_files.append(attachment.id)
                logger.warning(
                    f"Skipping attachment {attachment.id} in export: {e}",
                    extra={
                        "group_id": str(group.id),
                        "attachment_id": str(attachment.id),
                        "error": str(e),
                    },
                )
                continue

            with src:
                entry = attachment_entry_name(attachment.file_name, attachment.id, used_names)
                with zf.open(entry, "w", force_zip64=True) as dest:
                    shutil.copyfileobj(src, dest, HASH_CHUNK_SIZE)
            result.file_count += 1

    def _discard(self, path: str) -> None:
        """Remove an archive that will not be handed out."""
        if not os.path.lexists(path):
            return
        try:
            if self.eraser is not None:
                self.eraser.erase(path)
            else:
                os.remove(path)
        except (SecureDeleteError, OSError):
            logger.error(f"Failed to remove unfinished archive {path}", exc_info=True)
