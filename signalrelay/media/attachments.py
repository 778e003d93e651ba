"""Locate signal-cli's stored attachments on disk."""

from pathlib import Path

from loguru import logger


def find_attachment_file(attachments_dir: Path, attachment_id: str) -> Path | None:
    """Return the stored file for *attachment_id*, or None.

    signal-cli saves attachments as ``<id>.<ext>`` (or bare ``<id>``). The
    directory listing is matched on the full id followed by a dot, so a short
    id never resolves to a longer id that merely starts with it.
    """
    if not attachment_id:
        return None
    try:
        entries = sorted(attachments_dir.iterdir())
    except OSError as e:
        logger.debug(f"Attachment directory unavailable ({attachments_dir}): {e}")
        return None

    for entry in entries:
        name = entry.name
        if name == attachment_id or name.startswith(f"{attachment_id}."):
            if entry.is_file():
                return entry
    return None


def container_path_for(container_dir: str, filename: str) -> str:
    """Path of an attachment as seen from inside the agent container."""
    return f"{container_dir.rstrip('/')}/{filename}"
