"""Zip archive format for offline transfers.

An archive holds::

    posts.json        prepared set, keyed by origin post id
    media/<name>      one file per attachment in the set

``write_archive()`` builds it, ``read_archive()`` unpacks and validates it
for the importer.
"""

from __future__ import annotations

import json
import logging
import re
import shutil
import tempfile
import zipfile
from contextlib import contextmanager
from datetime import date
from pathlib import Path, PurePosixPath
from typing import Iterator

from ..errors import ArchiveError
from .models import PreparedPost

logger = logging.getLogger(__name__)

POSTS_FILE = "posts.json"
MEDIA_DIR = "media"

# Friendlier labels for well known post types in archive names.
_TYPE_LABELS = {
    "post": "post",
    "page": "page",
    "attachment": "media_file",
    "wp_block": "block",
    "wp_template": "template",
    "wp_template_part": "template_part",
    "wp_navigation": "navigation",
}


def _clean_part(value: str) -> str:
    return re.sub(r"[^a-z_]", "", re.sub(r"-+", "_", value).lower())


def archive_filename(
    posts: dict[int, PreparedPost],
    site_name: str,
    root_ids: list[int] | None = None,
    today: date | None = None,
) -> str:
    """Build ``<post-name>-<type>-<site-name>-<YYYY-MM-DD>.zip``.

    The post name is only part of the name when the set has a single
    root; bulk exports are named by their pluralized type.
    """
    today = today or date.today()
    if not posts:
        return f"post-export-{today.isoformat()}.zip"

    roots = [posts[i] for i in (root_ids or []) if i in posts]
    first = roots[0] if roots else next(iter(posts.values()))
    bulk = len(roots) > 1

    parts = []
    if not bulk:
        parts.append(first.post_name)
    label = _TYPE_LABELS.get(first.post_type, first.post_type)
    parts.append(label + ("s" if bulk else ""))
    parts.append(site_name)

    cleaned = [_clean_part(p) for p in parts]
    cleaned.append(today.isoformat())
    return "-".join(p for p in cleaned if p) + ".zip"


def write_archive(
    posts: dict[int, PreparedPost],
    target_dir: Path,
    site_name: str = "",
    root_ids: list[int] | None = None,
    today: date | None = None,
) -> Path | None:
    """Write *posts* and their media into a zip under ``target_dir/YYYY-MM``.

    Returns:
        Path of the archive, or None when anything on disk failed.  A
        partially written archive is removed.
    """
    today = today or date.today()
    folder = Path(target_dir) / today.strftime("%Y-%m")
    zip_path = folder / archive_filename(posts, site_name, root_ids, today)
    logger.info("Write export archive '%s'", zip_path)

    payload = {
        str(post_id): post.model_dump(mode="json") for post_id, post in posts.items()
    }

    try:
        folder.mkdir(parents=True, exist_ok=True)
        if zip_path.exists():
            zip_path.unlink()
        with zipfile.ZipFile(zip_path, "w", compression=zipfile.ZIP_DEFLATED) as zf:
            zf.writestr(POSTS_FILE, json.dumps(payload, indent=4, ensure_ascii=False))
            zf.writestr(f"{MEDIA_DIR}/", "")
            for post in posts.values():
                if post.media is None or not post.media.path:
                    continue
                source = Path(post.media.path)
                if not source.is_file():
                    logger.warning(
                        "  - file '%s' of post %d is missing, not archived",
                        source,
                        post.ID,
                    )
                    continue
                zf.write(source, f"{MEDIA_DIR}/{post.media.name}")
    except OSError as e:
        logger.error("Could not write archive '%s': %s", zip_path, e)
        try:
            zip_path.unlink()
        except OSError:
            pass
        return None

    return zip_path


def _safe_members(zf: zipfile.ZipFile) -> list[zipfile.ZipInfo]:
    members = []
    for info in zf.infolist():
        name = PurePosixPath(info.filename)
        if name.is_absolute() or ".." in name.parts:
            raise ArchiveError(f"Archive member '{info.filename}' escapes the archive")
        members.append(info)
    return members


def read_archive(
    path: Path, extract_to: Path | None = None
) -> tuple[dict[int, PreparedPost], Path]:
    """Unpack an archive and load its prepared set.

    Args:
        path: The zip file.
        extract_to: Directory to unpack into.  A fresh temp directory is
            used when omitted; the caller owns it afterwards.  It is removed
            again when the archive is rejected.

    Returns:
        ``(posts, media_dir)``.

    Raises:
        ArchiveError: If the file is not a zip or ``posts.json`` is
            missing or invalid.
    """
    if extract_to:
        return _load_archive(path, Path(extract_to))

    target = Path(tempfile.mkdtemp(prefix="contentsync-"))
    try:
        return _load_archive(path, target)
    except ArchiveError:
        shutil.rmtree(target, ignore_errors=True)
        raise


def _load_archive(path: Path, target: Path) -> tuple[dict[int, PreparedPost], Path]:
    try:
        with zipfile.ZipFile(path) as zf:
            zf.extractall(target, members=_safe_members(zf))
    except (zipfile.BadZipFile, OSError) as e:
        raise ArchiveError(f"Could not open archive '{path}': {e}") from e

    posts_file = target / POSTS_FILE
    if not posts_file.is_file():
        raise ArchiveError(f"Archive '{path}' has no {POSTS_FILE}")

    try:
        with open(posts_file, encoding="utf-8") as fh:
            raw = json.load(fh)
    except ValueError as e:
        raise ArchiveError(f"{POSTS_FILE} in '{path}' is not valid JSON") from e
    if not isinstance(raw, dict):
        raise ArchiveError(f"{POSTS_FILE} in '{path}' is not a map of posts")

    try:
        posts = {int(k): PreparedPost.model_validate(v) for k, v in raw.items()}
    except (ValueError, TypeError) as e:
        raise ArchiveError(f"{POSTS_FILE} in '{path}' holds invalid posts: {e}") from e

    return posts, target / MEDIA_DIR


@contextmanager
def open_archive(path: Path) -> Iterator[tuple[dict[int, PreparedPost], Path]]:
    """``read_archive()`` into a temp directory that is removed afterwards."""
    target = Path(tempfile.mkdtemp(prefix="contentsync-"))
    try:
        yield read_archive(path, extract_to=target)
    finally:
        shutil.rmtree(target, ignore_errors=True)
