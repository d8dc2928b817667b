"""Reference rules, dynamic strings and meta filters.

Three explicit extension points replace the string-named filters a CMS
plugin would use:

- ``NestedReferenceRule`` -- how to find ids (or slugs) of embedded
  content inside a post body and how to write them back as placeholders.
- ``string_patterns()`` -- the node-specific strings (site url, upload url,
  theme) swapped for ``{{token}}`` placeholders so one export can be
  replayed on a node with a different domain.
- ``MetaTransformRegistry`` plus the meta blacklist -- which meta fields
  travel and how individual values are rewritten on the way out.

Rules are plain data and statically composable; callers pass their own
lists to the preparer instead of registering global callbacks.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Callable, Iterable
from urllib.parse import quote_plus

if TYPE_CHECKING:
    from ..core.context import NodeContext
    from .models import ExportOptions

logger = logging.getLogger(__name__)

# Joins the search parts of a rule; matches a numeric id or a slug.
ID_PATTERN = r"([\da-z\-\_]+?)"

_BACKREF = re.compile(r"\$(\d+)")


# ---------------------------------------------------------------------------
# Nested reference rules
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class NestedReferenceRule:
    """Locate references to other content inside a post body.

    Attributes:
        name: Identifier of the rule, used in log output.
        search: Regex fragments around the id.  Joined with ``ID_PATTERN``.
        replace: Replacement fragments around the placeholder.  ``$N``
            refers to group N of the search regex.
        post_type: Post type a slug match is looked up as.
        group: Regex group holding the id or slug.
    """

    name: str
    search: tuple[str, ...]
    replace: tuple[str, ...]
    post_type: str | None = None
    group: int = 2

    def __post_init__(self) -> None:
        if len(self.search) < 2 or len(self.replace) != len(self.search):
            raise ValueError(
                f"Rule '{self.name}' needs matching search/replace fragments"
            )

    @property
    def match_regex(self) -> re.Pattern:
        return re.compile(ID_PATTERN.join(self.search))

    def find(self, subject: str) -> list[str]:
        """Return every id or slug the rule finds in *subject*, in order."""
        found = []
        for match in self.match_regex.finditer(subject):
            try:
                value = match.group(self.group)
            except IndexError:
                logger.warning("Rule '%s' has no group %d", self.name, self.group)
                return []
            if value and value not in found:
                found.append(value)
        return found

    def substitute(self, subject: str, ref: str, placeholder: str) -> str:
        """Rewrite every occurrence of *ref* matched by the rule to *placeholder*."""
        pattern = re.compile(str(ref).join(self.search))
        template = _to_template(placeholder.join(self.replace))
        return pattern.sub(template, subject)


def _to_template(replacement: str) -> str:
    """Turn ``$1`` backreferences into the ``re.sub`` form."""
    escaped = replacement.replace("\\", "\\\\")
    return _BACKREF.sub(r"\\g<\1>", escaped)


DEFAULT_POST_RULES: tuple[NestedReferenceRule, ...] = (
    # Reusable blocks and patterns
    NestedReferenceRule(
        "core/reusable",
        ('<!-- wp:block {(.*?)"ref":', "}"),
        ('<!-- wp:block {$1"ref":', "}"),
        "wp_block",
    ),
    NestedReferenceRule(
        "core/pattern",
        ('<!-- wp:pattern {(.*?)"slug":"', '"'),
        ('<!-- wp:pattern {$1"slug":"', '"'),
        "wp_block",
    ),
    NestedReferenceRule(
        "core/template-part",
        ('<!-- wp:template-part {(.*?)"slug":"', '"'),
        ('<!-- wp:template-part {$1"slug":"', '"'),
        "wp_template_part",
    ),
    # Navigation menus
    NestedReferenceRule(
        "core/navigation",
        ('<!-- wp:navigation {(.*?)"ref":', "}"),
        ('<!-- wp:navigation {$1"ref":', "}"),
        "wp_navigation",
    ),
    NestedReferenceRule(
        "core/navigation-with-attributes",
        ('<!-- wp:navigation {(.*?)"ref":', ","),
        ('<!-- wp:navigation {$1"ref":', ","),
        "wp_navigation",
    ),
    NestedReferenceRule(
        "core/navigation-deprecated",
        ('<!-- wp:navigation {(.*?)"navigationMenuId":', "}"),
        ('<!-- wp:navigation {$1"navigationMenuId":', "}"),
        "wp_navigation",
    ),
    NestedReferenceRule(
        "core/navigation-deprecated-with-attributes",
        ('<!-- wp:navigation {(.*?)"navigationMenuId":', ","),
        ('<!-- wp:navigation {$1"navigationMenuId":', ","),
        "wp_navigation",
    ),
    # Media files
    NestedReferenceRule(
        "core/image",
        ('<!-- wp:image {(.*?)"id":', ","),
        ('<!-- wp:image {$1"id":', ","),
        "attachment",
    ),
    NestedReferenceRule(
        "core/image-class",
        ('class="([^"]*?)wp-image-', r'(\s|")'),
        ('class="$1wp-image-', "$2"),
        "attachment",
    ),
    NestedReferenceRule(
        "core/cover",
        ('<!-- wp:cover {(.*?)"id":', ","),
        ('<!-- wp:cover {$1"id":', ","),
        "attachment",
    ),
    NestedReferenceRule(
        "core/media-text",
        ('<!-- wp:media-text {(.*?)"mediaId":', ","),
        ('<!-- wp:media-text {$1"mediaId":', ","),
        "attachment",
    ),
    NestedReferenceRule(
        "core/file",
        ('<!-- wp:file {(.*?)"id":', ","),
        ('<!-- wp:file {$1"id":', ","),
        "attachment",
    ),
    NestedReferenceRule(
        "core/video",
        ('<!-- wp:video {([^}]*?)"id":', ","),
        ('<!-- wp:video {$1"id":', ","),
        "attachment",
    ),
)

# Term ids inside "taxQuery" and "advancedFilter" JSON are handled by the
# preparer directly; no regex rule is registered by default.
DEFAULT_TERM_RULES: tuple[NestedReferenceRule, ...] = ()


# ---------------------------------------------------------------------------
# Dynamic strings
# ---------------------------------------------------------------------------


def urlencode(value: str) -> str:
    """Encode like a form field: every reserved character, spaces as ``+``."""
    return quote_plus(value, safe="")


def string_patterns(ctx: NodeContext) -> dict[str, str]:
    """Return placeholder name -> node specific string.

    When only one of the two base urls uses https the other one is
    upgraded, so mixed configurations still produce matching strings.
    """
    site_url = ctx.site_url.rstrip("/")
    upload_url = ctx.upload_url.rstrip("/")

    site_https = site_url.startswith("https://")
    upload_https = upload_url.startswith("https://")
    if site_url and upload_url and site_https != upload_https:
        if site_https:
            upload_url = "https://" + upload_url.replace("http://", "", 1)
        else:
            site_url = "https://" + site_url.replace("http://", "", 1)

    upload_url_enc = urlencode(upload_url)
    site_url_enc = urlencode(site_url)

    patterns = {
        "upload_url": upload_url,
        "upload_url_enc": upload_url_enc,
        "upload_url_enc_twice": urlencode(upload_url_enc),
        "site_url": site_url,
        "site_url_enc": site_url_enc,
        "site_url_enc_twice": urlencode(site_url_enc),
        "theme": f'"{ctx.theme}"' if ctx.theme else "",
    }
    return {name: value for name, value in patterns.items() if value}


def replace_dynamic_strings(subject: str, patterns: dict[str, str]) -> str:
    """Swap node specific strings for ``{{name}}`` placeholders.

    Longer strings go first so the upload url is not cut up by the site
    url it starts with.
    """
    if not subject:
        return subject
    for name, value in sorted(patterns.items(), key=lambda kv: -len(kv[1])):
        subject = subject.replace(value, "{{" + name + "}}")
    return subject


def restore_dynamic_strings(subject: str, patterns: dict[str, str]) -> str:
    """Swap ``{{name}}`` placeholders back for this node's strings."""
    if not subject:
        return subject
    for name, value in patterns.items():
        subject = subject.replace("{{" + name + "}}", value)
    return subject


# ---------------------------------------------------------------------------
# Meta filtering
# ---------------------------------------------------------------------------

DEFAULT_META_BLACKLIST: tuple[str, ...] = (
    "_wp_attached_file",
    "_wp_attachment_metadata",
    "_edit_lock",
    "_edit_last",
    "_wp_old_slug",
    "_wp_old_date",
    "_wpb_vc_js_status",
)


def maybe_skip_meta(key: str, value: Any) -> bool:
    """Return True for values that never travel: empty strings and oembed caches."""
    if value == "":
        logger.debug("Skipped empty meta option '%s'", key)
        return True
    if key.startswith("_oembed_"):
        logger.debug("Skipped oembed option '%s'", key)
        return True
    return False


MetaTransform = Callable[[Any, int, "ExportOptions"], Any]


class MetaTransformRegistry:
    """Per-key transforms applied to meta values on export.

    Usage::

        registry = MetaTransformRegistry()
        registry.register("footnotes", lambda value, post_id, options: value.strip())
    """

    def __init__(self, blacklist: Iterable[str] = DEFAULT_META_BLACKLIST) -> None:
        self.blacklist: set[str] = set(blacklist)
        self._transforms: dict[str, list[MetaTransform]] = {}

    def register(self, key: str, transform: MetaTransform) -> None:
        self._transforms.setdefault(key, []).append(transform)

    def is_blacklisted(self, key: str) -> bool:
        return key in self.blacklist

    def apply(self, key: str, value: Any, post_id: int, options: ExportOptions) -> Any:
        for transform in self._transforms.get(key, ()):
            value = transform(value, post_id, options)
        return value
