"""Content preparer: turn one stored post into a transfer-ready unit.

``ContentPreparer.prepare()`` snapshots a post of one node and makes it
portable:

1. native fields are copied;
2. references to other posts inside the body become ``{{id}}``
   placeholders (``NestedReferenceRule`` list plus the ``advancedFilter``
   JSON fragments of query blocks) and front-end links to them become
   ``{{id-front-url}}``;
3. term references become ``{{t_id}}`` (term rules, ``taxQuery`` and
   ``advancedFilter`` taxonomy filters), with parent chains resolved;
4. node specific strings (site url, upload url, theme) become
   ``{{token}}`` placeholders;
5. meta is projected through the blacklist and the meta transforms;
6. assigned terms are projected with their parents nested inline;
7. attachments record their file;
8. the language is described by the translation registry;
9. navigation links are turned into custom links;
10. parent and children are recorded by name and type.

Only a missing post makes ``prepare()`` return ``None``; every other
lookup failure is logged and the original text is left in place.
"""

from __future__ import annotations

import json
import logging
import re
from pathlib import PurePosixPath
from typing import TYPE_CHECKING, Any, Iterable

from .models import (
    META_GID,
    SYNC_META_KEYS,
    ExportOptions,
    HierarchyInfo,
    HierarchyRef,
    MediaInfo,
    NestedRef,
    NestedTerm,
    PostRecord,
    PreparedPost,
    TermRecord,
)
from .patterns import (
    DEFAULT_POST_RULES,
    DEFAULT_TERM_RULES,
    MetaTransformRegistry,
    NestedReferenceRule,
    maybe_skip_meta,
    replace_dynamic_strings,
    string_patterns,
)
from .translations import TranslationRegistry

if TYPE_CHECKING:
    from ..core.context import NodeContext

logger = logging.getLogger(__name__)

_ADVANCED_FILTER = re.compile(r'"advancedFilter":(\[.*\])')
_TAX_QUERY = re.compile(r'"taxQuery":(\{.*?\})')
_NAVIGATION_BLOCK = re.compile(r"<!-- wp:(navigation-[a-zA-Z-]+) (.*?) (\/-->|-->)")

# Meta that only makes sense on the node that wrote it.
_LOCAL_ONLY_META = tuple(k for k in SYNC_META_KEYS if k != META_GID)

TAXONOMY_SETTINGS_KEY = "posttype_settings"


def _is_numeric(value: Any) -> bool:
    if isinstance(value, bool):
        return False
    if isinstance(value, int):
        return True
    return isinstance(value, str) and value.strip().isdigit()


def _encode_json_fragment(data: Any) -> str:
    """Compact JSON with placeholders unquoted, e.g. ``[{{12}}]``."""
    encoded = json.dumps(data, separators=(",", ":"), ensure_ascii=False)
    return encoded.replace('"{{', "{{").replace('}}"', "}}")


def strip_scaled(value: str) -> str:
    """Remove the ``-scaled`` marker of downsized originals."""
    return value.replace("-scaled.", ".")


class ContentPreparer:
    """Prepare posts of one node for export.

    Args:
        ctx: Node the posts live on.
        translations: Registry describing post languages.
        post_rules: Rules for nested post references.
        term_rules: Rules for nested term references.
        meta_transforms: Blacklist and per-key transforms for meta.
    """

    def __init__(
        self,
        ctx: NodeContext,
        translations: TranslationRegistry | None = None,
        post_rules: Iterable[NestedReferenceRule] = DEFAULT_POST_RULES,
        term_rules: Iterable[NestedReferenceRule] = DEFAULT_TERM_RULES,
        meta_transforms: MetaTransformRegistry | None = None,
    ) -> None:
        self.ctx = ctx
        self.store = ctx.store
        self.translations = translations or TranslationRegistry()
        self.post_rules = tuple(post_rules)
        self.term_rules = tuple(term_rules)
        self.meta_transforms = meta_transforms or MetaTransformRegistry()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def prepare(
        self, post: int | PostRecord, options: ExportOptions | None = None
    ) -> PreparedPost | None:
        """Build the prepared unit of *post*, or ``None`` if it does not exist."""
        record = post if isinstance(post, PostRecord) else self.store.get(post)
        if record is None:
            logger.info("Post %s not found on node %d", post, self.ctx.node_id)
            return None

        options = options or ExportOptions()
        logger.info(
            "Preparing post %d '%s' on node %d",
            record.ID,
            record.post_title,
            self.ctx.node_id,
        )

        content = record.post_content
        content, nested = self._prepare_nested_posts(record.ID, content)
        content, nested_terms = self._prepare_nested_terms(content)

        patterns = string_patterns(self.ctx)
        content = replace_dynamic_strings(content, patterns)
        excerpt = replace_dynamic_strings(record.post_excerpt, patterns)

        if options.resolve_menus:
            content = self._resolve_menus(content)

        return PreparedPost(
            **{
                **record.model_dump(),
                "post_content": content,
                "post_excerpt": excerpt,
            },
            meta=self._prepare_meta(record.ID, options),
            terms=self._prepare_terms(record.ID),
            nested=nested,
            nested_terms=nested_terms,
            media=self._prepare_media(record),
            language=self.translations.language_for(
                self.ctx, record, include_translations=options.translations
            ),
            post_hierarchy=(
                self._prepare_hierarchy(record) if options.append_nested else None
            ),
            export_arguments=options,
        )

    # ------------------------------------------------------------------
    # Nested posts
    # ------------------------------------------------------------------

    def _resolve_ref(self, ref: str, post_type: str | None) -> PostRecord | None:
        if _is_numeric(ref):
            return self.store.get(int(ref))
        if post_type:
            return self.store.find_by(ref, post_type)
        return None

    def _prepare_nested_posts(
        self, post_id: int, content: str
    ) -> tuple[str, dict[int, NestedRef]]:
        found: dict[int, PostRecord] = {}
        if not content:
            return content, {}

        for rule in self.post_rules:
            for ref in rule.find(content):
                nested_post = self._resolve_ref(ref, rule.post_type)
                if nested_post is None:
                    logger.info(
                        "  - %s: post with id or name '%s' could not be found",
                        rule.name,
                        ref,
                    )
                    continue
                content = rule.substitute(content, ref, "{{%d}}" % nested_post.ID)
                found.setdefault(nested_post.ID, nested_post)

        content = self._replace_advanced_filter_posts(content, found)

        nested: dict[int, NestedRef] = {}
        for nested_id, nested_post in found.items():
            if nested_post.post_type == "attachment":
                front_url = strip_scaled(self.store.attachment_url(nested_id))
            else:
                front_url = self.store.permalink(nested_id)
                if front_url:
                    content = content.replace(front_url, "{{%d-front-url}}" % nested_id)
            nested[nested_id] = NestedRef(
                ID=nested_id,
                post_name=nested_post.post_name,
                post_type=nested_post.post_type,
                front_url=front_url,
            )
            logger.debug(
                "  - nested %s '%s' (%d) attached to post %d",
                nested_post.post_type,
                nested_post.post_name,
                nested_id,
                post_id,
            )
        return content, nested

    def _replace_advanced_filter_posts(
        self, content: str, found: dict[int, PostRecord]
    ) -> str:
        for match in _ADVANCED_FILTER.findall(content):
            try:
                filters = json.loads(match)
            except ValueError:
                logger.debug("  - advancedFilter fragment is not valid JSON")
                continue
            if not isinstance(filters, list):
                continue

            changed = False
            for item in filters:
                if not isinstance(item, dict) or item.get("name") != "include":
                    continue
                includes = item.get("include") or []
                for i, ref in enumerate(includes):
                    if not _is_numeric(ref):
                        continue
                    nested_post = self.store.get(int(ref))
                    if nested_post is None:
                        logger.info("  - included post '%s' could not be found", ref)
                        continue
                    includes[i] = "{{%d}}" % nested_post.ID
                    found.setdefault(nested_post.ID, nested_post)
                    changed = True
            if changed:
                content = content.replace(match, _encode_json_fragment(filters))
        return content

    # ------------------------------------------------------------------
    # Nested terms
    # ------------------------------------------------------------------

    def _prepare_nested_terms(self, content: str) -> tuple[str, dict[int, NestedTerm]]:
        if not content:
            return content, {}

        term_ids: list[int] = []

        for rule in self.term_rules:
            for ref in rule.find(content):
                if not _is_numeric(ref) or int(ref) in (0, -1):
                    continue
                content = rule.substitute(content, ref, "{{t_%s}}" % ref)
                term_ids.append(int(ref))

        for match in _TAX_QUERY.findall(content):
            try:
                query = json.loads(match)
            except ValueError:
                continue
            if not isinstance(query, dict):
                continue
            changed = False
            for taxonomy, ids in query.items():
                if not isinstance(ids, list):
                    continue
                for i, term_id in enumerate(ids):
                    if not _is_numeric(term_id) or int(term_id) == 0:
                        continue
                    ids[i] = "{{t_%d}}" % int(term_id)
                    term_ids.append(int(term_id))
                    changed = True
            if changed:
                content = content.replace(match, _encode_json_fragment(query))

        for match in _ADVANCED_FILTER.findall(content):
            try:
                filters = json.loads(match)
            except ValueError:
                continue
            if not isinstance(filters, list):
                continue
            changed = False
            for item in filters:
                if not isinstance(item, dict) or item.get("name") != "taxonomy":
                    continue
                terms = item.get("terms") or []
                for i, term_id in enumerate(terms):
                    if not _is_numeric(term_id) or int(term_id) == 0:
                        continue
                    terms[i] = "{{t_%d}}" % int(term_id)
                    term_ids.append(int(term_id))
                    changed = True
            if changed:
                content = content.replace(match, _encode_json_fragment(filters))

        nested_terms: dict[int, NestedTerm] = {}
        for term_id in dict.fromkeys(term_ids):
            term = self.store.get_term(term_id)
            if term is None:
                logger.info("  - term with id '%d' could not be found", term_id)
                continue
            data = self._term_with_parents(term, set())
            nested_terms[term_id] = NestedTerm(
                term_id=term.term_id,
                slug=term.slug,
                taxonomy=term.taxonomy,
                name=term.name,
                parent=data["parent"],
            )
        return content, nested_terms

    def _term_with_parents(self, term: TermRecord, prepared: set[int]) -> dict[str, Any]:
        """Return *term* as a dict whose ``parent`` is the nested parent term.

        Parents that are part of *prepared* stay plain ids; the importer
        maps those itself.
        """
        data = term.model_dump()
        seen = {term.term_id}
        current = data
        while current["parent"] and current["parent"] not in prepared:
            if current["parent"] in seen:
                logger.warning("Term %d has a parent cycle", term.term_id)
                current["parent"] = 0
                break
            parent = self.store.get_term(current["parent"])
            if parent is None:
                break
            seen.add(parent.term_id)
            current["parent"] = parent.model_dump()
            current = current["parent"]
        return data

    # ------------------------------------------------------------------
    # Meta, terms, media
    # ------------------------------------------------------------------

    def _prepare_meta(self, post_id: int, options: ExportOptions) -> dict[str, list[Any]]:
        meta: dict[str, list[Any]] = {}
        for key, values in self.store.get_meta(post_id).items():
            if self.meta_transforms.is_blacklisted(key) or key in _LOCAL_ONLY_META:
                continue
            for value in values:
                if maybe_skip_meta(key, value):
                    continue
                value = self.meta_transforms.apply(key, value, post_id, options)
                meta.setdefault(key, []).append(value)
        return meta

    def _prepare_terms(self, post_id: int) -> dict[str, list[dict[str, Any]]]:
        settings = self.store.get_meta_value(post_id, TAXONOMY_SETTINGS_KEY)
        if isinstance(settings, dict) and settings.get("is_taxonomy"):
            taxonomy = str(settings.get("slug") or "")
            if not taxonomy:
                return {}
            terms = self.store.taxonomy_terms(taxonomy)
            logger.debug("  - %d terms of taxonomy '%s' prepared", len(terms), taxonomy)
            return {taxonomy: [t.model_dump() for t in terms]}

        theme = self.ctx.theme
        prepared: dict[str, list[dict[str, Any]]] = {}
        for taxonomy, terms in self.store.get_terms(post_id).items():
            ids = {t.term_id for t in terms}
            items = []
            for term in terms:
                data = self._term_with_parents(term, ids)
                if theme and data["name"] == theme:
                    data["name"] = "{{theme}}"
                if theme and data["slug"] == theme:
                    data["slug"] = "{{theme}}"
                items.append(data)
            prepared[taxonomy] = items
            logger.debug(
                "  - %d terms of taxonomy '%s' prepared", len(items), taxonomy
            )
        return prepared

    def _prepare_media(self, record: PostRecord) -> MediaInfo | None:
        relative = self.store.attached_file(record.ID)
        if not relative:
            return None
        relative = strip_scaled("/" + relative.lstrip("/"))
        path = str(self.ctx.upload_dir) + relative
        name = PurePosixPath(relative).name
        logger.debug("  - file '%s' added to post %d", name, record.ID)
        return MediaInfo(
            name=name,
            url=strip_scaled(self.store.attachment_url(record.ID)),
            path=path,
            relative_path=relative,
        )

    # ------------------------------------------------------------------
    # Menus and hierarchy
    # ------------------------------------------------------------------

    @staticmethod
    def _resolve_menus(content: str) -> str:
        """Turn navigation links to posts into custom links."""
        if not content or "wp:navigation-" not in content:
            return content

        def _to_custom(match: re.Match) -> str:
            block_name, attributes_json, closing = match.groups()
            try:
                attributes = json.loads(attributes_json)
            except ValueError:
                return match.group(0)
            if (
                not isinstance(attributes, dict)
                or "kind" not in attributes
                or attributes["kind"] == "custom"
            ):
                return match.group(0)
            attributes["kind"] = "custom"
            attributes.pop("type", None)
            attributes.pop("id", None)
            encoded = json.dumps(attributes, separators=(",", ":"), ensure_ascii=False)
            return f"<!-- wp:{block_name} {encoded} {closing}"

        return _NAVIGATION_BLOCK.sub(_to_custom, content)

    def _prepare_hierarchy(self, record: PostRecord) -> HierarchyInfo:
        parent = None
        if record.post_parent:
            parent_post = self.store.get(record.post_parent)
            if parent_post is not None:
                parent = HierarchyRef(
                    id=parent_post.ID,
                    name=parent_post.post_name,
                    type=parent_post.post_type,
                )
        children = [
            HierarchyRef(id=child.ID, name=child.post_name, type=child.post_type)
            for child in self.store.children(
                record.ID, post_type=record.post_type, status="publish"
            )
        ]
        return HierarchyInfo(parent=parent, children=children)
