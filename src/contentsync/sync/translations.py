"""Translation provider registry.

Translation plugins are external collaborators.  Each one is wrapped in a
``TranslationProvider`` that the registry consults:

- on export, to describe the language of a post and its sibling
  translations (``language_for``);
- on import, to decide whether a translated unit should be written at all
  (``analyze_import``) and to link freshly imported siblings
  (``link_imported``).

Without an active provider the node's default language is used and no
translation links are written.  ``NullTranslationProvider`` is the
placeholder for nodes without a translation tool.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Iterable, Protocol

from .models import LanguageInfo, PostRecord

if TYPE_CHECKING:
    from ..core.context import NodeContext

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Protocol
# ---------------------------------------------------------------------------


class TranslationProvider(Protocol):
    """Adapter around one translation tool."""

    def detect(self, ctx: NodeContext) -> str | None:
        """Return the tool name if the tool is active on *ctx*."""
        ...  # pragma: no cover

    def get_language_info(self, ctx: NodeContext, post: PostRecord) -> dict[str, Any]:
        """Return at least ``{"code": ...}``; other keys travel as ``args``."""
        ...  # pragma: no cover

    def get_translations(self, ctx: NodeContext, post: PostRecord) -> dict[str, int]:
        """Return sibling post ids keyed by language code."""
        ...  # pragma: no cover

    def set_translations(
        self, ctx: NodeContext, post_id: int, code: str, siblings: dict[str, int]
    ) -> bool:
        ...  # pragma: no cover

    def switch_language(self, ctx: NodeContext, code: str) -> bool:
        ...  # pragma: no cover


class NullTranslationProvider:
    """Provider for nodes without a translation tool."""

    def detect(self, ctx: NodeContext) -> str | None:
        return None

    def get_language_info(self, ctx: NodeContext, post: PostRecord) -> dict[str, Any]:
        return {"code": ctx.language}

    def get_translations(self, ctx: NodeContext, post: PostRecord) -> dict[str, int]:
        return {}

    def set_translations(
        self, ctx: NodeContext, post_id: int, code: str, siblings: dict[str, int]
    ) -> bool:
        return False

    def switch_language(self, ctx: NodeContext, code: str) -> bool:
        return False


# ---------------------------------------------------------------------------
# Import analysis
# ---------------------------------------------------------------------------


@dataclass
class TranslationDecision:
    """Whether a translated unit should be imported.

    Attributes:
        should_import: False when another unit of the set serves better.
        reason: ``no_language``, ``language_switched``,
            ``matches_site_language``, ``skip_better_translation``,
            ``reuse_imported`` or ``import_fallback``.
        reuse_post_id: Local id of an already imported sibling to map the
            unit to instead.
        unsupported: Language codes the destination cannot hold.
    """

    should_import: bool = True
    reason: str = "no_language"
    reuse_post_id: int | None = None
    unsupported: list[str] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


class TranslationRegistry:
    """Ordered list of providers; the first one that detects its tool wins."""

    def __init__(self, providers: Iterable[TranslationProvider] = ()) -> None:
        self._providers: list[TranslationProvider] = list(providers)

    def register(self, provider: TranslationProvider) -> None:
        self._providers.append(provider)

    def active(self, ctx: NodeContext) -> tuple[TranslationProvider, str] | None:
        for provider in self._providers:
            tool = provider.detect(ctx)
            if tool:
                return provider, tool
        return None

    def language_for(
        self, ctx: NodeContext, post: PostRecord, include_translations: bool = False
    ) -> LanguageInfo:
        """Describe the language of *post* on *ctx*."""
        found = self.active(ctx)
        if found is None:
            return LanguageInfo(code=ctx.language, tool=None)

        provider, tool = found
        info = dict(provider.get_language_info(ctx, post) or {})
        code = info.pop("code", None) or ctx.language
        translations: dict[str, int] = {}
        if include_translations:
            translations = {
                lang: int(post_id)
                for lang, post_id in provider.get_translations(ctx, post).items()
                if post_id and int(post_id) != post.ID
            }
        return LanguageInfo(code=code, tool=tool, translations=translations, args=info)

    def analyze_import(
        self, ctx: NodeContext, language: LanguageInfo, id_map: dict[int, int]
    ) -> TranslationDecision:
        """Decide whether a unit in *language* should be written on *ctx*.

        With an active tool, the tool is switched to the unit's language
        and the unit is imported.  Without one, a unit in the node's own
        language is preferred over its siblings, and a sibling that was
        already imported is reused.
        """
        if not language.code:
            return TranslationDecision()

        found = self.active(ctx)
        if found is not None:
            provider, _tool = found
            if provider.switch_language(ctx, language.code):
                return TranslationDecision(reason="language_switched")
            return TranslationDecision(
                reason="import_fallback", unsupported=[language.code]
            )

        siblings = language.translations
        if language.code == ctx.language:
            return TranslationDecision(reason="matches_site_language")

        if ctx.language in siblings:
            return TranslationDecision(
                should_import=False,
                reason="skip_better_translation",
                unsupported=[c for c in siblings if c != ctx.language],
            )

        for sibling_id in siblings.values():
            if sibling_id in id_map:
                return TranslationDecision(
                    should_import=False,
                    reason="reuse_imported",
                    reuse_post_id=id_map[sibling_id],
                )

        return TranslationDecision(reason="import_fallback", unsupported=list(siblings))

    def link_imported(
        self,
        ctx: NodeContext,
        new_id: int,
        language: LanguageInfo,
        id_map: dict[int, int],
    ) -> bool:
        """Connect an imported post with its already imported siblings."""
        if not language.tool or not language.code:
            return False

        found = self.active(ctx)
        if found is None:
            logger.info(
                "Post %d was exported with %s, but no translation tool is active",
                new_id,
                language.tool,
            )
            return False

        provider, tool = found
        if tool != language.tool:
            logger.warning(
                "Post %d was exported with %s, but %s is active; translations not linked",
                new_id,
                language.tool,
                tool,
            )
            return False

        siblings = {
            code: id_map[old_id]
            for code, old_id in language.translations.items()
            if old_id in id_map
        }
        logger.debug("Linking post %d (%s) with %s", new_id, language.code, siblings)
        return provider.set_translations(ctx, new_id, language.code, siblings)
