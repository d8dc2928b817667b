"""Tests for ContentPreparer.

Covers:
- Nested post references become {{id}} placeholders
- Front-end links to nested posts become {{id-front-url}}
- Dynamic strings (site url, upload url, theme) become tokens
- Term references in taxQuery / advancedFilter become {{t_id}}
- Meta projection (blacklist, sync bookkeeping, empty values)
- Assigned terms with nested parents
- Media info of attachments
- Navigation links resolved to custom links
- Parent / children hierarchy
"""

import json

from contentsync.sync import meta as sync_meta
from contentsync.sync.models import META_GID, META_STATUS, ExportOptions, SyncStatus
from contentsync.sync.patterns import MetaTransformRegistry
from contentsync.sync.preparer import ContentPreparer
from contentsync.sync.translations import TranslationRegistry


class TestPrepareContent:
    """Tests for the body rewrite."""

    def test_missing_post(self, node1):
        assert ContentPreparer(node1).prepare(404) is None

    def test_image_placeholders_and_upload_url(self, node1, origin_content):
        prepared = ContentPreparer(node1).prepare(10)

        assert '"id":{{7}},' in prepared.post_content
        assert 'class="wp-image-{{7}}"' in prepared.post_content
        assert 'src="{{upload_url}}/2026/10/photo.jpg"' in prepared.post_content
        assert "net-a.example" not in prepared.post_content
        assert set(prepared.nested) == {7}
        ref = prepared.nested[7]
        assert ref.post_type == "attachment"
        assert ref.front_url == "https://net-a.example/wp-content/uploads/2026/10/photo.jpg"

    def test_front_url_placeholder(self, node1):
        store = node1.store
        block_id = store.create({"post_type": "wp_block", "post_name": "cta"})
        page_id = store.create({"post_type": "page", "post_name": "about"})
        content = (
            f'<!-- wp:block {{"ref":{block_id}}} /-->'
            '<a href="https://net-a.example/wp_block/cta/">CTA</a>'
        )
        post_id = store.create(
            {"post_type": "post", "post_name": "p", "post_content": content}
        )

        prepared = ContentPreparer(node1).prepare(post_id)
        assert f'"ref":{{{{{block_id}}}}}' in prepared.post_content
        assert f'href="{{{{{block_id}-front-url}}}}"' in prepared.post_content
        assert page_id not in prepared.nested

    def test_slug_reference(self, node1):
        store = node1.store
        part_id = store.create({"post_type": "wp_template_part", "post_name": "header"})
        post_id = store.create(
            {
                "post_type": "wp_template",
                "post_name": "home",
                "post_content": '<!-- wp:template-part {"slug":"header","theme":"twentytwentyfour"} /-->',
            }
        )
        prepared = ContentPreparer(node1).prepare(post_id)
        assert '"slug":"{{%d}}"' % part_id in prepared.post_content
        assert '"theme":{{theme}}' in prepared.post_content

    def test_unresolved_reference_left_in_place(self, node1):
        post_id = node1.store.create(
            {"post_type": "post", "post_content": '<!-- wp:block {"ref":999} /-->'}
        )
        prepared = ContentPreparer(node1).prepare(post_id)
        assert '"ref":999' in prepared.post_content
        assert prepared.nested == {}

    def test_advanced_filter_includes(self, node1):
        store = node1.store
        included = store.create({"post_type": "post", "post_name": "included"})
        content = (
            '<!-- wp:query {"advancedFilter":[{"name":"include","include":[%d,"abc"]}]} -->'
            % included
        )
        post_id = store.create({"post_type": "post", "post_content": content})

        prepared = ContentPreparer(node1).prepare(post_id)
        assert '"include":[{{%d}},"abc"]' % included in prepared.post_content
        assert included in prepared.nested

    def test_tax_query_terms(self, node1):
        store = node1.store
        parent = store.insert_term("category", "Parent", "parent")
        child = store.insert_term("category", "Child", "child", parent=parent)
        content = '<!-- wp:query {"query":{"taxQuery":{"category":[%d,0]}}} /-->' % child
        post_id = store.create({"post_type": "post", "post_content": content})

        prepared = ContentPreparer(node1).prepare(post_id)
        assert '"taxQuery":{"category":[{{t_%d}},0]}' % child in prepared.post_content
        nested = prepared.nested_terms[child]
        assert nested.slug == "child"
        assert nested.parent["slug"] == "parent"

    def test_advanced_filter_taxonomy_terms(self, node1):
        store = node1.store
        term = store.insert_term("post_tag", "Jazz", "jazz")
        content = (
            '<!-- wp:query {"advancedFilter":[{"name":"taxonomy","terms":[%d]}]} -->' % term
        )
        post_id = store.create({"post_type": "post", "post_content": content})

        prepared = ContentPreparer(node1).prepare(post_id)
        assert '"terms":[{{t_%d}}]' % term in prepared.post_content
        assert prepared.nested_terms[term].taxonomy == "post_tag"

    def test_navigation_links_become_custom(self, node1):
        link = {"label": "About", "type": "page", "id": 5, "kind": "post-type", "url": "/about/"}
        content = "<!-- wp:navigation-link %s /-->" % json.dumps(link, separators=(",", ":"))
        post_id = node1.store.create({"post_type": "wp_navigation", "post_content": content})

        prepared = ContentPreparer(node1).prepare(post_id)
        assert '"kind":"custom"' in prepared.post_content
        assert '"id":5' not in prepared.post_content

        kept = ContentPreparer(node1).prepare(
            post_id, ExportOptions(resolve_menus=False)
        )
        assert '"kind":"post-type"' in kept.post_content


class TestPrepareMetaAndTerms:
    """Tests for meta, terms, media and hierarchy."""

    def test_meta_projection(self, node1, origin_content):
        store = node1.store
        sync_meta.set_synced(store, 10, "1-10", SyncStatus.ROOT, ExportOptions())
        store.update_meta(10, "_edit_lock", "123")
        store.update_meta(10, "empty", "")

        prepared = ContentPreparer(node1).prepare(10)
        assert prepared.meta["color"] == ["blue"]
        assert prepared.meta["_thumbnail_id"] == [7]
        assert prepared.meta[META_GID] == ["1-10"]
        assert prepared.gid == "1-10"
        assert META_STATUS not in prepared.meta
        assert "_edit_lock" not in prepared.meta
        assert "empty" not in prepared.meta

    def test_meta_transforms(self, node1, origin_content):
        registry = MetaTransformRegistry()
        registry.register("color", lambda value, post_id, options: value.upper())
        prepared = ContentPreparer(node1, meta_transforms=registry).prepare(10)
        assert prepared.meta["color"] == ["BLUE"]

    def test_terms_with_parents(self, node1, origin_content):
        store = node1.store
        parent = store.insert_term("category", "Parent", "parent")
        child = store.insert_term("category", "Child", "child", parent=parent)
        store.set_object_terms(10, "category", [3, child])

        prepared = ContentPreparer(node1).prepare(10)
        by_slug = {t["slug"]: t for t in prepared.terms["category"]}
        assert by_slug["news"]["parent"] == 0
        assert by_slug["child"]["parent"]["slug"] == "parent"

    def test_theme_term_tokenized(self, node1, origin_content):
        store = node1.store
        term = store.insert_term("category", "twentytwentyfour", "twentytwentyfour")
        store.set_object_terms(10, "category", [term])
        prepared = ContentPreparer(node1).prepare(10)
        assert prepared.terms["category"][0]["slug"] == "{{theme}}"

    def test_taxonomy_settings_export_all_terms(self, node1):
        store = node1.store
        store.register_taxonomy("genre")
        store.insert_term("genre", "Jazz", "jazz")
        store.insert_term("genre", "Rock", "rock")
        post_id = store.create({"post_type": "posttype", "post_name": "genre"})
        store.update_meta(post_id, "posttype_settings", {"is_taxonomy": True, "slug": "genre"})

        prepared = ContentPreparer(node1).prepare(post_id)
        assert sorted(t["slug"] for t in prepared.terms["genre"]) == ["jazz", "rock"]

    def test_media(self, node1, origin_content):
        prepared = ContentPreparer(node1).prepare(7)
        assert prepared.media.name == "photo.jpg"
        assert prepared.media.relative_path == "/2026/10/photo.jpg"
        assert prepared.media.path == str(origin_content["image_file"])
        assert prepared.media.url.endswith("/wp-content/uploads/2026/10/photo.jpg")

    def test_scaled_suffix_removed(self, node1):
        image_id = node1.store.create({"post_type": "attachment", "post_name": "big"})
        node1.store.set_attached_file(image_id, "2026/10/big-scaled.jpg")
        prepared = ContentPreparer(node1).prepare(image_id)
        assert prepared.media.name == "big.jpg"

    def test_hierarchy(self, node1):
        store = node1.store
        parent = store.create({"post_type": "page", "post_name": "parent"})
        child = store.create({"post_type": "page", "post_name": "child", "post_parent": parent})

        prepared = ContentPreparer(node1).prepare(child)
        assert prepared.post_hierarchy.parent.name == "parent"

        prepared_parent = ContentPreparer(node1).prepare(parent)
        assert [c.id for c in prepared_parent.post_hierarchy.children] == [child]

        flat = ContentPreparer(node1).prepare(child, ExportOptions(append_nested=False))
        assert flat.post_hierarchy is None

    def test_language_without_tool(self, node1, origin_content):
        prepared = ContentPreparer(node1).prepare(10)
        assert prepared.language.code == "en"
        assert prepared.language.tool is None

    def test_language_with_tool(self, node1, origin_content, fake_translations):
        fake_translations.groups[1] = {10: {"en": 10, "de": 12}}
        registry = TranslationRegistry([fake_translations])
        prepared = ContentPreparer(node1, registry).prepare(
            10, ExportOptions(translations=True)
        )
        assert prepared.language.tool == "fake-tool"
        assert prepared.language.translations == {"de": 12}
        assert prepared.language.args == {"locale": "en_XX"}
