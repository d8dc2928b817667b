"""Post store interface and in-memory reference implementation.

The sync engine never talks to a CMS directly.  Everything it needs from
the storage layer of one node goes through ``PostStore``:

* content objects (get / create / update / delete / lookups),
* post meta (multi-valued, like the CMS it mirrors),
* taxonomy terms and their assignment to objects,
* URLs (permalink, attachment url, edit link) and attached files.

``InMemoryPostStore`` implements the protocol with plain dicts.  It backs
the test-suite and, through ``JsonFileStore``, the command line tool.
"""

from __future__ import annotations

import copy
import json
import logging
from pathlib import Path
from typing import Any, Iterable, Protocol

from ..errors import PersistenceError
from .models import PostRecord, TermRecord
from .state import atomic_write_json

logger = logging.getLogger(__name__)

_POST_FIELDS = set(PostRecord.model_fields)


# ---------------------------------------------------------------------------
# Protocol
# ---------------------------------------------------------------------------


class PostStore(Protocol):
    """Storage operations the sync engine needs from one node."""

    # Objects

    def get(self, post_id: int) -> PostRecord | None: ...

    def create(self, fields: dict[str, Any]) -> int: ...

    def update(self, post_id: int, fields: dict[str, Any]) -> int: ...

    def delete(self, post_id: int, permanent: bool = False) -> bool: ...

    def find_by(
        self, name: str, post_type: str, status: str | None = None
    ) -> PostRecord | None: ...

    def find_by_meta(
        self, key: str, value: Any, post_type: str | None = None
    ) -> list[PostRecord]: ...

    def posts_of_type(self, post_type: str) -> list[PostRecord]: ...

    def children(
        self, post_id: int, post_type: str | None = None, status: str | None = "publish"
    ) -> list[PostRecord]: ...

    # Meta

    def get_meta(self, post_id: int) -> dict[str, list[Any]]: ...

    def get_meta_value(self, post_id: int, key: str, default: Any = None) -> Any: ...

    def update_meta(self, post_id: int, key: str, value: Any) -> bool: ...

    def add_meta(self, post_id: int, key: str, value: Any) -> bool: ...

    def delete_meta(self, post_id: int, key: str) -> bool: ...

    # Terms

    def taxonomy_exists(self, taxonomy: str) -> bool: ...

    def register_taxonomy(self, taxonomy: str) -> None: ...

    def get_terms(self, post_id: int) -> dict[str, list[TermRecord]]: ...

    def taxonomy_terms(self, taxonomy: str) -> list[TermRecord]: ...

    def get_term(self, term_id: int) -> TermRecord | None: ...

    def find_term(self, slug: str, taxonomy: str) -> TermRecord | None: ...

    def insert_term(
        self,
        taxonomy: str,
        name: str,
        slug: str,
        description: str = "",
        parent: int = 0,
    ) -> int: ...

    def set_term_parent(self, term_id: int, parent_id: int) -> bool: ...

    def set_object_terms(
        self, post_id: int, taxonomy: str, term_ids: Iterable[int]
    ) -> list[int]: ...

    # URLs and files

    def permalink(self, post_id: int) -> str: ...

    def attachment_url(self, post_id: int) -> str: ...

    def edit_url(self, post_id: int) -> str: ...

    def attached_file(self, post_id: int) -> str | None: ...

    def set_attached_file(self, post_id: int, relative_path: str) -> None: ...


# ---------------------------------------------------------------------------
# In-memory implementation
# ---------------------------------------------------------------------------


class InMemoryPostStore:
    """Dict-backed ``PostStore``.

    Args:
        site_url: Base url used for permalinks and edit links.
        upload_url: Base url of the asset store, for attachment urls.
        first_id: First id handed out by ``create()``.
        taxonomies: Taxonomies that exist from the start.
    """

    def __init__(
        self,
        site_url: str = "",
        upload_url: str = "",
        first_id: int = 1,
        taxonomies: Iterable[str] = ("category", "post_tag"),
    ) -> None:
        self.site_url = site_url.rstrip("/")
        self.upload_url = upload_url.rstrip("/")
        self._posts: dict[int, PostRecord] = {}
        self._meta: dict[int, dict[str, list[Any]]] = {}
        self._terms: dict[int, TermRecord] = {}
        self._object_terms: dict[int, dict[str, list[int]]] = {}
        self._attached: dict[int, str] = {}
        self._taxonomies: set[str] = set(taxonomies)
        self._next_id = first_id
        self._next_term_id = 1

    # ------------------------------------------------------------------
    # Objects
    # ------------------------------------------------------------------

    def get(self, post_id: int) -> PostRecord | None:
        try:
            return self._posts.get(int(post_id))
        except (TypeError, ValueError):
            return None

    def create(self, fields: dict[str, Any]) -> int:
        if not fields.get("post_type"):
            raise PersistenceError("Cannot create a post without post_type")

        post_id = self._next_id
        self._next_id += 1

        data = {k: v for k, v in fields.items() if k in _POST_FIELDS}
        data["ID"] = post_id
        data["post_name"] = self._unique_slug(
            data.get("post_name") or f"{data['post_type']}-{post_id}",
            data["post_type"],
        )
        self._posts[post_id] = PostRecord(**data)
        self._meta.setdefault(post_id, {})
        logger.debug("Created post %d (%s)", post_id, data["post_name"])
        return post_id

    def update(self, post_id: int, fields: dict[str, Any]) -> int:
        current = self.get(post_id)
        if current is None:
            raise PersistenceError(f"Post {post_id} does not exist")
        data = {
            k: v for k, v in fields.items() if k in _POST_FIELDS and k != "ID"
        }
        if "post_name" in data and data["post_name"] != current.post_name:
            data["post_name"] = self._unique_slug(
                data["post_name"],
                data.get("post_type", current.post_type),
                exclude=current.ID,
            )
        self._posts[current.ID] = current.model_copy(update=data)
        return current.ID

    def delete(self, post_id: int, permanent: bool = False) -> bool:
        current = self.get(post_id)
        if current is None:
            return False
        if not permanent:
            self._posts[current.ID] = current.model_copy(
                update={"post_status": "trash"}
            )
            return True
        del self._posts[current.ID]
        self._meta.pop(current.ID, None)
        self._object_terms.pop(current.ID, None)
        self._attached.pop(current.ID, None)
        return True

    def find_by(
        self, name: str, post_type: str, status: str | None = None
    ) -> PostRecord | None:
        for post in self._posts.values():
            if post.post_name != name or post.post_type != post_type:
                continue
            if post.post_status == "trash":
                continue
            if status is not None and post.post_status != status:
                continue
            return post
        return None

    def find_by_meta(
        self, key: str, value: Any, post_type: str | None = None
    ) -> list[PostRecord]:
        found = []
        for post_id, meta in self._meta.items():
            if value not in meta.get(key, []):
                continue
            post = self._posts.get(post_id)
            if post is None or post.post_status == "trash":
                continue
            if post_type and post.post_type != post_type:
                continue
            found.append(post)
        return found

    def posts_of_type(self, post_type: str) -> list[PostRecord]:
        return [
            p
            for p in self._posts.values()
            if p.post_type == post_type and p.post_status != "trash"
        ]

    def children(
        self,
        post_id: int,
        post_type: str | None = None,
        status: str | None = "publish",
    ) -> list[PostRecord]:
        return [
            p
            for p in self._posts.values()
            if p.post_parent == post_id
            and (post_type is None or p.post_type == post_type)
            and (status is None or p.post_status == status)
        ]

    # ------------------------------------------------------------------
    # Meta
    # ------------------------------------------------------------------

    def get_meta(self, post_id: int) -> dict[str, list[Any]]:
        return copy.deepcopy(self._meta.get(int(post_id), {}))

    def get_meta_value(self, post_id: int, key: str, default: Any = None) -> Any:
        values = self._meta.get(int(post_id), {}).get(key)
        if not values:
            return default
        return copy.deepcopy(values[0])

    def update_meta(self, post_id: int, key: str, value: Any) -> bool:
        if self.get(post_id) is None:
            return False
        self._meta.setdefault(int(post_id), {})[key] = [copy.deepcopy(value)]
        return True

    def add_meta(self, post_id: int, key: str, value: Any) -> bool:
        if self.get(post_id) is None:
            return False
        self._meta.setdefault(int(post_id), {}).setdefault(key, []).append(
            copy.deepcopy(value)
        )
        return True

    def delete_meta(self, post_id: int, key: str) -> bool:
        return self._meta.get(int(post_id), {}).pop(key, None) is not None

    # ------------------------------------------------------------------
    # Terms
    # ------------------------------------------------------------------

    def taxonomy_exists(self, taxonomy: str) -> bool:
        return taxonomy in self._taxonomies

    def register_taxonomy(self, taxonomy: str) -> None:
        self._taxonomies.add(taxonomy)

    def get_terms(self, post_id: int) -> dict[str, list[TermRecord]]:
        assigned = self._object_terms.get(int(post_id), {})
        return {
            taxonomy: [self._terms[t] for t in term_ids if t in self._terms]
            for taxonomy, term_ids in assigned.items()
            if term_ids
        }

    def taxonomy_terms(self, taxonomy: str) -> list[TermRecord]:
        return [t for t in self._terms.values() if t.taxonomy == taxonomy]

    def get_term(self, term_id: int) -> TermRecord | None:
        try:
            return self._terms.get(int(term_id))
        except (TypeError, ValueError):
            return None

    def find_term(self, slug: str, taxonomy: str) -> TermRecord | None:
        for term in self._terms.values():
            if term.slug == slug and term.taxonomy == taxonomy:
                return term
        return None

    def insert_term(
        self,
        taxonomy: str,
        name: str,
        slug: str,
        description: str = "",
        parent: int = 0,
    ) -> int:
        if not self.taxonomy_exists(taxonomy):
            raise PersistenceError(f"Taxonomy '{taxonomy}' does not exist")
        if self.find_term(slug, taxonomy) is not None:
            raise PersistenceError(
                f"Term '{slug}' already exists in taxonomy '{taxonomy}'"
            )
        term_id = self._next_term_id
        self._next_term_id += 1
        self._terms[term_id] = TermRecord(
            term_id=term_id,
            name=name,
            slug=slug,
            taxonomy=taxonomy,
            description=description,
            parent=parent or 0,
        )
        return term_id

    def set_term_parent(self, term_id: int, parent_id: int) -> bool:
        term = self.get_term(term_id)
        if term is None:
            return False
        self._terms[term.term_id] = term.model_copy(
            update={"parent": int(parent_id or 0)}
        )
        return True

    def set_object_terms(
        self, post_id: int, taxonomy: str, term_ids: Iterable[int]
    ) -> list[int]:
        if not self.taxonomy_exists(taxonomy):
            raise PersistenceError(f"Taxonomy '{taxonomy}' does not exist")
        ids = [int(t) for t in term_ids if int(t) in self._terms]
        self._object_terms.setdefault(int(post_id), {})[taxonomy] = ids
        return ids

    # ------------------------------------------------------------------
    # URLs and files
    # ------------------------------------------------------------------

    def permalink(self, post_id: int) -> str:
        post = self.get(post_id)
        if post is None:
            return ""
        if post.post_type in ("post", "page"):
            return f"{self.site_url}/{post.post_name}/"
        return f"{self.site_url}/{post.post_type}/{post.post_name}/"

    def attachment_url(self, post_id: int) -> str:
        relative = self.attached_file(post_id)
        if not relative:
            return ""
        return f"{self.upload_url}/{relative.lstrip('/')}"

    def edit_url(self, post_id: int) -> str:
        return f"{self.site_url}/wp-admin/post.php?post={int(post_id)}&action=edit"

    def attached_file(self, post_id: int) -> str | None:
        return self._attached.get(int(post_id))

    def set_attached_file(self, post_id: int, relative_path: str) -> None:
        self._attached[int(post_id)] = relative_path.lstrip("/")

    # ------------------------------------------------------------------
    # Snapshot helpers
    # ------------------------------------------------------------------

    def to_dict(self) -> dict[str, Any]:
        """Serialize the whole store into JSON-compatible data."""
        return {
            "site_url": self.site_url,
            "upload_url": self.upload_url,
            "next_id": self._next_id,
            "next_term_id": self._next_term_id,
            "taxonomies": sorted(self._taxonomies),
            "posts": [p.model_dump() for p in self._posts.values()],
            "meta": {str(k): v for k, v in self._meta.items()},
            "terms": [t.model_dump() for t in self._terms.values()],
            "object_terms": {str(k): v for k, v in self._object_terms.items()},
            "attached": {str(k): v for k, v in self._attached.items()},
        }

    def load_dict(self, data: dict[str, Any]) -> None:
        """Replace the store contents with a ``to_dict()`` snapshot."""
        self.site_url = data.get("site_url", self.site_url)
        self.upload_url = data.get("upload_url", self.upload_url)
        self._taxonomies = set(data.get("taxonomies", self._taxonomies))
        self._posts = {
            int(p["ID"]): PostRecord(**p) for p in data.get("posts", [])
        }
        self._meta = {int(k): v for k, v in data.get("meta", {}).items()}
        self._terms = {
            int(t["term_id"]): TermRecord(**t) for t in data.get("terms", [])
        }
        self._object_terms = {
            int(k): v for k, v in data.get("object_terms", {}).items()
        }
        self._attached = {
            int(k): v for k, v in data.get("attached", {}).items()
        }
        self._next_id = int(
            data.get("next_id", max(self._posts, default=0) + 1)
        )
        self._next_term_id = int(
            data.get("next_term_id", max(self._terms, default=0) + 1)
        )

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _unique_slug(
        self, slug: str, post_type: str, exclude: int | None = None
    ) -> str:
        taken = {
            p.post_name
            for p in self._posts.values()
            if p.post_type == post_type and p.ID != exclude
        }
        if slug not in taken:
            return slug
        suffix = 2
        while f"{slug}-{suffix}" in taken:
            suffix += 1
        return f"{slug}-{suffix}"


class JsonFileStore(InMemoryPostStore):
    """``InMemoryPostStore`` persisted to a JSON snapshot file.

    The file is read on construction (when it exists) and written back
    atomically by ``save()``.
    """

    def __init__(self, path: Path, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.path = Path(path)
        if self.path.exists():
            with open(self.path, encoding="utf-8") as fh:
                self.load_dict(json.load(fh))

    def save(self) -> None:
        atomic_write_json(self.path, self.to_dict())
