"""
Resource catalog for the foundation site.

Each function returns a ``LiveResource`` (descriptor, policy) pair ready for
``LiveQuery.open``:

    sub = live.open(*resources.gallery())
    likes = live.open(*resources.gallery_like_counts())
"""
from typing import NamedTuple, Optional

from livequery.descriptor import ResourceDescriptor, eq
from livequery.policies import INSERT_AT_END, INSERT_AT_START, AppendOnInsert, CounterAggregate, MergePolicy, Replace, \
    UpsertById
from livequery.schema import Schema


class LiveResource(NamedTuple):
    descriptor: ResourceDescriptor
    policy: MergePolicy


def _base(resource: str) -> Schema:
    schema = Schema(resource)
    schema.field("id").required()
    schema.field("created_at").datetime().nullable()
    schema.field("updated_at").datetime().nullable()
    return schema


def _settings_schema() -> Schema:
    schema = _base("settings")
    schema.field("site_name").string().trim().nullable().max_length(200)
    schema.field("site_tagline").string().nullable()
    for column in ("logo_url", "sidebar_logo", "footer_logo", "favicon_url", "meta_image"):
        schema.field(column).string().nullable()
    for column in ("meta_title", "meta_description", "meta_keywords", "meta_author"):
        schema.field(column).string().nullable()
    return schema


def _gallery_schema() -> Schema:
    schema = _base("gallery")
    schema.field("title").string().trim().required()
    schema.field("image_url").string().required()
    schema.field("category").string().nullable()
    return schema


def _gallery_likes_schema() -> Schema:
    schema = _base("gallery_likes")
    schema.field("gallery_id").required()
    schema.field("user_ip").string().nullable()
    return schema


def _gallery_comments_schema() -> Schema:
    schema = _base("gallery_comments")
    schema.field("gallery_id").required()
    schema.field("name").string().trim().required().max_length(100)
    schema.field("comment").string().trim().required().min_length(1)
    return schema


def _posts_schema() -> Schema:
    schema = _base("posts")
    schema.field("title").string().trim().required()
    schema.field("excerpt").string().nullable()
    schema.field("content").string().nullable()
    schema.field("image_url").string().nullable()
    schema.field("published_at").datetime().nullable()
    schema.field("is_published").bool().default_value(False)
    return schema


def _programs_schema() -> Schema:
    schema = _base("programs")
    schema.field("title").string().trim().required()
    schema.field("description").string().nullable()
    schema.field("content").string().nullable()
    schema.field("image").string().nullable()
    return schema


def _testimonials_schema() -> Schema:
    schema = _base("testimonials")
    schema.field("name").string().trim().required()
    schema.field("role").string().nullable()
    schema.field("message").string().required()
    schema.field("photo_url").string().nullable()
    return schema


def _schools_schema() -> Schema:
    schema = _base("schools")
    schema.field("nama").string().trim().required()
    schema.field("deskripsi").string().nullable()
    # Free text in the admin forms, e.g. "120 siswa"
    schema.field("jumlah_siswa").string().nullable()
    schema.field("jumlah_guru").string().nullable()
    schema.field("photo").string().nullable()
    return schema


def _activity_logs_schema() -> Schema:
    schema = _base("activity_logs")
    schema.field("actor").string().nullable()
    schema.field("action").string().required()
    schema.field("details").string().nullable()
    schema.field("target_table").string().nullable()
    schema.field("target_id").nullable()
    return schema


def _users_schema() -> Schema:
    schema = _base("users")
    schema.field("email").string().trim().email().nullable()
    schema.field("full_name").string().nullable()
    schema.field("name").string().nullable()
    schema.field("role").string().one_of("super_admin", "admin", "editor").nullable()
    return schema


SCHEMAS = {
    "settings": _settings_schema(),
    "gallery": _gallery_schema(),
    "gallery_likes": _gallery_likes_schema(),
    "gallery_comments": _gallery_comments_schema(),
    "posts": _posts_schema(),
    "programs": _programs_schema(),
    "testimonials": _testimonials_schema(),
    "schools": _schools_schema(),
    "activity_logs": _activity_logs_schema(),
    "users": _users_schema(),
}


def site_settings(refetch: bool = False) -> LiveResource:
    """The single settings row. ``refetch=True`` reloads it on every change instead of adopting the event row."""
    descriptor = ResourceDescriptor("settings", single=True, schema=SCHEMAS["settings"])
    return LiveResource(descriptor, Replace(refetch=refetch))


def page_content(table: str, slug: Optional[str] = None) -> LiveResource:
    """Singleton content tables (about, tk, mts, kb, contact), optionally selected by slug."""
    descriptor = ResourceDescriptor(table, filters=(eq("slug", slug),) if slug else (), single=True)
    return LiveResource(descriptor, Replace())


def gallery() -> LiveResource:
    descriptor = ResourceDescriptor("gallery", order_by="created_at", descending=True, schema=SCHEMAS["gallery"])
    return LiveResource(descriptor, UpsertById(insert_at=INSERT_AT_START))


def gallery_like_counts() -> LiveResource:
    """Likes per gallery item, keyed by ``gallery_id``."""
    descriptor = ResourceDescriptor("gallery_likes", columns=("id", "gallery_id"), schema=SCHEMAS["gallery_likes"])
    return LiveResource(descriptor, CounterAggregate("gallery_id"))


def gallery_comments(gallery_id, limit: int = 50) -> LiveResource:
    """Latest comments on one gallery item, newest first."""
    descriptor = ResourceDescriptor(
        "gallery_comments",
        filters=(eq("gallery_id", gallery_id),),
        order_by="created_at",
        descending=True,
        limit=limit,
        schema=SCHEMAS["gallery_comments"],
    )
    return LiveResource(descriptor, AppendOnInsert(max_size=limit))


def posts(published_only: bool = False) -> LiveResource:
    filters = (eq("is_published", True),) if published_only else ()
    descriptor = ResourceDescriptor("posts", filters=filters, order_by="published_at", descending=True,
                                    schema=SCHEMAS["posts"])
    return LiveResource(descriptor, UpsertById(insert_at=INSERT_AT_START))


def programs() -> LiveResource:
    descriptor = ResourceDescriptor("programs", order_by="created_at", schema=SCHEMAS["programs"])
    return LiveResource(descriptor, UpsertById(insert_at=INSERT_AT_END))


def testimonials() -> LiveResource:
    descriptor = ResourceDescriptor("testimonials", order_by="created_at", descending=True,
                                    schema=SCHEMAS["testimonials"])
    return LiveResource(descriptor, UpsertById(insert_at=INSERT_AT_START))


def schools() -> LiveResource:
    descriptor = ResourceDescriptor("schools", order_by="created_at", descending=True, schema=SCHEMAS["schools"])
    return LiveResource(descriptor, UpsertById(insert_at=INSERT_AT_START))


def activity_log(limit: int = 100) -> LiveResource:
    descriptor = ResourceDescriptor("activity_logs", order_by="created_at", descending=True, limit=limit,
                                    schema=SCHEMAS["activity_logs"])
    return LiveResource(descriptor, AppendOnInsert(max_size=limit))


def users() -> LiveResource:
    descriptor = ResourceDescriptor(
        "users",
        columns=("id", "email", "full_name", "name", "role", "created_at"),
        order_by="created_at",
        descending=True,
        schema=SCHEMAS["users"],
    )
    return LiveResource(descriptor, UpsertById(insert_at=INSERT_AT_START))
