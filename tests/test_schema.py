import datetime
import os
import sys

import pytest

# Ensure we can import the package
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '../')))

from livequery.exceptions import SchemaError
from livequery.resources import SCHEMAS
from livequery.schema import Schema


def make_schema():
    schema = Schema("posts")
    schema.field("id").int().required()
    schema.field("title").string().trim().required().max_length(10)
    schema.field("views").int().min_value(0).default_value(0)
    schema.field("is_published").bool()
    schema.field("published_at").datetime().nullable()
    schema.field("author_email").string().email().optional()
    return schema


def test_coerce_converts_wire_values():
    row = make_schema().coerce({
        "id": "7",
        "title": "  Berita ",
        "is_published": "true",
        "published_at": "2024-05-01T08:00:00Z",
        "extra": "kept",
    })
    assert row["id"] == 7
    assert row["title"] == "Berita"
    assert row["views"] == 0
    assert row["is_published"] is True
    assert row["published_at"] == datetime.datetime(2024, 5, 1, 8, 0, tzinfo=datetime.timezone.utc)
    assert row["extra"] == "kept"


def test_coerce_does_not_modify_input():
    raw = {"id": "1", "title": "  A  "}
    make_schema().coerce(raw)
    assert raw == {"id": "1", "title": "  A  "}


def test_validate_collects_messages_per_column():
    errors = make_schema().validate({"title": "x" * 11, "views": -1, "author_email": "not-an-email"})
    assert set(errors) == {"id", "title", "views", "author_email"}
    assert errors["id"] == ["This field is required."]
    assert errors["title"] == ["Must be at most 10 characters long."]


def test_nullable_and_optional_columns():
    schema = make_schema()
    assert schema.validate({"id": 1, "title": "A", "published_at": None}) == {}
    assert schema.validate({"id": 1, "title": "A"}) == {}
    assert "id" in schema.validate({"id": None, "title": "A"})


def test_type_errors_raise_schema_error():
    with pytest.raises(SchemaError) as info:
        make_schema().coerce({"id": "seven", "title": "A"})
    assert info.value.errors == {"id": ["Must be an integer."]}
    assert info.value.resource == "posts"


def test_non_dict_row_is_rejected():
    with pytest.raises(SchemaError):
        make_schema().coerce(["id", 1])
    assert make_schema().validate("row") == {"__row__": ["Row must be an object."]}


def test_one_of_and_custom_rules():
    schema = Schema()
    schema.field("role").string().one_of("admin", "editor")
    schema.field("slug").string().custom(lambda value: None if value.islower() else "Must be lowercase.")

    assert schema.validate({"role": "admin", "slug": "kb"}) == {}
    errors = schema.validate({"role": "guest", "slug": "KB"})
    assert errors["role"] == ["Must be one of: admin, editor."]
    assert errors["slug"] == ["Must be lowercase."]


def test_site_schemas_accept_typical_rows():
    assert SCHEMAS["gallery_comments"].validate({"id": 1, "gallery_id": "g1", "name": "Ani",
                                                 "comment": "Bagus"}) == {}
    assert SCHEMAS["users"].validate({"id": "u1", "email": "admin@yayasan.sch.id", "role": "super_admin"}) == {}
    assert "role" in SCHEMAS["users"].validate({"id": "u1", "role": "owner"})
    assert SCHEMAS["posts"].coerce({"id": 1, "title": "Halo"})["is_published"] is False
