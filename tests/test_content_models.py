from __future__ import annotations

import json

import pytest
from sqlalchemy.exc import StatementError

from content.models import (
    BlogPost,
    PrayerPoints,
    Raw,
    SocialPosts,
    VideoScripts,
    load_content,
    parse_content,
    prayer_theme,
    video_duration,
)
from db.models import Content, GeneratedArticle
from db.repository import insert_with_tenant
from db.types import CanonicalJSON, CorruptJSONError


def _free_text(text: str, category: str) -> dict:
    return {"content": text, "type": category, "generatedAt": "2026-01-01T00:00:00+00:00"}


def test_social_posts_from_projected_output() -> None:
    data = parse_content(
        "social_media",
        {"posts": [{"platform": "Facebook", "text": "Hi", "hashtags": "#a, #b"}, {"text": "no platform"}]},
    )

    assert isinstance(data, SocialPosts)
    assert [(p.platform, p.text, p.hashtags, p.order) for p in data.posts] == [("facebook", "Hi", ["#a", "#b"], 1)]


def test_social_posts_keyed_by_platform_in_free_text() -> None:
    text = json.dumps({"twitter": {"text": "Short", "hashtags": ["#x"]}, "facebook": "Longer post"})

    data = parse_content("social_media", _free_text(text, "social_media"))

    assert [p.platform for p in data.posts] == ["facebook", "twitter"]
    assert data.posts[1].hashtags == ["#x"]


def test_social_posts_fall_back_to_three_platforms() -> None:
    data = parse_content("social_media", {"text": "Not JSON at all", "parsed": False})

    assert [p.platform for p in data.posts] == ["facebook", "instagram", "linkedin"]
    assert all(p.text == "Not JSON at all" for p in data.posts)


def test_video_scripts_get_default_durations() -> None:
    data = parse_content("video_script", {"scripts": [{"script": "one"}, {"script": "two"}, {"script": "three", "duration": 45}]})

    assert isinstance(data, VideoScripts)
    assert [s.duration_seconds for s in data.scripts] == [30, 60, 45]
    assert data.scripts[0].title == "Video Script"


def test_prayer_points_split_on_blank_lines_and_get_themes() -> None:
    text = "Pray for healing and recovery for the sick.\n\nshort\n\nPray for peace in troubled homes tonight."

    data = parse_content("prayer_points", _free_text(text, "prayer_points"))

    assert isinstance(data, PrayerPoints)
    assert [(p.order, p.theme) for p in data.points] == [(1, "healing"), (2, "peace")]
    assert prayer_theme("Nothing in particular") == "general"


def test_blog_post_from_schema_fields() -> None:
    data = parse_content("blog_post", {"title": "T", "body": "B", "tags": ["a"]})

    assert data == BlogPost(title="T", body="B", tags=["a"])


def test_unknown_category_is_stored_raw() -> None:
    data = parse_content("email_newsletter", {"subject": "Hi"})

    assert isinstance(data, Raw)
    assert data.model_dump(mode="json") == {"kind": "raw", "category": "email_newsletter", "data": {"subject": "Hi"}}


def test_load_content_round_trips_tagged_values_and_wraps_unknown() -> None:
    stored = SocialPosts(posts=[{"platform": "linkedin", "text": "x"}]).model_dump(mode="json")

    assert isinstance(load_content(stored), SocialPosts)
    assert isinstance(load_content({"kind": "mystery"}), Raw)
    assert load_content("legacy string").data == "legacy string"


def test_structured_column_rejects_object_sentinel() -> None:
    column = CanonicalJSON()

    with pytest.raises(CorruptJSONError):
        column.process_bind_param({"posts": ["[object Object]"]}, None)
    assert column.process_result_value("[object Object]", None) == {}
    assert column.process_bind_param(BlogPost(body="x"), None)["kind"] == "blog_post"


def test_sentinel_never_reaches_the_database(tenant) -> None:
    article = insert_with_tenant(GeneratedArticle, tenant, {"title": "Draft"})

    with pytest.raises(StatementError) as excinfo:
        insert_with_tenant(
            Content,
            tenant,
            {"based_on_gen_article_id": article.id, "prompt_category": "raw", "content_data": "[object Object]"},
        )

    assert isinstance(excinfo.value.orig, CorruptJSONError)


def test_video_durations_tolerate_free_text() -> None:
    assert video_duration("60 seconds", 30) == 60
    assert video_duration(" 90s", 30) == 90
    assert video_duration("about a minute", 30) == 30
    assert video_duration(0, 120) == 120
    assert video_duration(45.5, 30) == 45

    scripts = parse_content("video_script", {"scripts": [{"script": "a", "duration": "1 min"}, {"script": "b", "duration": "n/a"}]})
    assert [item.duration_seconds for item in scripts.scripts] == [1, 60]
