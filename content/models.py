"""Structured content persisted in ``content.content_data``.

Step outputs are parsed once into one of these tagged models; the JSON
column always holds ``model_dump(mode="json")`` of one of them.
"""

from __future__ import annotations

import json
import re
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, Field, TypeAdapter, ValidationError

from llm.postprocess import strip_code_fence

SOCIAL_PLATFORMS = ("facebook", "instagram", "linkedin", "twitter")
FALLBACK_PLATFORMS = ("facebook", "instagram", "linkedin")
VIDEO_DURATIONS = (30, 60, 120)

PRAYER_THEMES = {
    "healing": ("heal", "health", "recovery", "restore"),
    "guidance": ("guide", "direction", "wisdom", "lead"),
    "peace": ("peace", "calm", "comfort", "rest"),
    "provision": ("provide", "supply", "need", "provision"),
    "protection": ("protect", "safe", "security", "guard"),
    "justice": ("justice", "fair", "right", "truth"),
    "hope": ("hope", "future", "tomorrow", "better"),
}


class SocialPostItem(BaseModel):
    platform: str
    text: str = ""
    hashtags: list[str] = Field(default_factory=list)
    order: int = 1
    legacy_id: int | None = None


class SocialPosts(BaseModel):
    kind: Literal["social_posts"] = "social_posts"
    posts: list[SocialPostItem] = Field(default_factory=list)


class VideoScriptItem(BaseModel):
    title: str = "Video Script"
    script: str = ""
    duration_seconds: int = 60
    visual_suggestions: list[str] = Field(default_factory=list)
    order: int = 1
    legacy_id: int | None = None


class VideoScripts(BaseModel):
    kind: Literal["video_scripts"] = "video_scripts"
    scripts: list[VideoScriptItem] = Field(default_factory=list)


class PrayerPoint(BaseModel):
    order: int
    prayer_text: str
    theme: str = "general"


class PrayerPoints(BaseModel):
    kind: Literal["prayer_points"] = "prayer_points"
    points: list[PrayerPoint] = Field(default_factory=list)


class BlogPost(BaseModel):
    kind: Literal["blog_post"] = "blog_post"
    title: str | None = None
    body: str = ""
    meta_description: str | None = None
    tags: list[str] = Field(default_factory=list)


class Raw(BaseModel):
    kind: Literal["raw"] = "raw"
    category: str | None = None
    data: Any = None


ContentData = Annotated[
    Union[SocialPosts, VideoScripts, PrayerPoints, BlogPost, Raw],
    Field(discriminator="kind"),
]
_ADAPTER: TypeAdapter = TypeAdapter(ContentData)


def load_content(value: Any) -> ContentData:
    """Parse a stored ``content_data`` value; anything unrecognised becomes Raw."""
    if isinstance(value, dict) and value.get("kind"):
        try:
            return _ADAPTER.validate_python(value)
        except ValidationError:
            pass
    return Raw(data=value)


def _raw_text(output: dict[str, Any]) -> str:
    for key in ("content", "text"):
        value = output.get(key)
        if isinstance(value, str):
            return value
    return ""


def _as_json(output: dict[str, Any]) -> Any:
    """Schema-projected output is used as is; free text is parsed if it is JSON."""
    text = _raw_text(output)
    if output.get("parsed") is False or "generatedAt" in output:
        try:
            return json.loads(strip_code_fence(text))
        except (json.JSONDecodeError, TypeError):
            return None
    return output


def _string_list(value: Any) -> list[str]:
    if isinstance(value, str):
        return [part for part in value.replace(",", " ").split() if part]
    if isinstance(value, list):
        return [str(item) for item in value if item is not None]
    return []


_LEADING_INT = re.compile(r"^\s*(\d+)")


def video_duration(value: Any, default: int) -> int:
    """Leading integer of ``value`` (``"60 seconds"`` -> 60), else ``default``."""
    if isinstance(value, bool):
        return default
    if isinstance(value, (int, float)):
        try:
            return int(value) if value > 0 else default
        except OverflowError:
            return default
    match = _LEADING_INT.match(str(value or ""))
    if match and int(match.group(1)) > 0:
        return int(match.group(1))
    return default


def prayer_theme(text: str) -> str:
    lowered = text.lower()
    for theme, keywords in PRAYER_THEMES.items():
        if any(keyword in lowered for keyword in keywords):
            return theme
    return "general"


def _social(output: dict[str, Any]) -> SocialPosts:
    data = _as_json(output)
    posts: list[SocialPostItem] = []
    if isinstance(data, dict) and isinstance(data.get("posts"), list):
        for index, item in enumerate(data["posts"]):
            if isinstance(item, dict) and item.get("platform"):
                posts.append(
                    SocialPostItem(
                        platform=str(item["platform"]).lower(),
                        text=str(item.get("text") or ""),
                        hashtags=_string_list(item.get("hashtags")),
                        order=index + 1,
                    )
                )
    elif isinstance(data, dict):
        for platform in SOCIAL_PLATFORMS:
            entry = data.get(platform)
            if entry is None:
                continue
            if isinstance(entry, dict):
                text, hashtags = str(entry.get("text") or ""), _string_list(entry.get("hashtags"))
            else:
                text, hashtags = str(entry), []
            posts.append(SocialPostItem(platform=platform, text=text, hashtags=hashtags, order=len(posts) + 1))
    if not posts:
        fallback = strip_code_fence(_raw_text(output))[:200]
        posts = [
            SocialPostItem(platform=platform, text=fallback, order=index + 1)
            for index, platform in enumerate(FALLBACK_PLATFORMS)
        ]
    return SocialPosts(posts=posts)


def _video(output: dict[str, Any]) -> VideoScripts:
    data = _as_json(output)
    items: list[Any]
    if isinstance(data, dict) and isinstance(data.get("scripts"), list):
        items = data["scripts"]
    elif isinstance(data, list):
        items = data
    elif isinstance(data, dict) and (data.get("script") or data.get("title")):
        items = [data]
    else:
        items = []
    scripts: list[VideoScriptItem] = []
    for index, item in enumerate(items):
        if not isinstance(item, dict):
            continue
        default_duration = VIDEO_DURATIONS[min(index, len(VIDEO_DURATIONS) - 1)]
        scripts.append(
            VideoScriptItem(
                title=str(item.get("title") or "Video Script"),
                script=str(item.get("script") or ""),
                duration_seconds=video_duration(
                    item.get("duration") or item.get("duration_seconds"), default_duration
                ),
                visual_suggestions=_string_list(item.get("visual_suggestions") or item.get("visualSuggestions")),
                order=len(scripts) + 1,
            )
        )
    if not scripts:
        scripts = [VideoScriptItem(script=_raw_text(output))]
    return VideoScripts(scripts=scripts)


def _prayer(output: dict[str, Any]) -> PrayerPoints:
    data = _as_json(output)
    texts: list[str] = []
    if isinstance(data, dict) and isinstance(data.get("points"), list):
        texts = [str(item.get("prayer_text") if isinstance(item, dict) else item) for item in data["points"]]
    else:
        texts = _raw_text(output).split("\n\n")
    points: list[PrayerPoint] = []
    for text in texts:
        clean = text.strip()
        if len(clean) > 10:
            points.append(PrayerPoint(order=len(points) + 1, prayer_text=clean, theme=prayer_theme(clean)))
    return PrayerPoints(points=points)


def _blog(output: dict[str, Any]) -> BlogPost:
    data = _as_json(output)
    if isinstance(data, dict) and any(key in data for key in ("body", "body_draft", "content")):
        body = data.get("body") or data.get("body_draft") or data.get("content") or ""
        return BlogPost(
            title=data.get("title"),
            body=str(body),
            meta_description=data.get("meta_description"),
            tags=_string_list(data.get("tags")),
        )
    return BlogPost(body=_raw_text(output))


_PARSERS = {
    "social_media": _social,
    "video_script": _video,
    "prayer_points": _prayer,
    "prayer": _prayer,
    "blog_post": _blog,
}


def parse_content(category: str, output: dict[str, Any]) -> ContentData:
    parser = _PARSERS.get(category)
    if parser is None or not isinstance(output, dict):
        return Raw(category=category, data=output)
    return parser(output)
