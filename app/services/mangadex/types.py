from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Generic, Mapping, TypeVar

from app.services.mangadex.errors import MangaDexParseError

T = TypeVar("T")


def parse_timestamp(value: object) -> datetime | None:
    if not isinstance(value, str) or not value.strip():
        return None
    raw = value.strip()
    if raw.endswith("Z"):
        raw = raw[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(raw)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _string_map(value: object) -> dict[str, str]:
    if not isinstance(value, Mapping):
        return {}
    return {
        str(key): str(text)
        for key, text in value.items()
        if isinstance(text, str) and text.strip()
    }


def _optional_str(value: object) -> str | None:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _optional_int(value: object) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    return None


def _require_id(data: Mapping[str, Any], kind: str) -> str:
    entity_id = data.get("id")
    if not isinstance(entity_id, str) or not entity_id.strip():
        raise MangaDexParseError(f"{kind} entry is missing an id")
    return entity_id.strip()


def _relationships(data: Mapping[str, Any]) -> list[Mapping[str, Any]]:
    value = data.get("relationships")
    if not isinstance(value, list):
        return []
    return [item for item in value if isinstance(item, Mapping)]


@dataclass(frozen=True)
class MangaTag:
    group: str
    names: dict[str, str]


@dataclass(frozen=True)
class Creator:
    id: str
    name: str


@dataclass(frozen=True)
class MangaRecord:
    id: str
    updated_at: datetime | None
    titles: dict[str, str] = field(default_factory=dict)
    alt_titles: list[dict[str, str]] = field(default_factory=list)
    descriptions: dict[str, str] = field(default_factory=dict)
    status: str | None = None
    year: int | None = None
    original_language: str | None = None
    content_rating: str | None = None
    tags: list[MangaTag] = field(default_factory=list)
    cover_file_name: str | None = None
    authors: list[Creator] = field(default_factory=list)
    artists: list[Creator] = field(default_factory=list)
    attributes: Mapping[str, Any] = field(default_factory=dict, repr=False)
    relationships: list[Mapping[str, Any]] = field(default_factory=list, repr=False)

    @classmethod
    def from_api_dict(cls, data: Mapping[str, Any]) -> MangaRecord:
        manga_id = _require_id(data, "manga")
        attributes = data.get("attributes")
        if not isinstance(attributes, Mapping):
            attributes = {}

        tags: list[MangaTag] = []
        for tag in attributes.get("tags") or []:
            if not isinstance(tag, Mapping):
                continue
            tag_attributes = tag.get("attributes") or {}
            tags.append(
                MangaTag(
                    group=str(tag_attributes.get("group") or "").strip().lower(),
                    names=_string_map(tag_attributes.get("name")),
                )
            )

        relationships = _relationships(data)
        cover_file_name = None
        authors: list[Creator] = []
        artists: list[Creator] = []
        for relationship in relationships:
            rel_type = relationship.get("type")
            rel_attributes = relationship.get("attributes") or {}
            if rel_type == "cover_art" and cover_file_name is None:
                cover_file_name = _optional_str(rel_attributes.get("fileName"))
            elif rel_type in {"author", "artist"}:
                name = _optional_str(rel_attributes.get("name"))
                if name is None:
                    continue
                creator = Creator(id=str(relationship.get("id") or ""), name=name)
                (authors if rel_type == "author" else artists).append(creator)

        return cls(
            id=manga_id,
            updated_at=parse_timestamp(attributes.get("updatedAt")),
            titles=_string_map(attributes.get("title")),
            alt_titles=[
                _string_map(item)
                for item in attributes.get("altTitles") or []
                if _string_map(item)
            ],
            descriptions=_string_map(attributes.get("description")),
            status=_optional_str(attributes.get("status")),
            year=_optional_int(attributes.get("year")),
            original_language=_optional_str(attributes.get("originalLanguage")),
            content_rating=_optional_str(attributes.get("contentRating")),
            tags=tags,
            cover_file_name=cover_file_name,
            authors=authors,
            artists=artists,
            attributes=dict(attributes),
            relationships=[dict(item) for item in relationships],
        )


@dataclass(frozen=True)
class ChapterEvent:
    id: str
    manga_id: str | None
    updated_at: datetime | None
    chapter: str | None
    volume: str | None
    translated_language: str | None

    @classmethod
    def from_api_dict(cls, data: Mapping[str, Any]) -> ChapterEvent:
        chapter_id = _require_id(data, "chapter")
        attributes = data.get("attributes")
        if not isinstance(attributes, Mapping):
            attributes = {}
        manga_id = next(
            (
                _optional_str(rel.get("id"))
                for rel in _relationships(data)
                if rel.get("type") == "manga"
            ),
            None,
        )
        return cls(
            id=chapter_id,
            manga_id=manga_id,
            updated_at=parse_timestamp(attributes.get("updatedAt")),
            chapter=_optional_str(attributes.get("chapter")),
            volume=_optional_str(attributes.get("volume")),
            translated_language=_optional_str(attributes.get("translatedLanguage")),
        )


@dataclass(frozen=True)
class CoverRecord:
    id: str
    file_name: str
    volume: str | None
    locale: str | None

    @classmethod
    def from_api_dict(cls, data: Mapping[str, Any]) -> CoverRecord:
        cover_id = _require_id(data, "cover")
        attributes = data.get("attributes")
        if not isinstance(attributes, Mapping):
            attributes = {}
        file_name = _optional_str(attributes.get("fileName"))
        if file_name is None:
            raise MangaDexParseError(f"cover {cover_id} is missing a fileName")
        return cls(
            id=cover_id,
            file_name=file_name,
            volume=_optional_str(attributes.get("volume")),
            locale=_optional_str(attributes.get("locale")),
        )


@dataclass(frozen=True)
class AggregateVolume:
    volume: str
    chapters: list[str]


@dataclass(frozen=True)
class AggregateRecord:
    volumes: list[AggregateVolume]

    @classmethod
    def from_api_dict(cls, data: Mapping[str, Any]) -> AggregateRecord:
        raw_volumes = data.get("volumes")
        # The API answers with an empty list instead of an empty object.
        if isinstance(raw_volumes, list) or raw_volumes is None:
            return cls(volumes=[])
        if not isinstance(raw_volumes, Mapping):
            raise MangaDexParseError("aggregate payload has no volumes mapping")

        volumes: list[AggregateVolume] = []
        for volume_key, volume_value in raw_volumes.items():
            if not isinstance(volume_value, Mapping):
                continue
            raw_chapters = volume_value.get("chapters")
            chapter_keys: list[str] = []
            if isinstance(raw_chapters, Mapping):
                chapter_keys = [
                    str(chapter.get("chapter") or key)
                    for key, chapter in raw_chapters.items()
                    if isinstance(chapter, Mapping)
                ]
            elif isinstance(raw_chapters, list):
                chapter_keys = [
                    str(chapter.get("chapter"))
                    for chapter in raw_chapters
                    if isinstance(chapter, Mapping) and chapter.get("chapter") is not None
                ]
            volumes.append(
                AggregateVolume(
                    volume=str(volume_value.get("volume") or volume_key),
                    chapters=chapter_keys,
                )
            )
        return cls(volumes=volumes)


@dataclass(frozen=True)
class FeedPage(Generic[T]):
    items: list[T]
    total: int | None
    limit: int
    offset: int
