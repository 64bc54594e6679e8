from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
import re
from typing import Any, Iterable, Mapping

from app.services.mangadex.types import Creator, MangaRecord

_SLUG_QUOTES_RE = re.compile(r"['\"]")
_SLUG_SEPARATOR_RE = re.compile(r"[^a-z0-9]+")
_SAFE_PART_RE = re.compile(r"[^a-zA-Z0-9._-]+")
_COVER_RENDITION_SUFFIXES = ("", ".original.jpg", ".1024.jpg", ".512.jpg", ".256.jpg")
_SAFE_PART_MAX_LENGTH = 50


@dataclass(frozen=True)
class NormalizedTitles:
    title: str
    title_english: str | None
    title_native: str | None
    title_preferred: str | None


@dataclass(frozen=True)
class NormalizedManga:
    external_id: str
    updated_at: datetime | None
    titles: NormalizedTitles
    description: str | None
    status: str | None
    publication_year: int | None
    original_language: str | None
    content_rating: str | None
    genres: list[str]
    themes: list[str]
    cover_candidates: list[str]
    authors: list[Creator] = field(default_factory=list)
    artists: list[Creator] = field(default_factory=list)
    snapshot: dict[str, Any] = field(default_factory=dict, repr=False)

    @property
    def merged_genres(self) -> list[str]:
        return sorted_unique([*self.genres, *self.themes])

    @property
    def cover_url(self) -> str | None:
        return self.cover_candidates[0] if self.cover_candidates else None

    @property
    def slug_source(self) -> str:
        return (
            self.titles.title_preferred
            or self.titles.title_english
            or self.titles.title
            or placeholder_title(self.external_id)
        )


def placeholder_title(external_id: str) -> str:
    return f"mangadex-{external_id}"


def pick_lang(values: Mapping[str, str] | None, preferred: Iterable[str] = ("en",)) -> str | None:
    if not values:
        return None
    for lang in preferred:
        if values.get(lang):
            return values[lang]
    # First entry wins when no preferred language is present.
    return next(iter(values.values()), None)


def normalize_titles(record: MangaRecord) -> NormalizedTitles:
    title_en = record.titles.get("en") or None
    title_ja = record.titles.get("ja") or record.titles.get("jp") or None
    title_any = title_en or title_ja or pick_lang(record.titles, ())
    alt_en = next(
        (item["en"] for item in record.alt_titles if item.get("en")),
        None,
    )
    preferred = title_en or alt_en or title_any or title_ja
    return NormalizedTitles(
        title=title_any or preferred or placeholder_title(record.id),
        title_english=title_en or alt_en,
        title_native=title_ja,
        title_preferred=preferred,
    )


def normalize_description(record: MangaRecord) -> str | None:
    descriptions = record.descriptions
    value = (
        descriptions.get("en")
        or descriptions.get("ja")
        or descriptions.get("jp")
        or pick_lang(descriptions, ())
    )
    return value.strip() if value and value.strip() else None


def normalize_status(record: MangaRecord) -> str | None:
    status = (record.status or "").strip().lower()
    return status or None


def sorted_unique(values: Iterable[str]) -> list[str]:
    return sorted(set(values), key=lambda value: (value.casefold(), value))


def split_tags(record: MangaRecord) -> tuple[list[str], list[str]]:
    genres: list[str] = []
    themes: list[str] = []
    for tag in record.tags:
        name = pick_lang(tag.names, ("en",))
        if not name:
            continue
        # Format/content tags stay out of the genre taxonomy.
        if tag.group == "genre":
            genres.append(name)
        elif tag.group == "theme":
            themes.append(name)
    return sorted_unique(genres), sorted_unique(themes)


def unique_creators(creators: Iterable[Creator]) -> list[Creator]:
    seen: set[str] = set()
    result: list[Creator] = []
    for creator in creators:
        key = creator.name.strip().lower()
        if not key or key in seen:
            continue
        seen.add(key)
        result.append(creator)
    return result


def cover_candidates(*, uploads_base_url: str, manga_id: str, file_name: str | None) -> list[str]:
    if not file_name:
        return []
    base = f"{uploads_base_url.rstrip('/')}/covers/{manga_id}/{file_name}"
    return [f"{base}{suffix}" for suffix in _COVER_RENDITION_SUFFIXES]


def slugify(value: str | None) -> str:
    slug = (value or "").lower().strip()
    slug = _SLUG_QUOTES_RE.sub("", slug)
    slug = _SLUG_SEPARATOR_RE.sub("-", slug)
    slug = slug.strip("-")
    return slug or "untitled"


def safe_part(value: str | None) -> str:
    cleaned = (value or "").strip()
    if not cleaned:
        return "unknown"
    return _SAFE_PART_RE.sub("-", cleaned)[:_SAFE_PART_MAX_LENGTH]


def _slim_relationships(record: MangaRecord) -> list[dict[str, Any]]:
    slim: list[dict[str, Any]] = []
    for relationship in record.relationships:
        attributes = relationship.get("attributes") or {}
        entry: dict[str, Any] = {
            "id": relationship.get("id"),
            "type": relationship.get("type"),
        }
        if attributes.get("name"):
            entry["name"] = attributes["name"]
        if attributes.get("fileName"):
            entry["fileName"] = attributes["fileName"]
        slim.append(entry)
    return slim


def normalize_manga(record: MangaRecord, *, uploads_base_url: str) -> NormalizedManga:
    titles = normalize_titles(record)
    genres, themes = split_tags(record)
    candidates = cover_candidates(
        uploads_base_url=uploads_base_url,
        manga_id=record.id,
        file_name=record.cover_file_name,
    )
    authors = unique_creators(record.authors)
    artists = unique_creators(record.artists)
    description = normalize_description(record)
    status = normalize_status(record)
    snapshot = {
        "mangadex_id": record.id,
        "updated_at": record.updated_at.isoformat() if record.updated_at else None,
        "attributes": dict(record.attributes),
        "relationships": _slim_relationships(record),
        "normalized": {
            "title": titles.title,
            "title_english": titles.title_english,
            "title_native": titles.title_native,
            "title_preferred": titles.title_preferred,
            "status": status,
            "genres": genres,
            "themes": themes,
            "cover_url": candidates[0] if candidates else None,
            "cover_candidates": candidates,
            "authors": [{"id": item.id, "name": item.name} for item in authors],
            "artists": [{"id": item.id, "name": item.name} for item in artists],
        },
    }
    return NormalizedManga(
        external_id=record.id,
        updated_at=record.updated_at,
        titles=titles,
        description=description,
        status=status,
        publication_year=record.year,
        original_language=record.original_language,
        content_rating=record.content_rating,
        genres=genres,
        themes=themes,
        cover_candidates=candidates,
        authors=authors,
        artists=artists,
        snapshot=snapshot,
    )
