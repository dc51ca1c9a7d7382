from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from typing import Any, Protocol

from minutes_pipeline.http_client import http_json

logger = logging.getLogger(__name__)

NOTION_API_BASE = "https://api.notion.com/v1"
NOTION_VERSION = "2022-06-28"
RICH_TEXT_LIMIT = 2000
CHILDREN_PER_REQUEST = 100

SECTION_PROPERTIES = (
    ("basicInfo", "Basic Info"),
    ("purpose", "Purpose & Agenda"),
    ("content", "Discussion & Decisions"),
    ("schedule", "Schedule & Tasks"),
    ("resources", "Resources"),
    ("notes", "Notes"),
)
TITLE_PROPERTY = "Meeting Name"


@dataclass(frozen=True)
class KnowledgePage:
    page_id: str
    url: str
    title: str


class KnowledgeBase(Protocol):
    def create_minutes_page(
        self,
        *,
        summary: dict[str, str],
        transcript: str,
        transcript_url: str,
        video_url: str | None = None,
    ) -> KnowledgePage: ...


def chunk_text(text: str, size: int = RICH_TEXT_LIMIT) -> list[str]:
    return [text[i : i + size] for i in range(0, len(text), size)] if text else []


def _rich_text(value: str) -> list[dict[str, Any]]:
    return [{"text": {"content": value[:RICH_TEXT_LIMIT]}}]


def build_page_properties(
    *,
    summary: dict[str, str],
    transcript_url: str,
    video_url: str | None = None,
) -> dict[str, Any]:
    properties: dict[str, Any] = {
        TITLE_PROPERTY: {"title": _rich_text(summary.get("meetingName") or "Meeting minutes")},
    }
    for key, name in SECTION_PROPERTIES:
        properties[name] = {"rich_text": _rich_text(summary.get(key) or "")}
    properties["Transcript_URL"] = {"url": transcript_url or None}
    if video_url:
        properties["Video_URL"] = {"url": video_url}
    return properties


def build_transcript_blocks(transcript: str) -> list[dict[str, Any]]:
    blocks: list[dict[str, Any]] = [
        {
            "object": "block",
            "type": "heading_2",
            "heading_2": {"rich_text": _rich_text("Transcript")},
        }
    ]
    for chunk in chunk_text(transcript):
        blocks.append(
            {
                "object": "block",
                "type": "paragraph",
                "paragraph": {"rich_text": _rich_text(chunk)},
            }
        )
    return blocks


class NotionKnowledgeBase:
    """Creates one minutes page per job in a Notion database."""

    def __init__(
        self,
        *,
        api_key: str,
        database_id: str,
        timeout_s: float = 30.0,
        api_base: str = NOTION_API_BASE,
    ) -> None:
        if not api_key or not database_id:
            raise ValueError("NOTION_API_KEY and NOTION_DATABASE_ID must be set")
        self._api_key = api_key
        self._database_id = database_id
        self._timeout_s = timeout_s
        self._api_base = api_base.rstrip("/")

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self._api_key}",
            "Notion-Version": NOTION_VERSION,
        }

    def create_minutes_page(
        self,
        *,
        summary: dict[str, str],
        transcript: str,
        transcript_url: str,
        video_url: str | None = None,
    ) -> KnowledgePage:
        blocks = build_transcript_blocks(transcript)
        page = http_json(
            f"{self._api_base}/pages",
            method="POST",
            payload={
                "parent": {"database_id": self._database_id},
                "properties": build_page_properties(
                    summary=summary,
                    transcript_url=transcript_url,
                    video_url=video_url,
                ),
                "children": blocks[:CHILDREN_PER_REQUEST],
            },
            headers=self._headers(),
            timeout_s=self._timeout_s,
            upstream="notion",
        )
        page_id = str(page.get("id", ""))
        for start in range(CHILDREN_PER_REQUEST, len(blocks), CHILDREN_PER_REQUEST):
            http_json(
                f"{self._api_base}/blocks/{page_id}/children",
                method="PATCH",
                payload={"children": blocks[start : start + CHILDREN_PER_REQUEST]},
                headers=self._headers(),
                timeout_s=self._timeout_s,
                upstream="notion",
            )
        logger.info("notion_page_created page_id=%s blocks=%s", page_id, len(blocks))
        return KnowledgePage(
            page_id=page_id,
            url=str(page.get("url", "")),
            title=summary.get("meetingName") or "Meeting minutes",
        )


class InMemoryKnowledgeBase:
    def __init__(self) -> None:
        self.pages: list[dict[str, Any]] = []

    def create_minutes_page(
        self,
        *,
        summary: dict[str, str],
        transcript: str,
        transcript_url: str,
        video_url: str | None = None,
    ) -> KnowledgePage:
        page_id = uuid.uuid4().hex
        self.pages.append(
            {
                "id": page_id,
                "properties": build_page_properties(
                    summary=summary,
                    transcript_url=transcript_url,
                    video_url=video_url,
                ),
                "children": build_transcript_blocks(transcript),
            }
        )
        return KnowledgePage(
            page_id=page_id,
            url=f"https://notion.local/{page_id}",
            title=summary.get("meetingName") or "Meeting minutes",
        )

    def reset(self) -> None:
        self.pages.clear()
