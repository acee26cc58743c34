"""OpenAI extraction service.

Implements the core ExtractionService port. Every step is one chat
completion in JSON mode; the raw response text is returned unparsed and
validated by the core extraction adapter.
"""

from __future__ import annotations

import json
import logging
from typing import Optional

from openai import AsyncOpenAI

LOGGER = logging.getLogger(__name__)

FILTER_SPLIT_PROMPT = (
    "You read Bulgarian announcements about infrastructure disruptions (water, heating, "
    "electricity, road works, public transport). Split the text into independent "
    "announcements. Return a JSON object {\"items\": [...]} where each item has "
    "plainText, markdownText, isRelevant (true only for disruptions affecting a "
    "specific place) and responsibleEntity."
)

CATEGORIZE_PROMPT = (
    "Classify the announcement. Return a JSON object with categories (a list of "
    "lowercase snake_case category names such as water, heating, electricity, "
    "road_block, public_transport, construction) and busStops (a list of stop codes "
    "mentioned in the text). Return an empty categories list if none apply."
)

EXTRACT_LOCATIONS_PROMPT = (
    "Extract every location from the announcement. Return a JSON object with pins "
    "(address, timespans), streets (street, from, to, timespans), cadastralProperties "
    "(identifier, timespans), busStops and cityWide. Every timespan is an object with "
    "start and end formatted as DD.MM.YYYY HH:MM in local time. Intersections are "
    "written as \"street A & street B\"."
)


class OpenAIExtractionService:
    """ExtractionService backed by the OpenAI chat completions API."""

    def __init__(
        self,
        client: Optional[AsyncOpenAI] = None,
        model: str = "gpt-4o-mini",
        temperature: float = 0.0,
    ) -> None:
        # AsyncOpenAI reads OPENAI_API_KEY from the environment.
        self._client = client or AsyncOpenAI()
        self._model = model
        self._temperature = temperature

    async def _complete(self, system_prompt: str, text: str) -> Optional[str]:
        response = await self._client.chat.completions.create(
            model=self._model,
            messages=[
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": text},
            ],
            temperature=self._temperature,
            response_format={"type": "json_object"},
        )
        content = response.choices[0].message.content
        return content.strip() if content else None

    async def filter_and_split(self, text: str) -> Optional[str]:
        content = await self._complete(FILTER_SPLIT_PROMPT, text)
        if not content:
            return content
        # JSON mode only returns objects; unwrap the item list.
        try:
            parsed = json.loads(content)
        except json.JSONDecodeError:
            return content
        if isinstance(parsed, dict) and isinstance(parsed.get("items"), list):
            return json.dumps(parsed["items"], ensure_ascii=False)
        return content

    async def categorize(self, text: str) -> Optional[str]:
        return await self._complete(CATEGORIZE_PROMPT, text)

    async def extract_locations(self, text: str) -> Optional[str]:
        return await self._complete(EXTRACT_LOCATIONS_PROMPT, text)
