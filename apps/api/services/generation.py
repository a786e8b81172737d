"""Search-grounded caption and hashtag generation."""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from openai import AsyncOpenAI

from config import require_openai_api_key, settings
from services.errors import GenerationFailed
from services.strategies import Strategy

logger = logging.getLogger(__name__)

EMPTY_RESPONSE_TEXT = "No suggestions generated."
CAPTION_FALLBACK = "Could not generate caption."

SECTION_MARKER_RE = re.compile(r"## (CAPTION|HASHTAGS|ANALYSIS)", re.IGNORECASE)
HASHTAG_RE = re.compile(r"#[a-zA-Z0-9_]+")

SYSTEM_INSTRUCTION = """You are an expert social media manager specializing in Instagram growth.
Your goal is to generate a VIRAL CAPTION and the best hashtags for a user's post.
You MUST use web search to validate that tags are relevant and currently active.

STRICT OUTPUT FORMAT:
1. Start with the header "## CAPTION" followed by a highly engaging, hook-based caption (max 2 sentences) with 1-2 emojis.
2. Next, use the header "## HASHTAGS" followed by the hashtags grouped by category.
3. Finally, use the header "## ANALYSIS" followed by a brief strategy breakdown.
"""


@dataclass(frozen=True)
class GroundingSource:
    uri: str
    title: Optional[str] = None

    def to_dict(self) -> Dict[str, Optional[str]]:
        return {"title": self.title, "uri": self.uri}


@dataclass(frozen=True)
class ParsedGeneration:
    caption: str
    hashtags: Tuple[str, ...]
    analysis: str


@dataclass(frozen=True)
class GenerationResult:
    caption: str
    hashtags: Tuple[str, ...]
    analysis: str
    strategy_used: str
    sources: Tuple[GroundingSource, ...] = field(default_factory=tuple)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "caption": self.caption,
            "hashtags": list(self.hashtags),
            "analysis": self.analysis,
            "sources": [source.to_dict() for source in self.sources],
            "strategy_used": self.strategy_used,
        }


def build_user_prompt(theme: str, strategy: Strategy) -> str:
    return (
        f'Theme: "{theme}"\n'
        f"Strategy: {strategy.name}\n"
        f"Strategy Rules: {strategy.prompt_context}\n\n"
        "Task:\n"
        "1. Write a viral caption.\n"
        f'2. Search for current trends related to "{theme}".\n'
        "3. Provide optimized hashtags based on the strategy.\n"
        "4. Explain the choice."
    )


def _split_sections(text: str) -> Dict[str, str]:
    """Map each marker to its content, running until the next marker or end of text."""
    markers = list(SECTION_MARKER_RE.finditer(text))
    sections: Dict[str, str] = {}
    for index, match in enumerate(markers):
        name = match.group(1).upper()
        if name in sections:
            continue
        end = markers[index + 1].start() if index + 1 < len(markers) else len(text)
        sections[name] = text[match.end():end]
    return sections


def extract_hashtags(text: str) -> Tuple[str, ...]:
    # Case-sensitive dedup; first-seen order keeps the output stable.
    return tuple(dict.fromkeys(HASHTAG_RE.findall(text or "")))


def parse_generation_text(text: str) -> ParsedGeneration:
    """Parse the ``## CAPTION`` / ``## HASHTAGS`` / ``## ANALYSIS`` layout."""
    raw = text or EMPTY_RESPONSE_TEXT
    sections = _split_sections(raw)

    caption_section = sections.get("CAPTION")
    hashtags_section = sections.get("HASHTAGS")
    analysis_section = sections.get("ANALYSIS")

    caption = caption_section.strip() if caption_section is not None else CAPTION_FALLBACK
    if analysis_section is not None:
        analysis = analysis_section.strip()
    elif hashtags_section is None:
        analysis = raw
    else:
        analysis = ""

    hashtags = extract_hashtags(hashtags_section if hashtags_section is not None else raw)
    return ParsedGeneration(caption=caption, hashtags=hashtags, analysis=analysis)


def _field(obj: Any, name: str) -> Any:
    if isinstance(obj, dict):
        return obj.get(name)
    return getattr(obj, name, None)


def extract_sources(message: Any) -> Tuple[GroundingSource, ...]:
    """Collect ``url_citation`` annotations as grounding sources; entries without a uri are dropped."""
    sources: List[GroundingSource] = []
    for annotation in _field(message, "annotations") or []:
        if _field(annotation, "type") != "url_citation":
            continue
        citation = _field(annotation, "url_citation")
        uri = str(_field(citation, "url") or "").strip() if citation is not None else ""
        if not uri:
            continue
        title = _field(citation, "title")
        sources.append(GroundingSource(uri=uri, title=str(title) if title else None))
    return tuple(sources)


def get_openai_client(timeout_seconds: float) -> AsyncOpenAI:
    return AsyncOpenAI(api_key=require_openai_api_key(), timeout=timeout_seconds, max_retries=0)


class GenerationClient:
    """Calls the search-enabled model and turns its answer into a ``GenerationResult``."""

    def __init__(
        self,
        client: Optional[AsyncOpenAI] = None,
        model: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
    ):
        self._client = client
        self.model = model or settings.GENERATION_MODEL
        self.timeout_seconds = float(timeout_seconds or settings.GENERATION_TIMEOUT_SECONDS)

    def _get_client(self) -> AsyncOpenAI:
        if self._client is None:
            self._client = get_openai_client(self.timeout_seconds)
        return self._client

    async def generate(self, theme: str, strategy: Strategy) -> GenerationResult:
        theme = (theme or "").strip()
        if not theme:
            raise GenerationFailed(ValueError("theme must not be empty"))

        try:
            client = self._get_client()
            response = await asyncio.wait_for(
                client.chat.completions.create(
                    model=self.model,
                    web_search_options={},
                    messages=[
                        {"role": "system", "content": SYSTEM_INSTRUCTION},
                        {"role": "user", "content": build_user_prompt(theme, strategy)},
                    ],
                ),
                timeout=self.timeout_seconds,
            )
            message = response.choices[0].message
        except asyncio.TimeoutError as exc:
            logger.warning("Generation timed out after %ss for theme %r", self.timeout_seconds, theme)
            raise GenerationFailed(exc) from exc
        except Exception as exc:
            logger.error("Generation provider error: %s", exc)
            raise GenerationFailed(exc) from exc

        text = message.content or ""
        parsed = parse_generation_text(text)
        return GenerationResult(
            caption=parsed.caption,
            hashtags=parsed.hashtags,
            analysis=parsed.analysis,
            strategy_used=strategy.id.value,
            sources=extract_sources(message),
        )
