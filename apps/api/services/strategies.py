"""Hashtag strategy catalog."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


class StrategyType(str, Enum):
    PILLAR = "PILLAR"
    NICHE_DOMINANCE = "NICHE_DOMINANCE"
    VIRAL_TRENDING = "VIRAL_TRENDING"
    MIXED_BAG = "MIXED_BAG"


@dataclass(frozen=True)
class Strategy:
    id: StrategyType
    name: str
    description: str
    distribution: Tuple[Tuple[str, int], ...]
    prompt_context: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id.value,
            "name": self.name,
            "description": self.description,
            "distribution": [{"name": label, "value": value} for label, value in self.distribution],
            "prompt_context": self.prompt_context,
        }


STRATEGIES: Tuple[Strategy, ...] = (
    Strategy(
        id=StrategyType.PILLAR,
        name="The Pillar Method",
        description=(
            "Balanced mix of high-traffic, medium-sized, and community-specific tags "
            "to maximize both reach and engagement."
        ),
        distribution=(("Broad (High Vol)", 20), ("Niche (Mid Vol)", 60), ("Community (Low Vol)", 20)),
        prompt_context=(
            "Use the 'Pillar Strategy': Provide 30 hashtags. 20% should be broad/high volume (1M+ posts), "
            "60% should be highly relevant niche tags (50k-500k posts), and 20% should be specific "
            "community/low volume tags (<50k posts). Group them explicitly by these categories."
        ),
    ),
    Strategy(
        id=StrategyType.NICHE_DOMINANCE,
        name="Niche Dominance",
        description=(
            "Focus purely on specific, highly relevant keywords to dominate smaller explore pages "
            "and rank higher."
        ),
        distribution=(("Ultra Specific", 50), ("Descriptive", 50)),
        prompt_context=(
            "Use the 'Niche Dominance' strategy: Provide 30 hashtags that are highly specific to the topic. "
            "Avoid generic one-word tags. Focus on multi-word tags that describe the visual content and "
            "the target audience precisely."
        ),
    ),
    Strategy(
        id=StrategyType.VIRAL_TRENDING,
        name="Viral & Trending",
        description=(
            "Search for what is currently trending around this topic to ride the wave of popularity."
        ),
        distribution=(("Trending Now", 70), ("Evergreen", 30)),
        prompt_context=(
            "Use the 'Viral Strategy': Use web search to identify CURRENT trending topics and challenges "
            "related to this theme. Provide hashtags that are spiking in popularity right now, combined "
            "with strong evergreen tags."
        ),
    ),
    Strategy(
        id=StrategyType.MIXED_BAG,
        name="The 3x3 Matrix",
        description="A diversified portfolio of hashtags targeting location, subject, and community equally.",
        distribution=(("Subject", 33), ("Location/Context", 33), ("Community", 34)),
        prompt_context=(
            "Use the '3x3 Matrix Strategy': Divide hashtags into 3 equal groups: 1. Subject-based "
            "(what is in the photo), 2. Context/Location-based (where/vibes), 3. Community-based "
            "(who is this for)."
        ),
    ),
)

_STRATEGY_INDEX: Dict[StrategyType, Strategy] = {strategy.id: strategy for strategy in STRATEGIES}


def get_strategy(value: Any) -> Optional[Strategy]:
    """Resolve a strategy by enum member or case-insensitive id."""
    if isinstance(value, StrategyType):
        return _STRATEGY_INDEX.get(value)
    text = str(value or "").strip().upper()
    try:
        return _STRATEGY_INDEX.get(StrategyType(text))
    except ValueError:
        return None


def list_strategies() -> List[Dict[str, Any]]:
    return [strategy.to_dict() for strategy in STRATEGIES]
