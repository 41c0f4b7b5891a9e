"""Priority heuristics that order batch items before processing.

Scores are cheap keyword / count estimates over whatever attributes the
dashboard already holds for an item (title, headline, follower count, ...).
Items without attributes score 0 and keep their input order.

Scoring logic:
- expertise_potential: talent/people/HR/leadership keyword hits + seniority
- engagement_level: followers and posts on a log scale + recent activity
- company_relevance: target industry keywords + company size band
- random: stable pseudo-random value seeded by the item id
"""

import math
import random
from enum import Enum
from typing import Mapping, Optional, Sequence


class PriorityOrder(str, Enum):
    EXPERTISE_POTENTIAL = "expertise_potential"
    ENGAGEMENT_LEVEL = "engagement_level"
    COMPANY_RELEVANCE = "company_relevance"
    RANDOM = "random"


class PriorityScorer:
    """Keyword and count based priority estimates (0-100)."""

    EXPERTISE_KEYWORDS = {
        "talent management": ["talent management", "talent acquisition", "succession", "workforce planning"],
        "people development": ["people development", "learning and development", "l&d", "career development", "coaching"],
        "hr technology": ["hr tech", "hris", "people analytics", "hr systems", "workday", "successfactors"],
        "leadership": ["leadership", "chief people", "chro", "people officer", "culture"],
    }

    SENIORITY = [
        (["ceo", "chief", "founder", "president"], 30),
        (["vp", "vice president", "svp"], 25),
        (["director", "head of"], 20),
        (["manager", "lead"], 10),
    ]

    INDUSTRY_KEYWORDS = {
        "technology": ["technology", "software", "saas", "cloud", "tech"],
        "professional services": ["consulting", "advisory", "professional services"],
        "financial services": ["financial", "banking", "investment", "insurance"],
        "healthcare": ["healthcare", "biotech", "pharmaceutical", "medical"],
    }

    COMPANY_SIZE_BANDS = [
        (10000, 40),
        (1000, 35),
        (200, 25),
        (50, 15),
        (1, 5),
    ]

    def score(self, order: PriorityOrder, item_id: str, attributes: Optional[Mapping] = None) -> float:
        attributes = attributes or {}
        order = PriorityOrder(order)
        if order == PriorityOrder.RANDOM:
            return self._stable_random(item_id)
        if order == PriorityOrder.EXPERTISE_POTENTIAL:
            return self._expertise(attributes)
        if order == PriorityOrder.ENGAGEMENT_LEVEL:
            return self._engagement(attributes)
        return self._company_relevance(attributes)

    @staticmethod
    def _text(attributes: Mapping, *keys: str) -> str:
        return " ".join(str(attributes.get(key) or "") for key in keys).lower()

    @staticmethod
    def _stable_random(item_id: str) -> float:
        return random.Random(f"batch-priority:{item_id}").random() * 100

    def _expertise(self, attributes: Mapping) -> float:
        text = self._text(attributes, "title", "headline", "summary")
        if not text.strip():
            return 0.0

        area_hits = sum(
            1 for keywords in self.EXPERTISE_KEYWORDS.values()
            if any(keyword in text for keyword in keywords)
        )
        seniority = next(
            (weight for patterns, weight in self.SENIORITY if any(p in text for p in patterns)),
            0,
        )
        return float(min(100, area_hits * 17.5 + seniority))

    def _engagement(self, attributes: Mapping) -> float:
        followers = float(attributes.get("followers") or 0)
        posts = float(attributes.get("post_count") or 0)
        score = min(50.0, math.log10(followers + 1) * 12.5)  # 10k followers -> 50
        score += min(30.0, math.log10(posts + 1) * 15)  # 100 posts -> 30
        if attributes.get("recently_active"):
            score += 20
        return round(min(100.0, score), 2)

    def _company_relevance(self, attributes: Mapping) -> float:
        text = self._text(attributes, "industry", "company", "company_description")
        score = 0.0
        if any(
            keyword in text
            for keywords in self.INDUSTRY_KEYWORDS.values()
            for keyword in keywords
        ):
            score += 60

        size = attributes.get("company_size")
        if isinstance(size, (int, float)) and size > 0:
            score += next(weight for floor, weight in self.COMPANY_SIZE_BANDS if size >= floor)
        return min(100.0, score)

    def order(
        self,
        order: PriorityOrder,
        item_ids: Sequence[str],
        attributes: Optional[Mapping[str, Mapping]] = None,
    ) -> list[tuple[str, float]]:
        """Items with their scores, highest first; ties keep input order."""
        attributes = attributes or {}
        scored = [
            (item_id, self.score(order, item_id, attributes.get(item_id)))
            for item_id in item_ids
        ]
        # sorted() is stable
        return sorted(scored, key=lambda pair: pair[1], reverse=True)
