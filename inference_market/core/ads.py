"""
Ad ledger: sponsorable inventory, relevance scoring and revenue tracking.

Relevance = 10 * shared keywords + 20 if the ad's category is preferred by the
user + 15 if the request asks for that category + 100 * CTR. Ads scoring at
or below the relevance floor are never shown.

Revenue counters (per ad and per ledger day bucket) only ever increase.
"""

import logging
import re
from dataclasses import dataclass, field, replace
from datetime import date, datetime, timedelta
from decimal import Decimal
from threading import RLock
from typing import Callable, Dict, FrozenSet, Iterable, List, Optional, Sequence

from .errors import InvalidUsageError, NotFoundError
from .pricing import Number, to_money

logger = logging.getLogger(__name__)

DEFAULT_COOLDOWN_MS = 300_000
DEFAULT_RELEVANCE_FLOOR = 5.0
DEFAULT_CATEGORIES = ("technology", "entertainment")
AD_FREQUENCIES = ("normal", "off")

_NON_WORD = re.compile(r"[^\w\s]")
_SENTENCE_BREAK = re.compile(r"[.!?]+\s+")


@dataclass
class Ad:
    """A sponsorable content unit and its running counters."""
    id: str
    category: str
    content: str
    keywords: FrozenSet[str]
    cpm: Decimal  # Revenue per 1000 impressions
    ctr: float  # Click-through rate in [0, 1]
    impressions: int = 0
    clicks: int = 0
    revenue: Decimal = field(default_factory=Decimal)
    last_shown_at: Optional[datetime] = None

    def __post_init__(self):
        """Normalise keywords and validate pricing figures."""
        self.keywords = frozenset(k.lower() for k in self.keywords)
        self.cpm = to_money(self.cpm)
        if self.cpm <= 0:
            raise ValueError(f"Ad {self.id}: cpm must be > 0")
        if not 0 <= self.ctr <= 1:
            raise ValueError(f"Ad {self.id}: ctr must be within [0, 1]")


@dataclass
class UserPreference:
    """Per-user targeting state."""
    user_id: str
    preferred_categories: List[str]
    ad_frequency: str = "normal"
    last_activity: Optional[datetime] = None


@dataclass(frozen=True)
class RankedAd:
    """An ad that cleared the relevance floor, with its score."""
    ad: Ad
    relevance: float


@dataclass(frozen=True)
class AdPlacement:
    """Result of splicing an ad into a prompt."""
    ad: Ad
    relevance: float
    prompt: str


class RevenueLedger:
    """Day-bucketed totals of ad and inference revenue."""

    def __init__(self):
        self.daily_totals: Dict[date, Decimal] = {}
        self.grand_total = Decimal(0)
        self.ad_total = Decimal(0)
        self.inference_total = Decimal(0)

    def record(self, amount: Decimal, day: date, source: str) -> None:
        if amount < 0:
            raise InvalidUsageError(f"revenue amount cannot be negative: {amount}")
        self.daily_totals[day] = self.daily_totals.get(day, Decimal(0)) + amount
        self.grand_total += amount
        if source == "inference":
            self.inference_total += amount
        else:
            self.ad_total += amount

    def total_on(self, day: date) -> Decimal:
        return self.daily_totals.get(day, Decimal(0))

    def reset(self) -> None:
        """Operator action: clear every total."""
        self.daily_totals.clear()
        self.grand_total = Decimal(0)
        self.ad_total = Decimal(0)
        self.inference_total = Decimal(0)


# Seed inventory served when no configuration overrides it
DEFAULT_AD_INVENTORY = (
    dict(
        id="tech_001",
        category="technology",
        content=("Try our new AI-powered development tools! Boost your productivity "
                 "with intelligent code completion and automated testing."),
        keywords=["code", "programming", "development", "software"],
        cpm="2.50",
        ctr=0.025,
    ),
    dict(
        id="tech_002",
        category="technology",
        content=("Experience next-gen gaming with our cloud gaming platform! Play AAA "
                 "titles on any device with ultra-low latency."),
        keywords=["gaming", "games", "entertainment", "performance"],
        cpm="3.00",
        ctr=0.030,
    ),
    dict(
        id="finance_001",
        category="finance",
        content=("Start investing smarter with AI-driven portfolio management! Get "
                 "personalized investment strategies and real-time market insights."),
        keywords=["money", "investment", "finance", "trading"],
        cpm="4.00",
        ctr=0.020,
    ),
    dict(
        id="health_001",
        category="health",
        content=("Transform your fitness journey with an AI personal trainer! Get "
                 "customized workout plans and nutrition advice."),
        keywords=["fitness", "health", "workout", "nutrition"],
        cpm="3.50",
        ctr=0.025,
    ),
    dict(
        id="edu_001",
        category="education",
        content=("Master new skills with an AI-powered learning platform! Personalized "
                 "courses in programming, design, and business."),
        keywords=["learning", "education", "courses", "skills"],
        cpm="2.00",
        ctr=0.035,
    ),
)


def extract_keywords(text: str) -> FrozenSet[str]:
    """Lowercased words longer than three characters, punctuation removed."""
    words = _NON_WORD.sub("", text.lower()).split()
    return frozenset(w for w in words if len(w) > 3)


def compute_relevance(
    prompt_keywords: Iterable[str],
    ad: Ad,
    user_prefs: UserPreference,
    requested_categories: Optional[Iterable[str]] = None,
) -> float:
    """Relevance of an ad for a prompt and a user."""
    shared = len(set(prompt_keywords) & ad.keywords)
    score = 10.0 * shared
    if ad.category in user_prefs.preferred_categories:
        score += 20
    if requested_categories and ad.category in requested_categories:
        score += 15
    score += 100 * ad.ctr
    return score


def splice_ad(prompt: str, ad: Ad) -> str:
    """Insert the sponsored block once, keeping the prompt text intact.

    Prompts with at least two sentence breaks get the block at the middle
    break; shorter prompts get it appended.
    """
    block = f"\n\n[Sponsored: {ad.content}]\n\n"
    breaks = list(_SENTENCE_BREAK.finditer(prompt))
    if len(breaks) >= 2:
        cut = breaks[len(breaks) // 2].end()
        return prompt[:cut] + block + prompt[cut:]
    return prompt + block


class AdLedger:
    """Owns the ad inventory, user preferences and the revenue ledger."""

    def __init__(
        self,
        inventory: Optional[Iterable[dict]] = None,
        cooldown_ms: int = DEFAULT_COOLDOWN_MS,
        relevance_floor: float = DEFAULT_RELEVANCE_FLOOR,
        default_categories: Sequence[str] = DEFAULT_CATEGORIES,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.cooldown_ms = cooldown_ms
        self.relevance_floor = relevance_floor
        self.default_categories = list(default_categories)
        self.revenue_ledger = RevenueLedger()
        self._clock = clock
        self._ads: Dict[str, Ad] = {}
        self._preferences: Dict[str, UserPreference] = {}
        self._next_custom_id = 1
        self._lock = RLock()

        seed = DEFAULT_AD_INVENTORY if inventory is None else inventory
        for ad_data in seed:
            self.add_ad(Ad(**ad_data))

    # Inventory

    def add_ad(self, ad: Ad) -> str:
        """Add an ad, or update the creative and pricing of an existing one.

        New ads start with fresh counters. Re-adding a known id keeps its
        impressions, clicks and revenue.
        """
        with self._lock:
            existing = self._ads.get(ad.id)
            if existing is None:
                self._ads[ad.id] = replace(
                    ad, impressions=0, clicks=0, revenue=Decimal(0), last_shown_at=None
                )
            else:
                existing.category = ad.category
                existing.content = ad.content
                existing.keywords = ad.keywords
                existing.cpm = ad.cpm
                existing.ctr = ad.ctr
                logger.info("Ad %s updated", ad.id)
        return ad.id

    def add_custom_ad(
        self,
        category: str,
        content: str,
        keywords: Iterable[str],
        cpm: Number,
        ctr: float,
    ) -> str:
        """Add an ad under a generated ``custom_<n>`` id."""
        with self._lock:
            ad_id = f"custom_{self._next_custom_id}"
            self._next_custom_id += 1
            return self.add_ad(Ad(ad_id, category, content, frozenset(keywords), cpm, ctr))

    def remove_ad(self, ad_id: str) -> None:
        with self._lock:
            if self._ads.pop(ad_id, None) is None:
                raise NotFoundError("Ad", ad_id)

    def get_ad(self, ad_id: str) -> Ad:
        with self._lock:
            return replace(self._require(ad_id))

    def inventory(self) -> List[Ad]:
        with self._lock:
            return [replace(ad) for ad in self._ads.values()]

    # User preferences

    def get_user_preferences(self, user_id: str) -> UserPreference:
        """Preferences for a user, created with defaults on first use."""
        with self._lock:
            prefs = self._preferences.get(user_id)
            if prefs is None:
                prefs = UserPreference(
                    user_id=user_id,
                    preferred_categories=list(self.default_categories),
                    last_activity=self._clock(),
                )
                self._preferences[user_id] = prefs
            return replace(prefs, preferred_categories=list(prefs.preferred_categories))

    def update_user_preferences(
        self,
        user_id: str,
        preferred_categories: Optional[Iterable[str]] = None,
        ad_frequency: Optional[str] = None,
    ) -> UserPreference:
        """Merge explicit changes into a user's preferences."""
        if ad_frequency is not None and ad_frequency not in AD_FREQUENCIES:
            raise ValueError(f"ad_frequency must be one of: {list(AD_FREQUENCIES)}")
        with self._lock:
            self.get_user_preferences(user_id)
            prefs = self._preferences[user_id]
            if preferred_categories is not None:
                prefs.preferred_categories = list(preferred_categories)
            if ad_frequency is not None:
                prefs.ad_frequency = ad_frequency
            prefs.last_activity = self._clock()
            return self.get_user_preferences(user_id)

    # Selection

    def compute_relevance(
        self,
        prompt_keywords: Iterable[str],
        ad: Ad,
        user_prefs: UserPreference,
        requested_categories: Optional[Iterable[str]] = None,
    ) -> float:
        return compute_relevance(prompt_keywords, ad, user_prefs, requested_categories)

    def rank_ads(
        self,
        prompt_keywords: Iterable[str],
        user_prefs: UserPreference,
        ad_preferences: Optional[dict] = None,
    ) -> List[RankedAd]:
        """Ads above the relevance floor, most relevant first."""
        keywords = frozenset(prompt_keywords)
        requested = (ad_preferences or {}).get("categories") or ()
        ranked = []
        for ad in self.inventory():
            relevance = compute_relevance(keywords, ad, user_prefs, requested)
            if relevance > self.relevance_floor:
                ranked.append(RankedAd(ad, relevance))
        ranked.sort(key=lambda r: (-r.relevance, r.ad.id))
        return ranked

    def select_ad(
        self, candidates: Sequence[Ad], cooldown_ms: Optional[int] = None
    ) -> Optional[Ad]:
        """Pick the first relevance-sorted candidate outside its cooldown.

        Falls back to the top candidate when every ad is cooling down; returns
        None only when there are no candidates.
        """
        if not candidates:
            return None
        window = timedelta(
            milliseconds=self.cooldown_ms if cooldown_ms is None else cooldown_ms
        )
        now = self._clock()
        for ad in candidates:
            if ad.last_shown_at is None or now - ad.last_shown_at > window:
                return ad
        return candidates[0]

    def place_ad(
        self,
        prompt: str,
        user_id: str,
        ad_preferences: Optional[dict] = None,
    ) -> Optional[AdPlacement]:
        """Select an ad for a prompt, splice it in and record the impression."""
        prefs = self.get_user_preferences(user_id)
        if prefs.ad_frequency == "off":
            return None

        ranked = self.rank_ads(extract_keywords(prompt), prefs, ad_preferences)
        selected = self.select_ad([r.ad for r in ranked])
        if selected is None:
            return None

        relevance = next(r.relevance for r in ranked if r.ad.id == selected.id)
        self.record_impression(selected.id)
        logger.info(
            "Ad %s (%s) injected for user %s, relevance %.1f",
            selected.id, selected.category, user_id, relevance,
        )
        return AdPlacement(selected, relevance, splice_ad(prompt, selected))

    def inject_ad(
        self,
        prompt: str,
        user_id: str,
        ad_preferences: Optional[dict] = None,
    ) -> str:
        """Prompt with one sponsored block, or unchanged if no ad qualifies."""
        placement = self.place_ad(prompt, user_id, ad_preferences)
        return prompt if placement is None else placement.prompt

    # Revenue

    def record_impression(self, ad_id: str) -> Decimal:
        """Count an impression and book cpm / 1000 of revenue."""
        with self._lock:
            ad = self._require(ad_id)
            now = self._clock()
            amount = ad.cpm / Decimal(1000)
            ad.impressions += 1
            ad.last_shown_at = now
            ad.revenue += amount
            self.revenue_ledger.record(amount, now.date(), "ad")
            return amount

    def record_click(self, ad_id: str) -> Decimal:
        """Count a click and book cpm * ctr of revenue."""
        with self._lock:
            ad = self._require(ad_id)
            amount = ad.cpm * Decimal(str(ad.ctr))
            ad.clicks += 1
            ad.revenue += amount
            self.revenue_ledger.record(amount, self._clock().date(), "ad")
        logger.info("Ad %s clicked, revenue $%s", ad_id, amount)
        return amount

    def attribute_inference_revenue(self, amount: Number) -> Decimal:
        """Book inference income into the same day buckets as ad income.

        Raises:
            InvalidUsageError: If the amount is negative
        """
        value = to_money(amount)
        if value < 0:
            raise InvalidUsageError(f"attributed revenue cannot be negative: {amount}")
        with self._lock:
            self.revenue_ledger.record(value, self._clock().date(), "inference")
        return value

    def today_revenue(self) -> Decimal:
        with self._lock:
            return self.revenue_ledger.total_on(self._clock().date())

    def revenue_on(self, day: date) -> Decimal:
        with self._lock:
            return self.revenue_ledger.total_on(day)

    def reset_revenue(self) -> None:
        """Operator action: clear the revenue ledger (per-ad counters stay)."""
        with self._lock:
            self.revenue_ledger.reset()
        logger.warning("Revenue ledger reset by operator")

    def today(self) -> date:
        return self._clock().date()

    def _require(self, ad_id: str) -> Ad:
        ad = self._ads.get(ad_id)
        if ad is None:
            raise NotFoundError("Ad", ad_id)
        return ad
