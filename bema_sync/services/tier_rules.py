"""
Tier transition rules and campaign naming.

Everything here is pure and deterministic. External tier spellings
("OPT-IN", "Opt In", "optin", "GOLD_PURCHASED", "Gold Purchase") are
normalized to the canonical ``Tier`` values at the boundary; the rest of
the engine only ever sees ``Tier``.

Campaign codes are YEAR_ARTIST_CAMPAIGN (e.g. 2025_ETB_EOE) and each tier of
a campaign is an email-marketing group named ``<CAMPAIGN>_<TIER>``
(e.g. 2025_ETB_EOE_OPT-IN, 2025_ETB_EOE_GOLD_PURCHASED).
"""
import enum
import re
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Tuple, Union

from bema_sync.lib.errors import InvalidCampaignFormat


class Tier(str, enum.Enum):
    """Canonical tier names."""
    UNASSIGNED = "unassigned"
    OPT_IN = "opt-in"
    BRONZE = "bronze"
    BRONZE_PURCHASED = "bronze_purchased"
    SILVER = "silver"
    SILVER_PURCHASED = "silver_purchased"
    GOLD = "gold"
    GOLD_PURCHASED = "gold_purchased"
    WOOD = "wood"
    WOOD_PURCHASED = "wood_purchased"

    @property
    def group_suffix(self) -> str:
        """Suffix used in group names, e.g. OPT-IN or GOLD_PURCHASED."""
        return self.value.upper()


# (default, purchased) for every tier that progresses
TIER_PROGRESSION: Dict[Tier, Tuple[Tier, Tier]] = {
    Tier.OPT_IN: (Tier.BRONZE, Tier.GOLD),
    Tier.BRONZE: (Tier.BRONZE, Tier.SILVER),
    Tier.SILVER: (Tier.SILVER, Tier.GOLD),
    Tier.GOLD: (Tier.GOLD, Tier.GOLD),
}

TIER_RANK: Dict[Tier, int] = {
    Tier.OPT_IN: 1,
    Tier.BRONZE: 2,
    Tier.SILVER: 3,
    Tier.GOLD: 4,
}

REQUIRED_TIERS: Tuple[Tier, ...] = (
    Tier.OPT_IN,
    Tier.GOLD,
    Tier.GOLD_PURCHASED,
    Tier.SILVER,
    Tier.SILVER_PURCHASED,
    Tier.BRONZE,
    Tier.BRONZE_PURCHASED,
    Tier.WOOD,
)

OPTIONAL_TIERS: Tuple[Tier, ...] = (Tier.WOOD_PURCHASED,)

_ALIASES = {
    "optin": Tier.OPT_IN,
    "opt_in": Tier.OPT_IN,
    "subscribed": Tier.OPT_IN,
}

TierLike = Union[Tier, str]


def _tier_key(value: str) -> str:
    key = re.sub(r"[\s\-]+", "_", value.strip().lower())
    # "Gold Purchase" and "GOLD_PURCHASED" name the same tier
    return re.sub(r"_purchase$", "_purchased", key)


def normalize_tier(value: Optional[TierLike]) -> Optional[Tier]:
    """
    Map any external spelling of a tier to ``Tier``.

    Returns:
        The canonical tier, or None if the value names no known tier
    """
    if value is None:
        return None
    if isinstance(value, Tier):
        return value
    key = _tier_key(str(value))
    if key in _ALIASES:
        return _ALIASES[key]
    for tier in Tier:
        if _tier_key(tier.value) == key:
            return tier
    return None


def next_tier(current_tier: TierLike, has_purchased: bool) -> TierLike:
    """
    Compute the tier a subscriber moves to.

    Unknown tiers are returned unchanged, so callers treat them as a no-op.

    Args:
        current_tier: Current tier, canonical or any external spelling
        has_purchased: Whether a qualifying purchase was found

    Returns:
        The next canonical tier, or ``current_tier`` itself when unknown
    """
    tier = normalize_tier(current_tier)
    if tier not in TIER_PROGRESSION:
        return current_tier
    default, purchased = TIER_PROGRESSION[tier]
    return purchased if has_purchased else default


def is_valid_transition(from_tier: TierLike, to_tier: TierLike, has_purchased: bool) -> bool:
    """True iff ``to_tier`` is exactly what ``next_tier`` would return."""
    expected = next_tier(from_tier, has_purchased)
    if isinstance(expected, Tier):
        return normalize_tier(to_tier) == expected
    return to_tier == expected


def tier_rank(tier: TierLike) -> int:
    """Position in the opt-in < bronze < silver < gold ordering, 0 when unranked."""
    return TIER_RANK.get(normalize_tier(tier), 0)


@dataclass(frozen=True)
class CampaignCode:
    year: str
    artist_code: str
    campaign_code: str

    @property
    def name(self) -> str:
        return f"{self.year}_{self.artist_code}_{self.campaign_code}"

    def as_dict(self) -> Dict[str, str]:
        return {"year": self.year, "artist_code": self.artist_code, "campaign_code": self.campaign_code}


def parse_campaign_code(name: str) -> CampaignCode:
    """
    Split a campaign name into its parts.

    Raises:
        InvalidCampaignFormat: unless the name has exactly three non-empty
            underscore-delimited segments
    """
    parts = (name or "").strip().split("_")
    if len(parts) != 3 or not all(parts):
        raise InvalidCampaignFormat(name)
    year, artist_code, campaign_code = parts
    return CampaignCode(year=year, artist_code=artist_code, campaign_code=campaign_code)


def normalize_group_name(name: str) -> str:
    """Uppercase, with spaces, hyphens and underscores treated as equivalent."""
    return re.sub(r"[\s\-_]+", "_", name.strip().upper())


def group_name(campaign: str, tier: TierLike) -> str:
    canonical = normalize_tier(tier)
    suffix = canonical.group_suffix if canonical else str(tier).strip().upper().replace(" ", "_")
    return f"{campaign}_{suffix}"


@dataclass
class GroupValidation:
    valid: bool
    missing: List[str] = field(default_factory=list)

    def as_dict(self) -> dict:
        return {"valid": self.valid, "missing": list(self.missing)}


def validate_required_groups(campaign_code: str, available_groups: Iterable) -> GroupValidation:
    """
    Check that a campaign exposes a group for every required tier.

    Args:
        campaign_code: Campaign name, e.g. 2025_ETB_EOE
        available_groups: Group names, or objects with a ``name`` attribute

    Returns:
        GroupValidation listing the expected group names that were not found
    """
    available = {
        normalize_group_name(g if isinstance(g, str) else getattr(g, "name", ""))
        for g in available_groups
    }
    missing = [
        group_name(campaign_code, tier)
        for tier in REQUIRED_TIERS
        if normalize_group_name(group_name(campaign_code, tier)) not in available
    ]
    return GroupValidation(valid=not missing, missing=missing)


def tier_from_group_name(name: str) -> Optional[Tier]:
    """Tier encoded after the campaign prefix, e.g. 2025_ETB_EOE_GOLD_PURCHASED -> gold_purchased."""
    parts = re.split(r"_", name.strip())
    if len(parts) < 4:
        return None
    return normalize_tier("_".join(parts[3:]))


def campaign_name_from_group(name: str) -> Optional[str]:
    parts = name.strip().split("_")
    if len(parts) < 4:
        return None
    return "_".join(parts[:3])


def short_name(name: str) -> str:
    """
    Compact code for an artist or album: one word is kept whole, several
    words collapse to their initials (``"Echoes of Eternity"`` -> ``"EOE"``).
    """
    words = name.strip().upper().split()
    if not words:
        return ""
    if len(words) == 1:
        return words[0]
    return "".join(word[0] for word in words)


def campaign_code_from_album(year, artist: str, album: str) -> str:
    return f"{year}_{short_name(artist)}_{short_name(album)}"


def purchase_field_name(campaign: str) -> str:
    """Number field flagging a purchase for a campaign, e.g. 2025_ETB_EOE_PURCHASE."""
    return f"{campaign.strip().upper()}_PURCHASE"
