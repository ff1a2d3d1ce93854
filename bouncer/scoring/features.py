"""
Account features and the similarity measures computed over them.

Every measure returns a value in ``[0, 1]`` or ``None`` when it cannot be
computed from the data available on both sides.
"""

from __future__ import annotations

import math
import re
from dataclasses import asdict, dataclass
from typing import Any

from bouncer.errors import ValidationError

_NON_ALNUM = re.compile(r"[^a-z0-9]")

# Account age bucket edges in days
AGE_BUCKETS_DAYS = (30, 90, 365, 1095)


@dataclass(slots=True)
class AccountFeatures:
    account_id: str
    username: str
    display_name: str | None = None
    profile_image_ref: str | None = None
    profile_image_hash: str | None = None
    account_age_days: int | None = None
    follower_count: int | None = None
    verified: bool | None = None

    def __post_init__(self):
        if not self.account_id:
            raise ValidationError("Account features need an account id")
        if not self.username or not self.username.strip():
            raise ValidationError(
                "Account features need a username", details={"account_id": self.account_id}
            )

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AccountFeatures:
        if not isinstance(data, dict):
            raise ValidationError("Account features must be an object")
        return cls(
            account_id=str(data.get("account_id") or data.get("id") or ""),
            username=data.get("username") or "",
            display_name=data.get("display_name"),
            profile_image_ref=data.get("profile_image_ref"),
            profile_image_hash=data.get("profile_image_hash"),
            account_age_days=_optional_int(data.get("account_age_days")),
            follower_count=_optional_int(data.get("follower_count")),
            verified=data.get("verified"),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def _optional_int(value: Any) -> int | None:
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"Expected an integer, got {value!r}") from None


def clamp(value: float, low: float = 0.0, high: float = 1.0) -> float:
    return max(low, min(high, value))


def levenshtein(a: str, b: str) -> int:
    """Edit distance with unit costs, two-row dynamic programming."""
    if a == b:
        return 0
    if len(a) < len(b):
        a, b = b, a
    if not b:
        return len(a)

    previous = list(range(len(b) + 1))
    for i, char_a in enumerate(a, start=1):
        current = [i]
        for j, char_b in enumerate(b, start=1):
            current.append(
                min(
                    previous[j] + 1,
                    current[j - 1] + 1,
                    previous[j - 1] + (char_a != char_b),
                )
            )
        previous = current
    return previous[-1]


def edit_similarity(a: str, b: str) -> float | None:
    if not a or not b:
        return None
    if a == b:
        return 1.0
    return clamp(1 - levenshtein(a, b) / max(len(a), len(b)))


def username_similarity(suspect: AccountFeatures, target: AccountFeatures) -> float | None:
    return edit_similarity(suspect.username.strip().lower(), target.username.strip().lower())


def normalize_display_name(value: str | None) -> str:
    return _NON_ALNUM.sub("", (value or "").lower())


def display_name_similarity(suspect: AccountFeatures, target: AccountFeatures) -> float | None:
    return edit_similarity(
        normalize_display_name(suspect.display_name), normalize_display_name(target.display_name)
    )


def image_hash_similarity(suspect: AccountFeatures, target: AccountFeatures) -> float | None:
    """
    Normalized Hamming similarity of two hex perceptual hashes.

    Hashes of different length or invalid hex are incomparable.
    """
    a, b = suspect.profile_image_hash, target.profile_image_hash
    if not a or not b or len(a) != len(b):
        return None
    try:
        distance = bin(int(a, 16) ^ int(b, 16)).count("1")
    except ValueError:
        return None
    return clamp(1 - distance / (len(a) * 4))


def age_bucket(days: int) -> int:
    for index, edge in enumerate(AGE_BUCKETS_DAYS):
        if days < edge:
            return index
    return len(AGE_BUCKETS_DAYS)


def follower_bucket(count: int) -> int:
    return int(math.log10(max(count, 0) + 1))


def _bucket_agreement(a: int, b: int) -> float:
    # Same bucket agrees fully, neighbours half
    gap = abs(a - b)
    if gap == 0:
        return 1.0
    if gap == 1:
        return 0.5
    return 0.0


def metadata_similarity(suspect: AccountFeatures, target: AccountFeatures) -> float | None:
    agreements = []
    if suspect.account_age_days is not None and target.account_age_days is not None:
        agreements.append(
            _bucket_agreement(age_bucket(suspect.account_age_days), age_bucket(target.account_age_days))
        )
    if suspect.follower_count is not None and target.follower_count is not None:
        agreements.append(
            _bucket_agreement(
                follower_bucket(suspect.follower_count), follower_bucket(target.follower_count)
            )
        )
    if suspect.verified is not None and target.verified is not None:
        agreements.append(1.0 if suspect.verified == target.verified else 0.0)

    if not agreements:
        return None
    return sum(agreements) / len(agreements)
