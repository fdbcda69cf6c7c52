from __future__ import annotations

from .loader import Merchant, MerchantsRules, NormalizationRules
from .normalization import normalize_name


def detect_merchant(
    vendor: str,
    rules: MerchantsRules,
    normalization: NormalizationRules,
) -> Merchant | None:
    """Match an extracted vendor string against the known merchant names.

    The longest matching alias wins so that a branch name such as
    "ローソンストア100" is not claimed by a shorter, unrelated alias.
    """
    haystack, _ = normalize_name(vendor, normalization)
    if not haystack:
        return None

    best: tuple[int, Merchant] | None = None
    for merchant in rules.merchants:
        for name in merchant.names:
            needle, _ = normalize_name(name, normalization)
            if needle and needle in haystack and (best is None or len(needle) > best[0]):
                best = (len(needle), merchant)
    return best[1] if best else None
