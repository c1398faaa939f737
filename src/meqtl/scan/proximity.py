"""Local / distant classification of variant-trait pairs.

A pair is local when the variant lies on the trait's chromosome within
``radius`` base pairs of the trait interval, boundaries included:

    start - radius <= position <= end + radius

Pairs with a feature missing from the position index are excluded from
proximity-restricted scans entirely.
"""

from __future__ import annotations

import numpy as np

from meqtl.io.positions import FeaturePositions, PositionIndex

CATEGORY_ALL = "all"
CATEGORY_LOCAL = "local"
CATEGORY_DISTANT = "distant"

# Codes returned by classify_block
EXCLUDED = 0
LOCAL = 1
DISTANT = 2


def classify_pair(
    variant: tuple[str, int, int] | None,
    trait: tuple[str, int, int] | None,
    radius: int,
) -> str | None:
    """Classify a single pair from (chrom, start, end) records.

    Returns:
        "local", "distant", or None when either position is unknown.
    """
    if variant is None or trait is None:
        return None
    v_chrom, v_pos, _ = variant
    t_chrom, t_start, t_end = trait
    if v_chrom == t_chrom and t_start - radius <= v_pos <= t_end + radius:
        return CATEGORY_LOCAL
    return CATEGORY_DISTANT


def classify_block(
    variants: FeaturePositions, traits: FeaturePositions, radius: int
) -> np.ndarray:
    """Classify every pair of a variant chunk and a trait chunk.

    Returns:
        int8 array (n_variants, n_traits) of EXCLUDED, LOCAL or DISTANT.
    """
    known = variants.known[:, None] & traits.known[None, :]
    same_chrom = variants.chrom[:, None] == traits.chrom[None, :]
    pos = variants.start[:, None]
    near = (pos >= traits.start[None, :] - radius) & (
        pos <= traits.end[None, :] + radius
    )

    codes = np.full(known.shape, DISTANT, dtype=np.int8)
    codes[same_chrom & near] = LOCAL
    codes[~known] = EXCLUDED
    return codes


class ProximityClassifier:
    """Classifies pairs by looking both features up in their position indexes.

    Args:
        variant_positions: Index of variant positions.
        trait_positions: Index of trait intervals.
        radius: Non-negative distance in base pairs.
    """

    def __init__(
        self,
        variant_positions: PositionIndex,
        trait_positions: PositionIndex,
        radius: int,
    ):
        if radius < 0:
            raise ValueError(f"radius must be non-negative, got {radius}")
        self.variant_positions = variant_positions
        self.trait_positions = trait_positions
        self.radius = radius

    def lookup_variants(self, feature_ids) -> FeaturePositions:
        return self.variant_positions.lookup(feature_ids)

    def lookup_traits(self, feature_ids) -> FeaturePositions:
        return self.trait_positions.lookup(feature_ids)

    def classify(self, variant_id: str, trait_id: str) -> str | None:
        """Category of one pair ("local", "distant") or None if excluded."""
        return classify_pair(
            self.variant_positions.get(variant_id),
            self.trait_positions.get(trait_id),
            self.radius,
        )

    def classify_block(
        self, variants: FeaturePositions, traits: FeaturePositions
    ) -> np.ndarray:
        return classify_block(variants, traits, self.radius)
