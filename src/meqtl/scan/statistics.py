"""Association statistics for blocks of variant x trait pairs.

Each model is a strategy with the same three operations: prepare a trait
chunk, prepare a variant chunk, and compute statistics for every pair of
two prepared chunks. The strategy is chosen once from the configuration;
the engine never branches on the model per pair.

Models:
- linear: partial correlation r of residualized rows, t = r * sqrt(df / (1 - r^2))
  with df = n_samples - 2 - n_covariates.
- linear-error-covariance: as linear, after whitening every row (and the
  intercept) by Sigma^(-1/2).
- categorical: one-way ANOVA of the trait on the variant's value groups,
  adjusted for covariates. F = (R^2 / d) / ((1 - R^2) / df) with d groups
  beyond the reference and df = n_samples - 1 - n_covariates - d.

Both tests have the same two-sided p-value form through the regularized
incomplete beta function: p = I_{1 - R^2}(df / 2, d / 2), with d = 1 and
R^2 = r^2 for the linear models.
"""

from __future__ import annotations

from dataclasses import dataclass

import numpy as np
from jax.scipy.special import betainc
from loguru import logger

from meqtl.core.config import (
    MODEL_CATEGORICAL,
    MODEL_LINEAR,
    MODEL_LINEAR_ERROR_COVARIANCE,
    ScanConfig,
)
from meqtl.core.jax_config import configure_jax
from meqtl.errors import ConfigError, NumericError
from meqtl.scan.residualize import (
    PreparedBlock,
    Residualizer,
    whitening_transform,
)

# p-values below 1e-300 need 64-bit floats
configure_jax(enable_x64=True)


@dataclass(frozen=True)
class BlockStatistics:
    """Per-pair results for one (variant chunk, trait chunk) pair.

    All arrays have shape (n_variant_rows, n_trait_rows). Entries where
    ``testable`` is False are NaN.
    """

    statistic: np.ndarray
    pvalue: np.ndarray
    effect: np.ndarray
    testable: np.ndarray


def beta_pvalue(one_minus_r2: np.ndarray, df, d) -> np.ndarray:
    """Two-sided p-value I_{1-R^2}(df/2, d/2) as float64 numpy array."""
    z = np.clip(one_minus_r2, 0.0, 1.0)
    p = np.asarray(betainc(np.asarray(df, dtype=np.float64) / 2.0, d / 2.0, z))
    return np.clip(p, 0.0, 1.0)


class AssociationStatistic:
    """Base strategy: residualize against covariates, compare by matrix product.

    Args:
        covariates: Array (n_covariates, n_samples), possibly with zero rows.
        transform: Optional whitening matrix applied to all rows.
    """

    name = "base"

    def __init__(self, covariates: np.ndarray, transform: np.ndarray | None = None):
        self.residualizer = Residualizer(covariates, transform=transform)
        self.n_samples = self.residualizer.n_samples
        self.n_covariates = self.residualizer.n_covariates

    def prepare_traits(self, block: np.ndarray) -> PreparedBlock:
        return self.residualizer.prepare(block)

    def prepare_variants(self, block: np.ndarray) -> PreparedBlock:
        return self.residualizer.prepare(block)

    def compute(
        self, variants: PreparedBlock, traits: PreparedBlock
    ) -> BlockStatistics:
        raise NotImplementedError


class LinearStatistic(AssociationStatistic):
    """Correlation t-test on covariate-residualized rows."""

    name = MODEL_LINEAR

    def __init__(self, covariates: np.ndarray, transform: np.ndarray | None = None):
        super().__init__(covariates, transform=transform)
        self.df = self.n_samples - 2 - self.n_covariates
        if self.df <= 0:
            raise NumericError(
                f"No residual degrees of freedom: {self.n_samples} samples, "
                f"{self.n_covariates} covariates"
            )

    def compute(
        self, variants: PreparedBlock, traits: PreparedBlock
    ) -> BlockStatistics:
        r = np.clip(variants.values @ traits.values.T, -1.0, 1.0)
        testable = variants.valid[:, None] & traits.valid[None, :]

        one_minus_r2 = np.clip(1.0 - r * r, 0.0, 1.0)
        with np.errstate(divide="ignore", invalid="ignore"):
            t_stat = r * np.sqrt(self.df / one_minus_r2)
            effect = r * traits.norms[None, :] / variants.norms[:, None]
        # r = +-1 exactly gives an infinite statistic of the right sign
        t_stat = np.where(one_minus_r2 == 0.0, np.copysign(np.inf, r), t_stat)
        pvalue = beta_pvalue(one_minus_r2, self.df, 1.0)

        return BlockStatistics(
            statistic=np.where(testable, t_stat, np.nan),
            pvalue=np.where(testable, pvalue, np.nan),
            effect=np.where(testable, effect, np.nan),
            testable=testable,
        )


class LinearErrorCovarianceStatistic(LinearStatistic):
    """Linear model with a known sample error covariance Sigma.

    Rows, covariates and the intercept are whitened by Sigma^(-1/2) before
    residualization; the correlation test then applies unchanged.
    """

    name = MODEL_LINEAR_ERROR_COVARIANCE

    def __init__(self, covariates: np.ndarray, error_covariance: np.ndarray):
        super().__init__(covariates, transform=whitening_transform(error_covariance))


class CategoricalStatistic(AssociationStatistic):
    """One-way ANOVA of traits on variant value groups.

    Variant values are treated as group labels. The indicator of every group
    but the first (smallest value) is residualized against the covariates,
    and the indicators are orthonormalized per variant. R^2 of a trait is then
    the sum of squared products with those basis rows, one matrix product
    per indicator slot.

    Args:
        covariates: Array (n_covariates, n_samples).
        max_groups: Variants with more distinct values are untestable.
    """

    name = MODEL_CATEGORICAL

    def __init__(self, covariates: np.ndarray, max_groups: int = 3):
        super().__init__(covariates)
        self.max_groups = max_groups
        self.n_slots = max_groups - 1
        if self.n_samples - 2 - self.n_covariates <= 0:
            raise NumericError(
                f"No residual degrees of freedom: {self.n_samples} samples, "
                f"{self.n_covariates} covariates"
            )

    def _indicator_basis(self, row: np.ndarray) -> np.ndarray:
        """Orthonormal residualized group indicators for one variant row.

        Raises:
            NumericError: If the row has fewer than two or more than
                max_groups distinct values, or its groups are explained by
                the covariates.
        """
        levels = np.unique(row)
        if levels.size < 2:
            raise NumericError("constant variant")
        if levels.size > self.max_groups:
            raise NumericError(
                f"{levels.size} distinct values exceed max_groups={self.max_groups}"
            )
        indicators = (row[None, :] == levels[1:, None]).astype(np.float64)
        resid, _ = self.residualizer.residualize(indicators)

        q, r = np.linalg.qr(resid.T)
        diag = np.abs(np.diag(r))
        keep = diag > 1e-8 * max(1.0, float(np.sqrt(self.n_samples)))
        if not keep.any():
            raise NumericError("variant groups are collinear with covariates")
        return q[:, keep].T

    def prepare_variants(self, block: np.ndarray) -> PreparedBlock:
        block = np.asarray(block, dtype=np.float64)
        n_rows = block.shape[0]
        values = np.zeros((self.n_slots, n_rows, self.n_samples))
        groups = np.zeros(n_rows, dtype=np.int64)
        valid = np.zeros(n_rows, dtype=bool)

        for i in range(n_rows):
            row = _impute_mode(block[i])
            if row is None:
                continue
            try:
                basis = self._indicator_basis(row)
            except NumericError as e:
                logger.trace(f"variant row {i} untestable: {e}")
                continue
            values[: basis.shape[0], i, :] = basis
            groups[i] = basis.shape[0]
            valid[i] = True

        return PreparedBlock(
            values=values, norms=np.ones(n_rows), valid=valid, groups=groups
        )

    def compute(
        self, variants: PreparedBlock, traits: PreparedBlock
    ) -> BlockStatistics:
        r2 = np.zeros((variants.n_rows, traits.n_rows))
        for slot in range(self.n_slots):
            proj = variants.values[slot] @ traits.values.T
            r2 += proj * proj
        r2 = np.clip(r2, 0.0, 1.0)

        d = np.maximum(variants.groups, 1).astype(np.float64)[:, None]
        df = self.n_samples - 1 - self.n_covariates - d
        testable = (
            variants.valid[:, None] & traits.valid[None, :] & (df > 0)
        )
        df_safe = np.maximum(df, 1.0)

        one_minus_r2 = 1.0 - r2
        with np.errstate(divide="ignore", invalid="ignore"):
            f_stat = (r2 / d) / (one_minus_r2 / df_safe)
        f_stat = np.where(one_minus_r2 == 0.0, np.inf, f_stat)
        pvalue = beta_pvalue(one_minus_r2, df_safe, d)

        return BlockStatistics(
            statistic=np.where(testable, f_stat, np.nan),
            pvalue=np.where(testable, pvalue, np.nan),
            effect=np.full(testable.shape, np.nan),
            testable=testable,
        )


def _impute_mode(row: np.ndarray) -> np.ndarray | None:
    """Fill missing cells with the most frequent observed value."""
    missing = np.isnan(row)
    if missing.sum() > row.size - 2:
        return None
    if not missing.any():
        return row
    values, counts = np.unique(row[~missing], return_counts=True)
    filled = row.copy()
    filled[missing] = values[int(np.argmax(counts))]
    return filled


def make_statistic(
    config: ScanConfig,
    covariates: np.ndarray,
    error_covariance: np.ndarray | None = None,
) -> AssociationStatistic:
    """Select the statistic strategy for a run.

    Args:
        config: Scan configuration (model, max_groups).
        covariates: Array (n_covariates, n_samples).
        error_covariance: Required for "linear-error-covariance".

    Raises:
        ConfigError: For an unknown model or a missing error covariance.
        NumericError: For rank-deficient covariates or no degrees of freedom.
    """
    if config.model == MODEL_LINEAR:
        return LinearStatistic(covariates)
    if config.model == MODEL_LINEAR_ERROR_COVARIANCE:
        if error_covariance is None:
            raise ConfigError(
                "model 'linear-error-covariance' requires an error covariance matrix"
            )
        return LinearErrorCovarianceStatistic(covariates, error_covariance)
    if config.model == MODEL_CATEGORICAL:
        return CategoricalStatistic(covariates, max_groups=config.max_groups)
    raise ConfigError(f"Unknown model {config.model!r}")
