"""
Differential expression for log-scale microarray data.

Fits one linear model per gene over a cell-means design (one coefficient
per disease-state group), evaluates a contrast between groups, and moderates
the per-gene residual variances towards a common prior estimated from all
genes (empirical Bayes). P-values are BH-corrected with statsmodels.

Example:
    analyzer = DifferentialExpressionAnalyzer(DEConfig(contrast="DF - control"))
    contrast = analyzer.analyze(gene_matrix, sample_metadata)
    print(contrast.table.head())
"""

import ast
import logging
import operator
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
from scipy import special, stats
from statsmodels.stats.multitest import multipletests

from .de_result import DEProvenance, DEResult, gene_result_from_row
from .errors import DataIntegrityError
from .gene_ranker import filter_by_thresholds, separate_by_direction

logger = logging.getLogger(__name__)

TOP_TABLE_COLUMNS = [
    "log2_fold_change",
    "average_expression",
    "t_statistic",
    "pvalue",
    "pvalue_adjusted",
]


@dataclass
class DEConfig:
    """Configuration for the moderated linear-model contrast.

    The contrast is an arithmetic expression over group keys, e.g.
    ``"DHF - control"`` or ``"(DF + DHF)/2 - control"``.
    """

    contrast: str = "DHF - control"

    # Significance thresholds
    fdr_threshold: float = 0.05
    log2fc_threshold: float = 1.0

    # Sample metadata column holding the group keys
    group_column: str = "group"

    # Any statsmodels multipletests method
    adjust_method: str = "fdr_bh"


# =============================================================================
# Design and contrasts
# =============================================================================


def build_design(metadata: pd.DataFrame, group_column: str = "group") -> pd.DataFrame:
    """
    Cell-means design matrix: one 0/1 indicator column per group, no intercept.

    Samples with a null group are dropped. Columns are in sorted group order.
    """
    if group_column not in metadata.columns:
        raise ValueError(f"Sample metadata has no '{group_column}' column")

    groups = metadata[group_column].dropna().astype(str)
    if groups.empty:
        raise ValueError("No samples carry a group label")

    levels = sorted(groups.unique())
    design = pd.DataFrame(
        {level: (groups == level).astype(float) for level in levels},
        index=groups.index,
    )
    design.index.name = metadata.index.name
    return design


_BINARY_OPS = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
}


def _linear(node, groups: Sequence[str]) -> Tuple[float, np.ndarray]:
    """Evaluate an expression node to ``(constant, weights)``."""
    n = len(groups)
    if isinstance(node, ast.Expression):
        return _linear(node.body, groups)
    if isinstance(node, ast.Constant) and isinstance(node.value, (int, float)):
        return float(node.value), np.zeros(n)
    if isinstance(node, ast.Name):
        if node.id not in groups:
            raise ValueError(
                f"Unknown group '{node.id}' in contrast (available: {', '.join(groups)})"
            )
        weights = np.zeros(n)
        weights[list(groups).index(node.id)] = 1.0
        return 0.0, weights
    if isinstance(node, ast.UnaryOp) and isinstance(node.op, (ast.UAdd, ast.USub)):
        const, weights = _linear(node.operand, groups)
        sign = -1.0 if isinstance(node.op, ast.USub) else 1.0
        return sign * const, sign * weights
    if isinstance(node, ast.BinOp):
        lc, lw = _linear(node.left, groups)
        rc, rw = _linear(node.right, groups)
        if type(node.op) in _BINARY_OPS:
            op = _BINARY_OPS[type(node.op)]
            return op(lc, rc), op(lw, rw)
        if isinstance(node.op, ast.Mult):
            if not lw.any():
                return lc * rc, lc * rw
            if not rw.any():
                return lc * rc, rc * lw
            raise ValueError("Contrast is not linear: groups multiplied together")
        if isinstance(node.op, ast.Div):
            if rw.any():
                raise ValueError("Contrast is not linear: division by a group")
            if rc == 0:
                raise ValueError("Division by zero in contrast")
            return lc / rc, lw / rc
    raise ValueError(f"Unsupported syntax in contrast: {ast.dump(node)}")


def parse_contrast(expr: str, groups: Sequence[str]) -> pd.Series:
    """
    Parse a contrast expression into a weight per group.

    Args:
        expr: Expression such as ``"DHF - control"`` or ``"0.5*DF + 0.5*DHF - control"``
        groups: Group keys (design columns)

    Returns:
        Series of weights indexed by group

    Raises:
        ValueError: Unknown group, non-linear or constant expression
    """
    groups = list(groups)
    try:
        tree = ast.parse(expr.strip(), mode="eval")
    except SyntaxError as e:
        raise ValueError(f"Cannot parse contrast '{expr}': {e.msg}") from e

    const, weights = _linear(tree, groups)
    if const != 0:
        raise ValueError(f"Contrast '{expr}' contains a constant term")
    if not weights.any():
        raise ValueError(f"Contrast '{expr}' does not compare any groups")
    return pd.Series(weights, index=groups, name=expr)


# =============================================================================
# Linear model
# =============================================================================


@dataclass
class LinearModelFit:
    """Per-gene least-squares fit of an expression matrix on a design."""

    coefficients: pd.DataFrame  # genes x design columns
    stdev_unscaled: pd.DataFrame  # genes x design columns
    sigma2: pd.Series  # residual variance per gene
    df_residual: pd.Series
    average_expression: pd.Series
    cov_unscaled: np.ndarray  # from the full design

    @property
    def n_genes(self) -> int:
        return len(self.coefficients)

    @property
    def coefficient_names(self) -> List[str]:
        return list(self.coefficients.columns)


def fit_linear_model(matrix: pd.DataFrame, design: pd.DataFrame) -> LinearModelFit:
    """
    Fit ``expression ~ design`` independently for every gene.

    Complete rows are solved together; rows with missing values are refit on
    their observed samples, dropping coefficients with no observations.

    Args:
        matrix: Gene x sample log-expression matrix
        design: Sample x coefficient design (index must cover matrix columns used)

    Returns:
        LinearModelFit
    """
    missing = [s for s in design.index if s not in matrix.columns]
    if missing:
        raise DataIntegrityError(
            f"{len(missing)} design sample(s) absent from the expression matrix: "
            f"{', '.join(map(str, missing[:5]))}"
        )

    Y = matrix.loc[:, design.index].to_numpy(dtype=float)
    X = design.to_numpy(dtype=float)
    n_genes, n_samples = Y.shape
    p = X.shape[1]

    cov_unscaled = np.linalg.pinv(X.T @ X)
    rank = np.linalg.matrix_rank(X)

    coef = np.full((n_genes, p), np.nan)
    stdev = np.full((n_genes, p), np.nan)
    sigma2 = np.full(n_genes, np.nan)
    df_res = np.zeros(n_genes)

    complete = ~np.isnan(Y).any(axis=1)
    if complete.any():
        Yc = Y[complete]
        beta = Yc @ X @ cov_unscaled.T
        resid = Yc - beta @ X.T
        df = n_samples - rank
        coef[complete] = beta
        stdev[complete] = np.sqrt(np.diag(cov_unscaled))
        df_res[complete] = df
        if df > 0:
            sigma2[complete] = (resid ** 2).sum(axis=1) / df

    for i in np.flatnonzero(~complete):
        observed = ~np.isnan(Y[i])
        Xi = X[observed]
        estimable = np.abs(Xi).sum(axis=0) > 0
        if not estimable.any():
            continue
        Xe = Xi[:, estimable]
        yi = Y[i, observed]
        beta, _, rank_i, _ = np.linalg.lstsq(Xe, yi, rcond=None)
        coef[i, estimable] = beta
        stdev[i, estimable] = np.sqrt(np.diag(np.linalg.pinv(Xe.T @ Xe)))
        df_i = observed.sum() - rank_i
        df_res[i] = df_i
        if df_i > 0:
            sigma2[i] = ((yi - Xe @ beta) ** 2).sum() / df_i

    logger.debug(
        "Fitted %d genes (%d with missing values) on %d samples, %d coefficients",
        n_genes, int((~complete).sum()), n_samples, p,
    )

    columns = list(design.columns)
    return LinearModelFit(
        coefficients=pd.DataFrame(coef, index=matrix.index, columns=columns),
        stdev_unscaled=pd.DataFrame(stdev, index=matrix.index, columns=columns),
        sigma2=pd.Series(sigma2, index=matrix.index, name="sigma2"),
        df_residual=pd.Series(df_res, index=matrix.index, name="df_residual"),
        average_expression=matrix.loc[:, design.index].mean(axis=1, skipna=True),
        cov_unscaled=cov_unscaled,
    )


# =============================================================================
# Empirical Bayes
# =============================================================================


def trigamma_inverse(x):
    """
    Solve ``trigamma(y) = x`` for y by Newton iteration.

    Works elementwise on scalars or arrays; non-positive input gives NaN.
    """
    x = np.asarray(x, dtype=float)
    scalar = x.ndim == 0
    x = np.atleast_1d(x)
    y = np.full_like(x, np.nan)

    large = x > 1e7
    small = (x < 1e-6) & (x > 0)
    y[large] = 1.0 / np.sqrt(x[large])
    y[small] = 1.0 / x[small]

    todo = (x > 0) & ~large & ~small
    if todo.any():
        target = x[todo]
        guess = 0.5 + 1.0 / target
        for _ in range(50):
            tri = special.polygamma(1, guess)
            dif = tri * (1.0 - tri / target) / special.polygamma(2, guess)
            guess = guess + dif
            if np.max(-dif / guess) < 1e-8:
                break
        else:
            logger.warning("trigamma_inverse: iteration limit exceeded")
        y[todo] = guess

    return float(y[0]) if scalar else y


def fit_f_distribution(s2, df) -> Tuple[float, float]:
    """
    Moment estimates of the scaled inverse-chi-square prior on variances.

    Treats ``s2`` as draws from ``s0^2 * F(df, d0)`` and estimates the prior
    degrees of freedom ``d0`` and prior variance ``s0^2`` from the mean and
    variance of ``log(s2)``.

    Args:
        s2: Residual variances (genes with non-finite values or df <= 0 are ignored)
        df: Residual degrees of freedom, scalar or per gene

    Returns:
        Tuple of (d0, s0^2); d0 is ``inf`` when the data show no excess
        variability beyond sampling noise
    """
    s2 = np.asarray(s2, dtype=float)
    df = np.broadcast_to(np.asarray(df, dtype=float), s2.shape)

    ok = np.isfinite(s2) & np.isfinite(df) & (df > 0)
    s2 = s2[ok]
    df = df[ok]
    n = s2.size
    if n == 0:
        return 0.0, float("nan")
    if n == 1:
        return 0.0, float(s2[0])

    # Clamp away zeros before taking logs
    s2 = np.maximum(s2, 0)
    m = np.median(s2)
    if m == 0:
        logger.warning("More than half of residual variances are exactly zero")
        m = 1.0
    s2 = np.maximum(s2, 1e-5 * m)

    z = np.log(s2)
    e = z - special.digamma(df / 2) + np.log(df / 2)
    emean = e.mean()
    evar = np.mean((e - emean) ** 2) * n / (n - 1) - np.mean(special.polygamma(1, df / 2))

    if evar > 0:
        d0 = 2 * trigamma_inverse(evar)
        s0_2 = float(np.exp(emean + special.digamma(d0 / 2) - np.log(d0 / 2)))
    else:
        d0 = float("inf")
        s0_2 = float(np.exp(emean))
    return float(d0), s0_2


def moderated_variance(s2, df, d0: float, s0_2: float):
    """Posterior residual variance ``(d0*s0^2 + d*s^2) / (d0 + d)``."""
    s2 = np.asarray(s2, dtype=float)
    df = np.asarray(df, dtype=float)
    if np.isinf(d0):
        return np.where(np.isfinite(s2), s0_2, np.nan)
    return (d0 * s0_2 + df * s2) / (d0 + df)


# =============================================================================
# Analyzer
# =============================================================================


@dataclass
class ContrastResult:
    """Moderated statistics for one contrast."""

    contrast: str
    weights: pd.Series
    table: pd.DataFrame  # TOP_TABLE_COLUMNS, sorted ascending p-value
    prior_df: float
    prior_variance: float
    df_pooled: float
    group_sizes: Dict[str, int] = field(default_factory=dict)
    sample_ids: List[str] = field(default_factory=list)

    @property
    def genes_tested(self) -> int:
        return int(self.table["pvalue"].notna().sum())

    def significant(self, fdr: float, log2fc: float) -> pd.DataFrame:
        """Rows passing both the adjusted p-value and fold-change thresholds."""
        t = self.table
        mask = (t["pvalue_adjusted"] < fdr) & (t["log2_fold_change"].abs() >= log2fc)
        return t[mask.fillna(False)]

    def __repr__(self) -> str:
        return (
            f"ContrastResult({self.contrast!r}, genes={len(self.table)}, "
            f"d0={self.prior_df:.2f}, s0^2={self.prior_variance:.3g})"
        )


def sort_by_pvalue(table: pd.DataFrame) -> pd.DataFrame:
    """Stable ascending sort on ``pvalue`` with missing values last."""
    return table.sort_values("pvalue", ascending=True, kind="mergesort", na_position="last")


class DifferentialExpressionAnalyzer:
    """
    Moderated t-statistics for a contrast of group means.

    Example:
        analyzer = DifferentialExpressionAnalyzer()
        contrast = analyzer.analyze(gene_matrix, sample_metadata)
        de_result = analyzer.to_de_result(contrast.table, provenance)
    """

    def __init__(self, config: Optional[DEConfig] = None):
        """
        Initialize the analyzer.

        Args:
            config: Analysis configuration (uses defaults if None)
        """
        self.config = config or DEConfig()

    def analyze(self, matrix: pd.DataFrame, metadata: pd.DataFrame) -> ContrastResult:
        """
        Fit the model and evaluate the configured contrast.

        Args:
            matrix: Gene x sample log-expression matrix
            metadata: Sample metadata with the group column

        Returns:
            ContrastResult whose table holds one row per gene of ``matrix``

        Raises:
            DataIntegrityError: Expression samples without metadata
            ValueError: Invalid contrast or empty groups
        """
        cfg = self.config
        unlabeled = [s for s in matrix.columns if s not in metadata.index]
        if unlabeled:
            raise DataIntegrityError(
                f"{len(unlabeled)} expression sample(s) lack metadata: "
                f"{', '.join(map(str, unlabeled[:5]))}"
            )

        design = build_design(metadata.loc[list(matrix.columns)], cfg.group_column)
        weights = parse_contrast(cfg.contrast, design.columns)
        group_sizes = design.sum(axis=0).astype(int).to_dict()

        logger.info(
            "Contrast %s over groups %s", cfg.contrast, group_sizes,
        )

        fit = fit_linear_model(matrix, design)
        w = weights.to_numpy()
        used = w != 0

        coef = fit.coefficients.to_numpy()
        stdev = fit.stdev_unscaled.to_numpy()

        # Coefficients outside the contrast may be missing without affecting it
        estimate = (coef[:, used] * w[used]).sum(axis=1)
        estimate[np.isnan(coef[:, used]).any(axis=1)] = np.nan

        diag = np.sqrt(np.diag(fit.cov_unscaled))
        with np.errstate(invalid="ignore", divide="ignore"):
            correlation = fit.cov_unscaled / np.outer(diag, diag)
        correlation = np.nan_to_num(correlation)
        weighted = np.where(used, stdev * w, 0.0)
        contrast_stdev = np.sqrt(np.einsum("gi,ij,gj->g", weighted, correlation, weighted))

        df_res = fit.df_residual.to_numpy()
        s2 = fit.sigma2.to_numpy()
        testable = (df_res >= 1) & np.isfinite(s2) & np.isfinite(estimate)

        d0, s0_2 = fit_f_distribution(s2[testable], df_res[testable])
        df_pooled = float(df_res[testable].sum())
        logger.info("Empirical Bayes prior: d0=%.3g, s0^2=%.4g", d0, s0_2)

        t_stat = np.full(len(estimate), np.nan)
        pvalue = np.full(len(estimate), np.nan)
        with np.errstate(invalid="ignore", divide="ignore"):
            s2_post = moderated_variance(s2, df_res, d0, s0_2)
            df_total = np.minimum(df_res + d0, df_pooled)
            t_stat[testable] = estimate[testable] / (
                contrast_stdev[testable] * np.sqrt(s2_post[testable])
            )
        pvalue[testable] = 2 * stats.t.sf(np.abs(t_stat[testable]), df_total[testable])

        adjusted = np.full(len(estimate), np.nan)
        valid = ~np.isnan(pvalue)
        if valid.any():
            _, adjusted[valid], _, _ = multipletests(pvalue[valid], method=cfg.adjust_method)

        table = pd.DataFrame(
            {
                "log2_fold_change": estimate,
                "average_expression": fit.average_expression.to_numpy(),
                "t_statistic": t_stat,
                "pvalue": pvalue,
                "pvalue_adjusted": adjusted,
            },
            index=matrix.index,
        )
        table.index.name = matrix.index.name or "gene"
        table = sort_by_pvalue(table)

        result = ContrastResult(
            contrast=cfg.contrast,
            weights=weights,
            table=table,
            prior_df=d0,
            prior_variance=s0_2,
            df_pooled=df_pooled,
            group_sizes=group_sizes,
            sample_ids=list(design.index),
        )
        logger.info(
            "Tested %d genes; %d pass FDR < %s and |log2FC| >= %s",
            result.genes_tested,
            len(result.significant(cfg.fdr_threshold, cfg.log2fc_threshold)),
            cfg.fdr_threshold,
            cfg.log2fc_threshold,
        )
        return result

    def make_provenance(
        self,
        contrast: ContrastResult,
        accession: str,
        platform: str = "",
    ) -> DEProvenance:
        """Provenance record for a contrast evaluated by this analyzer."""
        provenance = DEProvenance.create(
            accession=accession,
            platform=platform,
            contrast=contrast.contrast,
            group_sizes=contrast.group_sizes,
            sample_ids=contrast.sample_ids,
            n_genes=len(contrast.table),
            fdr_threshold=self.config.fdr_threshold,
            log2fc_threshold=self.config.log2fc_threshold,
            fdr_method=self.config.adjust_method,
        )
        provenance.prior_df = contrast.prior_df
        provenance.prior_variance = contrast.prior_variance
        return provenance

    def to_de_result(self, table: pd.DataFrame, provenance: DEProvenance) -> DEResult:
        """
        Convert a (possibly reconciled) top table into a DEResult.

        Args:
            table: Top table indexed by gene symbol
            provenance: Provenance for the contrast

        Returns:
            DEResult with up/down lists at the configured thresholds
        """
        all_genes = [gene_result_from_row(symbol, row) for symbol, row in table.iterrows()]

        significant = filter_by_thresholds(
            all_genes,
            fdr_threshold=self.config.fdr_threshold,
            log2fc_threshold=self.config.log2fc_threshold,
        )
        upregulated, downregulated = separate_by_direction(significant)

        upregulated.sort(key=lambda g: g.log2_fold_change, reverse=True)
        downregulated.sort(key=lambda g: g.log2_fold_change)

        return DEResult(
            provenance=provenance,
            genes_tested=int(table["pvalue"].notna().sum()),
            genes_significant=len(upregulated) + len(downregulated),
            upregulated=upregulated,
            downregulated=downregulated,
            all_genes=all_genes,
        )
