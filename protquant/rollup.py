"""
Peptide to protein rollup.

Supports:
- median: per-sample median of finite peptide values
- maxlfq: max-ratio consistency (pairwise median peptide ratios reconciled by
  weighted least squares, as in MaxLFQ)
- median_polish: Tukey median polish column effects

For every method a protein/sample pair with no usable peptide value is
missing in the output; nothing is imputed.

Protein annotations come from one representative peptide, chosen as the
first in (sequence, modifications) order, except for annotations that are
re-derived across all constituent peptides (n_features, mass_shift_only).
"""

import logging
import warnings
from dataclasses import dataclass, field
from typing import Dict, List

import numpy as np
import pandas as pd
from scipy.sparse import csr_matrix
from scipy.sparse.csgraph import connected_components

from .matrix import QuantMatrix

logger = logging.getLogger(__name__)

ROLLUP_METHODS = ('median', 'maxlfq', 'median_polish')


@dataclass
class MedianPolishResult:
    """
    Result of Tukey median polish.

    The residuals matrix captures deviations from the additive model:
        y_ij = mu + alpha_i + beta_j + e_ij
    """
    overall: float                    # Grand effect (mu)
    row_effects: pd.Series            # Peptide effects (alpha)
    col_effects: pd.Series            # Sample effects (beta) - abundance estimates
    residuals: pd.DataFrame           # Residual matrix (peptides x samples)
    n_iterations: int
    converged: bool


@dataclass
class RollupResult:
    """Protein-level matrix plus per-protein diagnostics."""
    matrix: QuantMatrix
    method: str
    polish_results: Dict[str, MedianPolishResult] = field(default_factory=dict)
    skipped: List[str] = field(default_factory=list)


def tukey_median_polish(
    matrix: pd.DataFrame,
    max_iter: int = 10,
    tol: float = 1e-4,
) -> MedianPolishResult:
    """
    Apply Tukey's median polish to a peptide x sample matrix.

    Model: y_ij = mu + alpha_i + beta_j + e_ij

    Args:
        matrix: DataFrame with peptides as rows, samples as columns (log2)
        max_iter: Maximum number of iterations
        tol: Convergence tolerance (max absolute change in residuals)

    Returns:
        MedianPolishResult with effects and residuals. Samples with no
        finite value get a missing column effect.
    """
    row_idx = matrix.index
    col_idx = matrix.columns

    residuals = matrix.to_numpy(dtype=float, copy=True)
    empty_cols = np.isnan(residuals).all(axis=0)
    overall = 0.0
    row_effects = np.zeros(len(row_idx))
    col_effects = np.zeros(len(col_idx))

    converged = False
    iteration = 0

    with warnings.catch_warnings():
        warnings.simplefilter('ignore', RuntimeWarning)
        for iteration in range(max_iter):
            old_residuals = residuals.copy()

            # Row sweep
            row_medians = np.nan_to_num(np.nanmedian(residuals, axis=1))
            residuals = residuals - row_medians[:, np.newaxis]
            row_effects += row_medians
            col_shift = np.nanmedian(col_effects[~empty_cols]) if (~empty_cols).any() else 0.0
            col_effects[~empty_cols] -= col_shift
            overall += col_shift

            # Column sweep
            col_medians = np.nan_to_num(np.nanmedian(residuals, axis=0))
            residuals = residuals - col_medians[np.newaxis, :]
            col_effects += col_medians
            row_shift = np.nanmedian(row_effects)
            row_effects -= row_shift
            overall += row_shift

            max_change = np.nanmax(np.abs(residuals - old_residuals)) if np.isfinite(
                residuals).any() else 0.0
            if max_change < tol:
                converged = True
                break

    col_effects = col_effects.astype(float)
    col_effects[empty_cols] = np.nan

    result = MedianPolishResult(
        overall=overall,
        row_effects=pd.Series(row_effects, index=row_idx, name='peptide_effect'),
        col_effects=pd.Series(col_effects, index=col_idx, name='protein_abundance'),
        residuals=pd.DataFrame(residuals, index=row_idx, columns=col_idx),
        n_iterations=iteration + 1,
        converged=converged,
    )

    if not converged:
        logger.debug(f"Median polish did not converge after {max_iter} iterations")

    return result


def rollup_median(matrix: pd.DataFrame) -> pd.Series:
    """Per-sample median of finite peptide values; all-missing gives missing."""
    return matrix.median(axis=0, skipna=True)


def rollup_maxlfq(
    matrix: pd.DataFrame,
    min_overlap: int = 1,
) -> pd.Series:
    """
    Max-ratio consistency rollup.

    For each pair of samples sharing at least min_overlap peptides, take the
    median peptide log-ratio. Solve the weighted least squares problem
    x_j - x_i ~ r_ij (weights = number of shared peptides) for per-sample
    abundances, which are defined up to one additive constant per protein.

    Only the largest connected component of samples (linked by shared
    peptides) is estimated; samples outside it have insufficient overlap and
    are missing. The free constant is fixed so the mean estimate equals the
    mean of the component's per-sample peptide medians.

    Args:
        matrix: Peptide x sample matrix (log2 values)
        min_overlap: Minimum shared peptides for a sample pair to count

    Returns:
        Series of protein abundances per sample
    """
    samples = matrix.columns
    X = matrix.to_numpy(dtype=float)
    n_samples = X.shape[1]
    out = np.full(n_samples, np.nan)

    present = ~np.isnan(X)
    observed = np.flatnonzero(present.any(axis=0))
    if len(observed) == 0:
        return pd.Series(out, index=samples, name='protein_abundance')

    weights = np.zeros((n_samples, n_samples))
    ratios = np.zeros((n_samples, n_samples))
    for a in range(n_samples - 1):
        for b in range(a + 1, n_samples):
            shared = present[:, a] & present[:, b]
            n_shared = int(shared.sum())
            if n_shared < min_overlap or n_shared == 0:
                continue
            weights[a, b] = weights[b, a] = n_shared
            ratios[a, b] = np.median(X[shared, b] - X[shared, a])
            ratios[b, a] = -ratios[a, b]

    _, labels = connected_components(csr_matrix(weights), directed=False)

    # Largest component among observed samples; ties go to the earliest sample
    comp_sizes = {}
    for idx in observed:
        comp_sizes[labels[idx]] = comp_sizes.get(labels[idx], 0) + 1
    best = max(comp_sizes, key=lambda lab: (comp_sizes[lab], -np.flatnonzero(labels == lab)[0]))
    members = [idx for idx in observed if labels[idx] == best]

    col_medians = np.nanmedian(X[:, members], axis=0)
    if len(members) == 1:
        out[members[0]] = col_medians[0]
        return pd.Series(out, index=samples, name='protein_abundance')

    pos = {idx: k for k, idx in enumerate(members)}
    rows, rhs, w = [], [], []
    for a in members:
        for b in members:
            if b <= a or weights[a, b] == 0:
                continue
            row = np.zeros(len(members))
            row[pos[b]] = 1.0
            row[pos[a]] = -1.0
            rows.append(row)
            rhs.append(ratios[a, b])
            w.append(np.sqrt(weights[a, b]))

    A = np.array(rows) * np.array(w)[:, np.newaxis]
    y = np.array(rhs) * np.array(w)
    # Pin the free constant: estimates sum to zero
    A = np.vstack([A, np.ones(len(members))])
    y = np.append(y, 0.0)

    solution, *_ = np.linalg.lstsq(A, y, rcond=None)
    solution = solution - solution.mean() + col_medians.mean()

    out[members] = solution
    return pd.Series(out, index=samples, name='protein_abundance')


def restrict_features_per_protein(
    matrix: QuantMatrix,
    min_features: int = 1,
    min_samples: int = 1,
    protein_col: str = 'master_accessions',
) -> QuantMatrix:
    """Mask protein/sample pairs with too few peptide values.

    Peptide values are set to missing wherever their protein has fewer than
    min_features finite peptide values in that sample; features of proteins
    left with fewer than min_samples quantified samples are dropped.

    Returns:
        New peptide-level QuantMatrix
    """
    proteins = matrix.feature_meta[protein_col]
    finite = matrix.values.notna()
    counts = finite.groupby(proteins).transform('sum')
    values = matrix.values.where(counts >= min_features)

    n_quantified = values.notna().groupby(proteins).any().sum(axis=1)
    keep_proteins = set(n_quantified.index[n_quantified >= min_samples])
    keep = proteins.isin(keep_proteins)

    n_dropped = int((~n_quantified.index.isin(list(keep_proteins))).sum())
    if n_dropped:
        logger.info(f"Dropped {n_dropped} proteins quantified in < {min_samples} samples "
                    f"with >= {min_features} features")

    restricted = matrix.with_values(values)
    return restricted.subset(features=matrix.features[keep.to_numpy()])


def _representative_order(feature_meta: pd.DataFrame) -> pd.Index:
    """Feature ids ordered by (sequence, modifications), falling back to the id."""
    order = pd.DataFrame({'_id': feature_meta.index.astype(str)}, index=feature_meta.index)
    sort_cols = []
    for col in ('sequence', 'modifications'):
        if col in feature_meta.columns:
            order[col] = feature_meta[col].fillna('').astype(str)
            sort_cols.append(col)
    return order.sort_values(sort_cols + ['_id'], kind='mergesort').index


def rollup_to_proteins(
    matrix: QuantMatrix,
    method: str = 'median',
    protein_col: str = 'master_accessions',
    min_features: int = 1,
    min_samples: int = 1,
    min_overlap: int = 1,
    max_iter: int = 10,
) -> RollupResult:
    """
    Aggregate a peptide-level QuantMatrix to protein level.

    Args:
        matrix: Peptide-level QuantMatrix (log2 abundances or ratios)
        method: 'median', 'maxlfq' or 'median_polish'
        protein_col: Feature annotation holding the (single) protein accession
        min_features: Minimum finite peptide values per protein and sample
        min_samples: Minimum quantified samples per protein
        min_overlap: Minimum shared peptides per sample pair (maxlfq)
        max_iter: Iteration limit (median_polish)

    Returns:
        RollupResult with a protein x sample QuantMatrix
    """
    if method not in ROLLUP_METHODS:
        raise ValueError(f"Unknown rollup method: {method}. Must be one of: {ROLLUP_METHODS}")
    if protein_col not in matrix.feature_meta.columns:
        raise KeyError(f"Feature annotation {protein_col!r} is required for rollup")

    logger.info(f"Rolling up {matrix.shape[0]} features to proteins using {method}")

    unassigned = matrix.feature_meta[protein_col].fillna('').astype(str) == ''
    if unassigned.any():
        logger.warning(f"Skipping {int(unassigned.sum())} features without a protein")
        matrix = matrix.subset(features=matrix.features[~unassigned.to_numpy()])

    if min_features > 1 or min_samples > 1:
        matrix = restrict_features_per_protein(matrix, min_features, min_samples, protein_col)

    ordered = _representative_order(matrix.feature_meta)
    meta = matrix.feature_meta.loc[ordered]
    values = matrix.values.loc[ordered]

    protein_abundances = {}
    protein_meta = {}
    polish_results = {}
    skipped = []

    for protein, constituent in meta.groupby(protein_col, sort=True):
        feature_ids = constituent.index
        block = values.loc[feature_ids]
        if method == 'median':
            abundances = rollup_median(block)
        elif method == 'maxlfq':
            abundances = rollup_maxlfq(block, min_overlap=min_overlap)
        else:
            result = tukey_median_polish(block, max_iter=max_iter)
            abundances = result.col_effects + result.overall
            polish_results[protein] = result

        if abundances.isna().all():
            skipped.append(protein)
            continue

        row = constituent.iloc[0].to_dict()
        row[protein_col] = protein
        row['representative_feature'] = feature_ids[0]
        row['n_features'] = len(feature_ids)
        if 'mass_shift_only' in constituent.columns:
            row['mass_shift_only'] = bool(constituent['mass_shift_only'].fillna(False).any())

        protein_abundances[protein] = abundances
        protein_meta[protein] = row

    if skipped:
        logger.info(f"Skipped {len(skipped)} proteins with no quantifiable sample")
        for pid in skipped[:5]:
            logger.debug(f"  {pid}")

    protein_df = pd.DataFrame(protein_abundances, index=matrix.samples).T
    protein_df = protein_df.reindex(columns=matrix.samples)
    protein_df.index.name = 'protein'
    meta_df = pd.DataFrame.from_dict(protein_meta, orient='index')
    meta_df = meta_df.drop(columns=['n_samples_quantified'], errors='ignore')
    meta_df['n_samples_quantified'] = protein_df.notna().sum(axis=1)

    logger.info(f"Rolled up to {len(protein_df)} proteins")

    return RollupResult(
        matrix=QuantMatrix(protein_df, meta_df, matrix.sample_meta),
        method=method,
        polish_results=polish_results,
        skipped=skipped,
    )
