"""
Normalization of quantification matrices.

Two centering methods are provided:

- Reference-subset centering: each sample is shifted so that the median of a
  trusted reference subset (e.g. proteins known a priori to be invariant)
  sits at the target center. Use this when the bulk of features is expected
  to change, so the "most features don't change" assumption of whole
  population normalization is violated.
- Whole-population median centering: the same operation with every feature
  acting as the reference.

On log scale the per-sample reference median is subtracted; on linear scale
values are divided by it. Both return a new QuantMatrix.
"""

import logging
from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Union

import numpy as np
import pandas as pd

from .data_io import ACCESSION_SEP
from .matrix import QuantMatrix

logger = logging.getLogger(__name__)

Center = Union[float, str, None]


@dataclass
class NormalizationResult:
    """Normalized matrix and the per-sample statistics used to produce it."""

    matrix: QuantMatrix
    reference_medians: pd.Series
    target_center: float
    n_reference_features: int
    method_log: List[str] = field(default_factory=list)


def reference_mask(
    matrix: QuantMatrix,
    reference: Union[pd.Series, Iterable[str]],
    protein_col: str = 'master_accessions',
) -> pd.Series:
    """Boolean mask over features selecting the reference subset.

    Args:
        matrix: QuantMatrix to select from
        reference: Either a boolean Series indexed by feature id, or an
            iterable of accessions matched against protein_col (or the
            feature ids themselves when protein_col is absent, as for
            protein-level matrices)
        protein_col: Feature annotation holding protein accessions

    Returns:
        Boolean Series aligned to matrix.features

    """
    if isinstance(reference, pd.Series) and reference.dtype == bool:
        return reference.reindex(matrix.features, fill_value=False)

    accessions = set(reference)
    if protein_col in matrix.feature_meta.columns:
        proteins = matrix.feature_meta[protein_col].fillna('').astype(str)
        mask = proteins.map(lambda v: any(acc in accessions for acc in v.split(ACCESSION_SEP)))
    else:
        mask = pd.Series(matrix.features.isin(accessions), index=matrix.features)
    return mask.astype(bool)


def compute_reference_medians(values: pd.DataFrame, mask: pd.Series) -> pd.Series:
    """Median over reference features of each sample, ignoring missing values."""
    ref = values.loc[mask[mask].index]
    return ref.median(axis=0, skipna=True)


def _resolve_center(center: Center, medians: pd.Series, log_scale: bool) -> float:
    if center is None:
        return 0.0 if log_scale else 1.0
    if isinstance(center, str):
        if center != 'mean':
            raise ValueError(f"Unknown center: {center!r} (use a number or 'mean')")
        return float(medians.mean())
    return float(center)


def center_to_reference(
    matrix: QuantMatrix,
    reference: Union[pd.Series, Iterable[str]],
    center: Center = None,
    log_scale: bool = True,
    protein_col: str = 'master_accessions',
) -> NormalizationResult:
    """Center each sample so the reference subset's median equals the target.

    Args:
        matrix: QuantMatrix of log-scale (or linear) values
        reference: Reference features (boolean mask) or accessions
        center: Target center; None means 0 on log scale and 1 on linear
            scale, 'mean' means the mean of the per-sample reference medians
            (preserves the overall level of the data)
        log_scale: Subtract on log scale, divide on linear scale
        protein_col: Feature annotation used to match reference accessions

    Returns:
        NormalizationResult with a new QuantMatrix

    Raises:
        ValueError: If the reference subset is empty or has no finite value
            in some sample

    """
    mask = reference_mask(matrix, reference, protein_col)
    n_ref = int(mask.sum())
    if n_ref == 0:
        raise ValueError("Reference subset matches no features")

    medians = compute_reference_medians(matrix.values, mask)
    unusable = medians.index[~np.isfinite(medians.to_numpy())].tolist()
    if not log_scale:
        unusable += medians.index[(medians <= 0).to_numpy()].tolist()
    if unusable:
        raise ValueError(f"No usable reference values in samples: {unusable}")

    target = _resolve_center(center, medians, log_scale)

    if log_scale:
        shifts = medians - target
        normalized = matrix.values.sub(shifts, axis=1)
    else:
        shifts = medians / target
        normalized = matrix.values.div(shifts, axis=1)

    method_log = [
        f"Reference centering on {n_ref} features "
        f"({'log' if log_scale else 'linear'} scale, center={target:.4g})"
    ]
    logger.info(method_log[0])
    for sample, med in medians.items():
        logger.info(f"  {sample}: reference median {med:.4f}")

    return NormalizationResult(
        matrix=matrix.with_values(normalized),
        reference_medians=medians.rename('reference_median'),
        target_center=target,
        n_reference_features=n_ref,
        method_log=method_log,
    )


def median_normalize(
    matrix: QuantMatrix,
    center: Center = None,
    log_scale: bool = True,
) -> NormalizationResult:
    """Whole-population median centering (every feature is the reference)."""
    everything = pd.Series(True, index=matrix.features)
    result = center_to_reference(matrix, everything, center=center, log_scale=log_scale)
    result.method_log = [msg.replace('Reference centering', 'Median centering')
                         for msg in result.method_log]
    return result


def normalize(
    matrix: QuantMatrix,
    method: str = 'reference',
    reference: Optional[Iterable[str]] = None,
    center: Center = None,
    log_scale: bool = True,
) -> NormalizationResult:
    """Dispatch to a normalization method by name.

    Args:
        matrix: QuantMatrix to normalize
        method: 'reference', 'median' or 'none'
        reference: Reference accessions (required for 'reference')
        center: Target center (see center_to_reference)
        log_scale: Whether values are on log scale

    Returns:
        NormalizationResult

    """
    if method == 'reference':
        if not reference:
            raise ValueError("Reference normalization requires reference proteins")
        return center_to_reference(matrix, reference, center=center, log_scale=log_scale)
    elif method == 'median':
        return median_normalize(matrix, center=center, log_scale=log_scale)
    elif method == 'none':
        nothing = pd.Series(np.nan, index=matrix.samples)
        return NormalizationResult(
            matrix=matrix,
            reference_medians=nothing.rename('reference_median'),
            target_center=float('nan'),
            n_reference_features=0,
            method_log=['No normalization'],
        )
    else:
        raise ValueError(f"Unknown normalization method: {method}")
