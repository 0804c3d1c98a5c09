"""
Ratio computation between paired conditions.

Ratios are log-scale differences ``A - B`` (for example heavy/light in SILAC,
or CL/NC and RNase+/RNase- in paired designs). Each ratio carries a
missingness class so that one-sided observations stay visible downstream:

- 'both present': A and B finite, ratio finite
- 'a only':       only A finite, ratio missing
- 'b only':       only B finite, ratio missing
- 'both missing': neither finite, row dropped by default

Missing values are never replaced by zero.
"""

import logging
from typing import Dict, Iterable, Mapping, Optional, Tuple, Union

import numpy as np
import pandas as pd

from .data_io import SchemaError
from .matrix import QuantMatrix

logger = logging.getLogger(__name__)

BOTH_PRESENT = 'both present'
A_ONLY = 'a only'
B_ONLY = 'b only'
BOTH_MISSING = 'both missing'
MISSINGNESS_LEVELS = [BOTH_PRESENT, A_ONLY, B_ONLY, BOTH_MISSING]

# Detection value marking a channel quantified from the paired mass shift
MASS_SHIFT_DETECTION = 'Peak Found'

FEATURE_META_COLUMNS = ['sequence', 'modifications', 'master_accessions']

ArrayLike = Union[float, np.ndarray, pd.Series]


def _as_float(x) -> np.ndarray:
    return pd.to_numeric(pd.Series(np.atleast_1d(x)), errors='coerce').to_numpy(dtype=float)


def classify_missingness(a: ArrayLike, b: ArrayLike) -> np.ndarray:
    """Missingness class of each (a, b) pair."""
    a_ok = np.isfinite(_as_float(a))
    b_ok = np.isfinite(_as_float(b))
    return np.select(
        [a_ok & b_ok, a_ok & ~b_ok, ~a_ok & b_ok],
        [BOTH_PRESENT, A_ONLY, B_ONLY],
        default=BOTH_MISSING,
    ).astype(object)


def get_ratio(a, b):
    """Log-scale ratio ``a - b`` and its missingness class.

    Args:
        a: Log-scale value(s) of the numerator condition
        b: Log-scale value(s) of the denominator condition

    Returns:
        (ratio, missingness). For scalar input a float and a string; for
        Series input two Series sharing a's index; otherwise two arrays.
        The ratio is NaN unless both sides are finite.

    Example:
        >>> get_ratio(5.0, 3.0)
        (2.0, 'both present')

    """
    a_arr = _as_float(a)
    b_arr = _as_float(b)
    if a_arr.shape != b_arr.shape:
        raise ValueError(f"Shape mismatch: {a_arr.shape} vs {b_arr.shape}")

    missing = classify_missingness(a_arr, b_arr)
    ratio = np.where(missing == BOTH_PRESENT, a_arr - b_arr, np.nan)

    if np.isscalar(a) and np.isscalar(b):
        return float(ratio[0]), str(missing[0])
    if isinstance(a, pd.Series):
        return (pd.Series(ratio, index=a.index, name='ratio'),
                pd.Series(missing, index=a.index, name='missing'))
    return ratio, missing


def log2_transform(values: pd.DataFrame) -> pd.DataFrame:
    """log2 of intensities; zero, negative and non-numeric values become missing."""
    numeric = values.apply(pd.to_numeric, errors='coerce').astype(float)
    n_nonpositive = int((numeric <= 0).sum().sum())
    if n_nonpositive:
        logger.debug(f"{n_nonpositive} non-positive intensities set to missing before log2")
    return np.log2(numeric.where(numeric > 0))


def compute_ratios(
    df: pd.DataFrame,
    numerator: str,
    denominator: str,
    log_transform: bool = True,
    detection_cols: Optional[Tuple[str, str]] = None,
    drop_all_missing: bool = True,
    key_col: str = 'feature_key',
) -> pd.DataFrame:
    """Per-feature ratios between two intensity columns of one run.

    Args:
        df: Feature table (one row per feature key)
        numerator: Column for condition A
        denominator: Column for condition B
        log_transform: log2-transform both columns first (set False if
            the columns are already log-scale)
        detection_cols: Optional (A, B) detection columns; a row is flagged
            mass_shift_only when either side reads 'Peak Found'
        drop_all_missing: Drop rows where neither side is finite
        key_col: Feature key column

    Returns:
        New DataFrame with key, annotation, a, b, ratio, missing and
        mass_shift_only columns

    Raises:
        SchemaError: If the key, either intensity column or a detection
            column is absent

    """
    required = [key_col, numerator, denominator]
    if detection_cols is not None:
        required.extend(detection_cols)
    for col in required:
        if col not in df.columns:
            raise SchemaError(col, "column not in feature table")

    pair = df[[numerator, denominator]]
    if log_transform:
        pair = log2_transform(pair)
    else:
        pair = pair.apply(pd.to_numeric, errors='coerce').astype(float)

    ratio, missing = get_ratio(pair[numerator], pair[denominator])

    meta_cols = [key_col] + [c for c in FEATURE_META_COLUMNS + ['run'] if c in df.columns]
    out = df[meta_cols].copy()
    out['a'] = pair[numerator]
    out['b'] = pair[denominator]
    out['ratio'] = ratio
    out['missing'] = pd.Categorical(missing, categories=MISSINGNESS_LEVELS)

    if detection_cols is not None:
        a_det, b_det = detection_cols
        out['mass_shift_only'] = (
            (df[a_det].astype(str) == MASS_SHIFT_DETECTION)
            | (df[b_det].astype(str) == MASS_SHIFT_DETECTION)
        )
    else:
        out['mass_shift_only'] = False

    n_input = len(out)
    if drop_all_missing:
        out = out[out['missing'] != BOTH_MISSING]

    counts = out['missing'].value_counts()
    logger.info(f"Computed {numerator}/{denominator} ratios for {len(out)} features "
                f"({n_input - len(out)} fully missing dropped)")
    for level in MISSINGNESS_LEVELS:
        if counts.get(level, 0):
            logger.debug(f"  {level}: {counts[level]}")

    return out.reset_index(drop=True)


def missingness_summary(ratio_tables: Mapping[str, pd.DataFrame]) -> pd.DataFrame:
    """Run x missingness-class counts."""
    rows = {}
    for run, table in ratio_tables.items():
        counts = table['missing'].value_counts()
        rows[run] = {level: int(counts.get(level, 0)) for level in MISSINGNESS_LEVELS}
    return pd.DataFrame.from_dict(rows, orient='index', columns=MISSINGNESS_LEVELS)


def _feature_meta(tables: Iterable[pd.DataFrame], key_col: str) -> pd.DataFrame:
    stacked = pd.concat(list(tables), ignore_index=True)
    meta_cols = [c for c in FEATURE_META_COLUMNS if c in stacked.columns]
    meta = stacked.groupby(key_col, sort=True)[meta_cols].first()
    if 'mass_shift_only' in stacked.columns:
        meta['mass_shift_only'] = stacked.groupby(key_col, sort=True)['mass_shift_only'].any()
    return meta


def ratio_matrix(
    ratio_tables: Mapping[str, pd.DataFrame],
    sample_meta: Optional[pd.DataFrame] = None,
    key_col: str = 'feature_key',
) -> QuantMatrix:
    """Assemble per-run ratio tables into a features x runs QuantMatrix.

    Each run becomes one sample column. Feature annotations come from the
    first run (in sorted run order) that contains the feature, except
    mass_shift_only which is ANY across runs.
    """
    runs = sorted(ratio_tables)
    columns: Dict[str, pd.Series] = {}
    for run in runs:
        table = ratio_tables[run]
        columns[run] = table.set_index(key_col)['ratio']

    values = pd.DataFrame(columns).sort_index()
    meta = _feature_meta((ratio_tables[r] for r in runs), key_col)
    meta['n_samples_quantified'] = values.notna().sum(axis=1)

    if sample_meta is None:
        sample_meta = pd.DataFrame(index=pd.Index(runs))
    logger.info(f"Ratio matrix: {values.shape[0]} features x {values.shape[1]} samples")
    return QuantMatrix(values, meta, sample_meta)


def intensity_matrix(
    tables: Mapping[str, pd.DataFrame],
    intensity_columns: Mapping[str, list[str]],
    log_transform: bool = True,
    sample_meta: Optional[pd.DataFrame] = None,
    key_col: str = 'feature_key',
) -> QuantMatrix:
    """Assemble label-free intensity columns from one or more runs into a QuantMatrix.

    With a single run the sample ids are the intensity column names; with
    several runs they are prefixed with the run name.
    """
    runs = sorted(tables)
    prefix = len(runs) > 1
    blocks = []
    for run in runs:
        table = tables[run]
        block = table.set_index(key_col)[intensity_columns[run]]
        if log_transform:
            block = log2_transform(block)
        if prefix:
            block = block.rename(columns=lambda c, r=run: f"{r}:{c}")
        blocks.append(block)

    values = pd.concat(blocks, axis=1).sort_index()
    meta = _feature_meta((tables[r] for r in runs), key_col)
    meta['n_samples_quantified'] = values.notna().sum(axis=1)

    if sample_meta is None:
        sample_meta = pd.DataFrame(index=values.columns)
    logger.info(f"Intensity matrix: {values.shape[0]} features x {values.shape[1]} samples")
    return QuantMatrix(values, meta, sample_meta)
