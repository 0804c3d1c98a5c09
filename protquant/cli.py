"""Command-line interface for protquant.

Peptide-to-protein parsimony, ratio/normalization and protein rollup for
LFQ and SILAC feature tables.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from dataclasses import dataclass, field
from datetime import datetime, timezone
from importlib.metadata import PackageNotFoundError, version
from pathlib import Path

import pandas as pd
import yaml

from .data_io import (
    INTENSITY_PREFIXES,
    SchemaError,
    intensity_columns_of,
    load_accession_list,
    load_contaminants,
    load_feature_table,
    load_sample_metadata,
    validate_feature_file,
)
from .filtering import (
    FilterResult,
    chain_filter_results,
    combine_filter_summaries,
    filter_features,
)
from .matrix import QuantMatrix
from .normalization import normalize, reference_mask
from .parsimony import ParsimonyResult, apply_mapping, export_assignment, resolve_parsimony
from .qc import QCSummary, check_centering, generate_qc_report
from .ratios import compute_ratios, intensity_matrix, missingness_summary, ratio_matrix
from .rollup import rollup_to_proteins

logger = logging.getLogger(__name__)


def setup_logging(verbose: bool = False) -> None:
    """Configure logging."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S',
    )


def load_config(config_path: Path | None) -> dict:
    """Load configuration from YAML file or return defaults."""
    defaults = {
        'data': {
            'level': 'peptide',  # 'peptide' or 'psm'
            'intensity_prefixes': list(INTENSITY_PREFIXES),
            'strip_label_modifications': True,
            'sample_column': 'sample',
        },
        'filtering': {
            'remove_contaminants': True,
            'associated_contaminants': 'feature',  # 'feature' or 'protein'
            'require_quant_values': True,
            'require_unique_master': True,
        },
        'parsimony': {
            'enabled': True,
        },
        'quantification': {
            'mode': 'intensity',  # 'intensity' (LFQ) or 'ratio' (SILAC / paired)
            'numerator': 'Heavy',
            'denominator': 'Light',
            'detection_columns': None,
            'log_transform': True,
        },
        'normalization': {
            'method': 'median',  # 'reference', 'median' or 'none'
            'reference_proteins': None,  # list of accessions or path to a list
            'center': None,
        },
        'rollup': {
            'method': 'median',  # 'median', 'maxlfq' or 'median_polish'
            'min_features': 1,
            'min_samples': 1,
            'min_overlap': 1,
        },
        'output': {
            'format': 'parquet',
            'qc_report': True,
        },
    }

    if config_path and config_path.exists():
        with open(config_path) as f:
            user_config = yaml.safe_load(f) or {}
        # Deep merge user config over defaults
        defaults = _deep_merge(defaults, user_config)

    return defaults


def _deep_merge(base: dict, override: dict) -> dict:
    """Deep merge override dict into base dict."""
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _reference_proteins(config: dict) -> list[str] | None:
    refs = config['normalization'].get('reference_proteins')
    if refs is None or isinstance(refs, list):
        return refs
    return load_accession_list(Path(refs))


@dataclass
class PipelineResult:
    """Results from the full pipeline."""

    peptide_matrix: QuantMatrix
    protein_matrix: QuantMatrix
    unnormalized_matrix: QuantMatrix
    filter_results: dict[str, FilterResult]
    parsimony: ParsimonyResult | None
    qc: QCSummary
    method_log: list[str] = field(default_factory=list)


def load_runs(paths: list[Path], config: dict) -> dict[str, pd.DataFrame]:
    """Load each run's feature table, keyed by file stem."""
    runs = {}
    for path in paths:
        name = Path(path).stem
        if name in runs:
            raise ValueError(f"Duplicate run name {name!r} (from {path})")
        runs[name] = load_feature_table(
            path,
            run_name=name,
            level=config['data'].get('level', 'peptide'),
            intensity_prefixes=config['data'].get('intensity_prefixes', INTENSITY_PREFIXES),
            strip_label_mods=config['data'].get('strip_label_modifications', True),
        )
    return runs


def run_pipeline(
    runs: dict[str, pd.DataFrame],
    config: dict,
    contaminants: set[str] | None = None,
    sample_meta: pd.DataFrame | None = None,
) -> PipelineResult:
    """Run filter -> parsimony -> ratio/intensity -> normalization -> rollup.

    Args:
        runs: Run name -> loaded feature table
        config: Configuration from load_config
        contaminants: Contaminant accessions
        sample_meta: Optional sample annotations indexed by sample id

    Returns:
        PipelineResult

    """
    contaminants = contaminants or set()
    filt_cfg = config['filtering']
    quant_cfg = config['quantification']
    norm_cfg = config['normalization']
    roll_cfg = config['rollup']
    method_log = []
    qc = QCSummary()

    # Stage 1: contaminants and unquantified rows, per run
    stage1 = {
        run: filter_features(
            table,
            contaminants,
            remove_contaminants=filt_cfg.get('remove_contaminants', True),
            associated_contaminants=filt_cfg.get('associated_contaminants', 'feature'),
            require_quant_values=filt_cfg.get('require_quant_values', True),
            require_unique_master=False,
        )
        for run, table in runs.items()
    }
    method_log.append(f"Filtered {len(runs)} runs against {len(contaminants)} contaminants "
                      f"(associated policy: {filt_cfg.get('associated_contaminants')})")

    # Stage 2: unified parsimony across all runs
    tables = {run: res.data for run, res in stage1.items()}
    parsimony = None
    if config['parsimony'].get('enabled', True):
        exclude = contaminants if filt_cfg.get('remove_contaminants', True) else ()
        parsimony = resolve_parsimony(tables, exclude=exclude)
        excluded = set(parsimony.excluded)
        tables = {
            run: apply_mapping(table[~table['sequence'].astype(str).isin(excluded)],
                               parsimony.assignment)
            for run, table in tables.items()
        }
        qc.parsimony_summary = parsimony.summary
        qc.n_excluded_sequences = len(parsimony.excluded)
        method_log.append(f"Parsimony: {len(parsimony.assignment)} sequences -> "
                          f"{parsimony.n_proteins} proteins")

    # Stage 3: master protein uniqueness on the updated assignment
    filter_results = {}
    for run, table in tables.items():
        second = filter_features(
            table,
            remove_contaminants=False,
            require_quant_values=False,
            require_unique_master=filt_cfg.get('require_unique_master', True),
            intensity_columns=intensity_columns_of(runs[run]),
            use_protein_group_count=parsimony is None,
        )
        filter_results[run] = chain_filter_results(stage1[run], second)
        tables[run] = second.data
    qc.filter_summary = combine_filter_summaries(filter_results.values())

    # Stage 4: quantification matrix
    mode = quant_cfg.get('mode', 'intensity')
    if mode == 'ratio':
        detection = quant_cfg.get('detection_columns')
        ratio_tables = {
            run: compute_ratios(
                table,
                quant_cfg['numerator'],
                quant_cfg['denominator'],
                log_transform=quant_cfg.get('log_transform', True),
                detection_cols=tuple(detection) if detection else None,
            )
            for run, table in tables.items()
        }
        qc.missingness = missingness_summary(ratio_tables)
        matrix = ratio_matrix(ratio_tables)
        method_log.append(f"Ratios {quant_cfg['numerator']}/{quant_cfg['denominator']} "
                          f"across {len(ratio_tables)} runs")
    elif mode == 'intensity':
        matrix = intensity_matrix(
            tables,
            {run: intensity_columns_of(runs[run]) for run in tables},
            log_transform=quant_cfg.get('log_transform', True),
        )
        method_log.append(f"Intensity matrix with {matrix.shape[1]} samples")
    else:
        raise ValueError(f"Unknown quantification mode: {mode}")

    if sample_meta is not None:
        matrix = QuantMatrix(matrix.values, matrix.feature_meta, sample_meta)

    # Stage 5: normalization
    method = norm_cfg.get('method', 'median')
    refs = _reference_proteins(config)
    norm = normalize(matrix, method=method, reference=refs, center=norm_cfg.get('center'))
    method_log.extend(norm.method_log)
    if method != 'none':
        if method == 'reference':
            mask = reference_mask(matrix, refs)
        else:
            mask = pd.Series(True, index=matrix.features)
        qc.reference_medians_before = norm.reference_medians
        qc.reference_medians_after, messages = check_centering(
            norm.matrix, mask, norm.target_center)
        qc.warnings.extend(messages)

    # Stage 6: protein rollup
    rollup = rollup_to_proteins(
        norm.matrix,
        method=roll_cfg.get('method', 'median'),
        min_features=roll_cfg.get('min_features', 1),
        min_samples=roll_cfg.get('min_samples', 1),
        min_overlap=roll_cfg.get('min_overlap', 1),
    )
    method_log.append(f"Rollup ({rollup.method}): {rollup.matrix.shape[0]} proteins")

    return PipelineResult(
        peptide_matrix=norm.matrix,
        protein_matrix=rollup.matrix,
        unnormalized_matrix=matrix,
        filter_results=filter_results,
        parsimony=parsimony,
        qc=qc,
        method_log=method_log,
    )


def generate_pipeline_metadata(
    config: dict,
    result: PipelineResult,
    input_files: list[str],
) -> dict:
    """Generate pipeline metadata JSON for reproducibility and provenance.

    Args:
        config: Pipeline configuration dictionary
        result: PipelineResult from run_pipeline
        input_files: List of input file paths

    Returns:
        Dictionary with complete pipeline metadata

    """
    try:
        pipeline_version = version('protquant')
    except PackageNotFoundError:
        pipeline_version = 'development'

    filtering = {
        run: {'n_input': res.n_input, 'n_retained': res.n_retained, 'removed': res.removed}
        for run, res in result.filter_results.items()
    }

    parsimony = {}
    if result.parsimony is not None:
        parsimony = {
            'n_sequences': len(result.parsimony.assignment),
            'n_proteins': result.parsimony.n_proteins,
            'n_excluded': len(result.parsimony.excluded),
        }

    return {
        'pipeline_version': pipeline_version,
        'processing_date': datetime.now(timezone.utc).isoformat(),
        'source_files': input_files,
        'samples': [str(s) for s in result.peptide_matrix.samples],
        'n_features': result.peptide_matrix.shape[0],
        'n_proteins': result.protein_matrix.shape[0],
        'filtering': filtering,
        'parsimony': parsimony,
        'processing_parameters': config,
        'method_log': result.method_log,
        'warnings': result.qc.warnings,
    }


def cmd_run(args: argparse.Namespace) -> int:
    """Run the full pipeline.

    Pipeline stages:
    1. Load every run's feature table
    2. Contaminant / no-quant filtering per run
    3. Unified parsimony across runs, applied to every run
    4. Master-protein uniqueness filtering
    5. Ratio or intensity matrix
    6. Normalization
    7. Protein rollup
    """
    config = load_config(Path(args.config) if args.config else None)

    runs = load_runs([Path(p) for p in args.input], config)
    contaminants = load_contaminants(Path(args.contaminants)) if args.contaminants else set()
    sample_meta = None
    if args.metadata:
        sample_meta = load_sample_metadata(
            Path(args.metadata), sample_col=config['data'].get('sample_column', 'sample'))

    result = run_pipeline(runs, config, contaminants, sample_meta)

    output_dir = Path(args.output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)
    output_format = config['output'].get('format', 'parquet')

    result.peptide_matrix.write(output_dir / 'peptides', fmt=output_format)
    result.protein_matrix.write(output_dir / 'proteins', fmt=output_format)
    if result.parsimony is not None:
        export_assignment(result.parsimony, output_dir)
    result.qc.filter_summary.to_csv(output_dir / 'filter_summary.tsv', sep='\t')
    if result.qc.missingness is not None:
        result.qc.missingness.to_csv(output_dir / 'missingness_summary.tsv', sep='\t')

    metadata = generate_pipeline_metadata(
        config, result, [str(p) for p in args.input])
    with open(output_dir / 'metadata.json', 'w') as f:
        json.dump(metadata, f, indent=2, default=str)
    logger.info(f"Saved pipeline metadata to {output_dir / 'metadata.json'}")

    if config['output'].get('qc_report', True):
        generate_qc_report(
            result.qc,
            result.method_log,
            str(output_dir / 'qc_report.html'),
            before=result.unnormalized_matrix,
            after=result.peptide_matrix,
        )

    logger.info("=" * 60)
    logger.info("Pipeline Complete")
    logger.info("=" * 60)
    for step in result.method_log:
        logger.info(f"  {step}")
    logger.info(f"Output directory: {output_dir}")

    return 0


def cmd_resolve(args: argparse.Namespace) -> int:
    """Resolve a unified peptide -> protein assignment only."""
    config = load_config(Path(args.config) if args.config else None)
    filt_cfg = config['filtering']

    runs = load_runs([Path(p) for p in args.input], config)
    contaminants = load_contaminants(Path(args.contaminants)) if args.contaminants else set()

    tables = {
        run: filter_features(
            table,
            contaminants,
            remove_contaminants=filt_cfg.get('remove_contaminants', True),
            associated_contaminants=filt_cfg.get('associated_contaminants', 'feature'),
            require_quant_values=False,
            require_unique_master=False,
        ).data
        for run, table in runs.items()
    }
    result = resolve_parsimony(tables, exclude=contaminants)
    export_assignment(result, Path(args.output_dir))

    return 0


def cmd_validate(args: argparse.Namespace) -> int:
    """Validate feature tables against the expected schema."""
    all_valid = True
    for path in args.input:
        validation = validate_feature_file(Path(path))
        if validation.is_valid:
            logger.info(str(validation))
        else:
            logger.error(str(validation))
            all_valid = False
        for w in validation.warnings:
            logger.warning(f"  {w}")
    return 0 if all_valid else 1


def main() -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        prog='protquant',
        description='protquant: peptide-to-protein parsimony, ratio normalization\n'
                    'and protein rollup for LFQ and SILAC feature tables.\n\n'
                    'Primary usage:\n'
                    '  protquant run -i run1.tsv run2.tsv -o output_dir/ -c config.yaml\n',
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument('-v', '--verbose', action='store_true', help='Verbose output')
    parser.add_argument('--version', action='version', version='%(prog)s 0.1.0')

    subparsers = parser.add_subparsers(dest='command', help='Commands')

    run_parser = subparsers.add_parser(
        'run',
        help='Run the full pipeline (recommended)',
        description='Filter, resolve parsimony, compute ratios or intensities, '
                    'normalize and roll up to proteins.'
    )
    run_parser.add_argument('-i', '--input', nargs='+', required=True,
                            help='Feature tables, one per run (CSV/TSV)')
    run_parser.add_argument('-o', '--output-dir', required=True,
                            help='Output directory for results')
    run_parser.add_argument('-c', '--config', help='Configuration YAML file')
    run_parser.add_argument('-x', '--contaminants', help='Contaminant list or FASTA')
    run_parser.add_argument('-m', '--metadata', help='Sample metadata TSV')

    resolve_parser = subparsers.add_parser(
        'resolve', help='Compute the unified peptide -> protein assignment only')
    resolve_parser.add_argument('-i', '--input', nargs='+', required=True,
                                help='Feature tables, one per run (CSV/TSV)')
    resolve_parser.add_argument('-o', '--output-dir', required=True,
                                help='Output directory for assignment tables')
    resolve_parser.add_argument('-c', '--config', help='Configuration YAML file')
    resolve_parser.add_argument('-x', '--contaminants', help='Contaminant list or FASTA')

    val_parser = subparsers.add_parser('validate', help='Check feature tables against the schema')
    val_parser.add_argument('input', nargs='+', help='Feature tables (CSV/TSV)')

    args = parser.parse_args()

    setup_logging(args.verbose)

    commands = {
        'run': cmd_run,
        'resolve': cmd_resolve,
        'validate': cmd_validate,
    }
    if args.command not in commands:
        parser.print_help()
        return 1

    try:
        return commands[args.command](args)
    except SchemaError as e:
        logger.error(f"Schema error in field '{e.field}': {e}")
        return 2
    except ValueError as e:
        logger.error(str(e))
        return 2


if __name__ == '__main__':
    sys.exit(main())
