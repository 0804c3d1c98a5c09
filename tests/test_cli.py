"""Tests for CLI module."""

import json
import sys

import numpy as np
import pandas as pd
import pytest
import yaml

from protquant.cli import (
    _deep_merge,
    generate_pipeline_metadata,
    load_config,
    main,
    run_pipeline,
)
from protquant.data_io import SchemaError, prepare_feature_table


def _silac_export(sequences, candidates, masters, heavy, light):
    return pd.DataFrame({
        'Sequence': sequences,
        'Modifications': ['1xLabel:13C(6)15N(2) [K]'] * len(sequences),
        'Protein Accessions': candidates,
        'Master Protein Accessions': masters,
        'Heavy': heavy,
        'Light': light,
    })


def _three_run_exports():
    """Three SILAC runs, five peptides, two proteins plus a contaminant peptide."""
    return {
        'run1': _silac_export(
            ['PEPAK', 'PEPBK', 'PEPDK', 'KERAK'],
            ['P1;P2', 'P1', 'P2', 'CONT1'],
            ['P2', 'P1', 'P2', 'CONT1'],
            [400.0, 800.0, 100.0, 50.0],
            [100.0, 100.0, 100.0, 50.0],
        ),
        'run2': _silac_export(
            ['PEPAK', 'PEPCK', 'PEPEK'],
            ['P1', 'P1;P2', 'P1'],
            ['P1', 'P1', 'P1'],
            [200.0, 400.0, np.nan],
            [100.0, 100.0, 100.0],
        ),
        'run3': _silac_export(
            ['PEPAK', 'PEPBK', 'PEPCK', 'PEPDK'],
            ['P1;P2', 'P1', 'P2', 'P2'],
            ['P1', 'P1', 'P2', 'P2'],
            [100.0, 200.0, 300.0, 800.0],
            [100.0, 100.0, 100.0, 100.0],
        ),
    }


def _ratio_config(**overrides):
    config = load_config(None)
    config['quantification']['mode'] = 'ratio'
    return _deep_merge(config, overrides)


@pytest.fixture
def runs():
    return {name: prepare_feature_table(raw, run_name=name)
            for name, raw in _three_run_exports().items()}


class TestDeepMerge:
    """Tests for deep merge utility."""

    def test_simple_merge(self):
        """Test merging flat dictionaries."""
        base = {"a": 1, "b": 2}
        override = {"b": 3, "c": 4}
        result = _deep_merge(base, override)
        assert result == {"a": 1, "b": 3, "c": 4}

    def test_nested_merge(self):
        """Test merging nested dictionaries."""
        base = {
            "section1": {"a": 1, "b": 2},
            "section2": {"c": 3},
        }
        override = {
            "section1": {"b": 20, "d": 4},
            "section3": {"e": 5},
        }
        result = _deep_merge(base, override)
        assert result == {
            "section1": {"a": 1, "b": 20, "d": 4},
            "section2": {"c": 3},
            "section3": {"e": 5},
        }

    def test_base_not_modified(self):
        base = {"section": {"a": 1}}
        _deep_merge(base, {"section": {"a": 2}})
        assert base == {"section": {"a": 1}}


class TestLoadConfig:
    """Tests for configuration loading."""

    def test_defaults(self):
        config = load_config(None)
        assert config['filtering']['associated_contaminants'] == 'feature'
        assert config['rollup']['method'] == 'median'
        assert config['normalization']['method'] == 'median'

    def test_yaml_override(self, tmp_path):
        path = tmp_path / 'config.yaml'
        path.write_text(yaml.safe_dump({
            'rollup': {'method': 'maxlfq'},
            'quantification': {'mode': 'ratio'},
        }))

        config = load_config(path)

        assert config['rollup']['method'] == 'maxlfq'
        assert config['rollup']['min_features'] == 1
        assert config['quantification']['mode'] == 'ratio'
        assert config['quantification']['numerator'] == 'Heavy'

    def test_missing_file_gives_defaults(self, tmp_path):
        assert load_config(tmp_path / 'absent.yaml') == load_config(None)


class TestRunPipeline:
    """End-to-end tests for run_pipeline."""

    def test_ratio_mode(self, runs):
        result = run_pipeline(runs, _ratio_config(), contaminants={'CONT1'})

        assert result.parsimony.assignment == {
            'PEPAK': 'P1',
            'PEPBK': 'P1',
            'PEPCK': 'P1',
            'PEPDK': 'P2',
            'PEPEK': 'P1',
        }
        assert result.peptide_matrix.samples.tolist() == ['run1', 'run2', 'run3']
        assert result.protein_matrix.features.tolist() == ['P1', 'P2']
        assert 'KERAK|' not in result.peptide_matrix.features

    def test_every_run_uses_unified_master(self, runs):
        result = run_pipeline(runs, _ratio_config(), contaminants={'CONT1'})
        masters = result.peptide_matrix.feature_meta['master_accessions']
        assert masters['PEPAK|'] == 'P1'
        assert masters['PEPCK|'] == 'P1'

    def test_normalized_medians_centered(self, runs):
        result = run_pipeline(runs, _ratio_config(), contaminants={'CONT1'})

        medians = result.peptide_matrix.values.median()
        np.testing.assert_allclose(medians.to_numpy(), 0.0, atol=1e-9)
        assert result.qc.warnings == []

    def test_one_sided_ratio_is_missing(self, runs):
        result = run_pipeline(runs, _ratio_config(), contaminants={'CONT1'})

        assert np.isnan(result.peptide_matrix.values.loc['PEPEK|', 'run2'])
        assert result.qc.missingness.loc['run2', 'b only'] == 1

    def test_filter_counts(self, runs):
        result = run_pipeline(runs, _ratio_config(), contaminants={'CONT1'})

        run1 = result.filter_results['run1']
        assert run1.removed['contaminant'] == 1
        assert run1.n_retained == 3
        assert result.qc.filter_summary.loc['run1', 'contaminant'] == 1

    def test_protein_group_count_after_parsimony(self):
        exports = {
            'run1': _silac_export(['UAK', 'SHAREDK'], ['P1', 'P1;P2'], ['P1', 'P1'],
                                  [400.0, 200.0], [100.0, 100.0]),
            'run2': _silac_export(['UBK', 'SHAREDK'], ['P2', 'P1;P2'], ['P2', 'P2'],
                                  [300.0, 800.0], [100.0, 100.0]),
        }
        for raw in exports.values():
            raw['Number of Protein Groups'] = [1, 2]
        runs = {name: prepare_feature_table(raw, run_name=name)
                for name, raw in exports.items()}

        result = run_pipeline(runs, _ratio_config())

        assert 'SHAREDK|' in result.peptide_matrix.features
        assert result.peptide_matrix.feature_meta.loc['SHAREDK|', 'master_accessions'] == 'P1'
        for filtered in result.filter_results.values():
            assert filtered.removed['ambiguous_master'] == 0

    def test_reference_normalization(self, runs):
        config = _ratio_config(normalization={
            'method': 'reference', 'reference_proteins': ['P1']})
        result = run_pipeline(runs, config, contaminants={'CONT1'})

        p1 = result.peptide_matrix.feature_meta['master_accessions'] == 'P1'
        medians = result.peptide_matrix.values[p1.to_numpy()].median()
        np.testing.assert_allclose(medians.to_numpy(), 0.0, atol=1e-9)

    def test_reference_file(self, runs, tmp_path):
        refs = tmp_path / 'refs.txt'
        refs.write_text('P1\n')
        config = _ratio_config(normalization={
            'method': 'reference', 'reference_proteins': str(refs)})

        result = run_pipeline(runs, config, contaminants={'CONT1'})

        assert any('Reference centering on' in step for step in result.method_log)

    def test_intensity_mode(self, runs):
        config = load_config(None)
        config['rollup']['method'] = 'maxlfq'
        result = run_pipeline(runs, config, contaminants={'CONT1'})

        assert 'run1:Heavy' in result.peptide_matrix.samples
        assert result.peptide_matrix.shape[1] == 6
        assert result.protein_matrix.features.tolist() == ['P1', 'P2']
        assert result.qc.missingness is None

    def test_unknown_mode(self, runs):
        config = load_config(None)
        config['quantification']['mode'] = 'spectral_count'
        with pytest.raises(ValueError, match='Unknown quantification mode'):
            run_pipeline(runs, config)

    def test_metadata(self, runs):
        config = _ratio_config()
        result = run_pipeline(runs, config, contaminants={'CONT1'})

        metadata = generate_pipeline_metadata(config, result, ['run1.tsv'])

        assert metadata['n_proteins'] == 2
        assert metadata['parsimony']['n_proteins'] == 2
        assert metadata['filtering']['run1']['removed']['contaminant'] == 1
        assert metadata['samples'] == ['run1', 'run2', 'run3']
        json.dumps(metadata, default=str)


class TestMain:
    """Tests for the command-line entry point."""

    def _write_runs(self, tmp_path):
        paths = []
        for name, raw in _three_run_exports().items():
            path = tmp_path / f'{name}.tsv'
            raw.to_csv(path, sep='\t', index=False)
            paths.append(str(path))
        return paths

    def test_run_command(self, tmp_path, monkeypatch):
        paths = self._write_runs(tmp_path)
        contaminants = tmp_path / 'crap.txt'
        contaminants.write_text('CONT1\n')
        config = tmp_path / 'config.yaml'
        config.write_text(yaml.safe_dump({'quantification': {'mode': 'ratio'}}))
        out = tmp_path / 'out'

        monkeypatch.setattr(sys, 'argv', [
            'protquant', 'run', '-i', *paths, '-o', str(out),
            '-c', str(config), '-x', str(contaminants),
        ])
        assert main() == 0

        assert (out / 'peptides' / 'values.parquet').exists()
        assert (out / 'proteins' / 'values.parquet').exists()
        assert (out / 'parsimony_assignment.tsv').exists()
        assert (out / 'filter_summary.tsv').exists()
        assert (out / 'missingness_summary.tsv').exists()
        assert (out / 'qc_report.html').exists()
        with open(out / 'metadata.json') as f:
            metadata = json.load(f)
        assert metadata['n_proteins'] == 2

    def test_resolve_command(self, tmp_path, monkeypatch):
        paths = self._write_runs(tmp_path)
        out = tmp_path / 'out'

        monkeypatch.setattr(sys, 'argv', ['protquant', 'resolve', '-i', *paths, '-o', str(out)])
        assert main() == 0

        assignment = pd.read_csv(out / 'parsimony_assignment.tsv', sep='\t')
        assert 'PEPAK' in assignment['sequence'].tolist()

    def test_validate_command(self, tmp_path, monkeypatch):
        paths = self._write_runs(tmp_path)
        bad = tmp_path / 'bad.tsv'
        pd.DataFrame({'Sequence': ['AAA']}).to_csv(bad, sep='\t', index=False)

        monkeypatch.setattr(sys, 'argv', ['protquant', 'validate', *paths])
        assert main() == 0

        monkeypatch.setattr(sys, 'argv', ['protquant', 'validate', str(bad)])
        assert main() == 1

    def test_schema_error_exit_code(self, tmp_path, monkeypatch):
        bad = tmp_path / 'bad.tsv'
        pd.DataFrame({'Sequence': ['AAA'], 'Heavy': [1.0]}).to_csv(bad, sep='\t', index=False)

        monkeypatch.setattr(sys, 'argv', ['protquant', 'run', '-i', str(bad),
                                          '-o', str(tmp_path / 'out')])
        assert main() == 2

    def test_no_command(self, monkeypatch):
        monkeypatch.setattr(sys, 'argv', ['protquant'])
        assert main() == 1


def test_schema_error_is_value_error():
    err = SchemaError('protein_accessions', 'required column missing')
    assert isinstance(err, ValueError)
    assert err.field == 'protein_accessions'
