"""Command-line interface for pd-rollup.

Roll Proteome Discoverer PSM / peptide quantification up to protein or
PTM-site level: parse, filter, aggregate and normalize.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from datetime import datetime, timezone
from pathlib import Path

import yaml

from . import __version__
from .audit import steps_to_frame
from .data_io import (
    load_contaminant_accessions,
    load_pd_export,
    load_sample_metadata,
    read_quant_bundle,
    validate_pd_export,
    write_flat_table,
    write_quant_bundle,
)
from .errors import InputFormatError, PipelineError
from .normalization import NormalizationConfig, normalize
from .pipeline import PipelineConfig, PipelineResult, run_pipeline

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
            'contaminants_fasta': None,
            'sample_metadata': None,
        },
        'parse': {
            'level': 'PSM',
            'tmt': False,
            'filter_contaminants': True,
            'filter_associated_contaminants': True,
        },
        'quality_filter': {
            'min_signal_noise': None,
            'max_interference': None,
            'min_delta_score': None,
            'min_localisation_score': None,
            'drop_unquantified': False,
        },
        'missing_values': {
            'max_missing': 0.5,
            'min_features': None,
            'max_iterations': 5,
        },
        'aggregation': {
            'method': 'robust',
            'group_by': 'protein',
            'max_iter': 1000,
        },
        'normalization': {
            'method': 'median',
            'log2': True,
            'center': None,
        },
        'output': {
            'write_features': True,
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


def load_config_from_provenance(provenance_path: Path) -> tuple[dict, dict]:
    """Rebuild a configuration from a previous run's metadata.json.

    Returns:
        Tuple of (config merged over defaults, full provenance dict)

    Raises:
        InputFormatError: If the file has no ``processing_parameters``

    """
    with open(provenance_path) as f:
        provenance = json.load(f)

    if 'processing_parameters' not in provenance:
        raise InputFormatError(
            f"{provenance_path} has no 'processing_parameters' section", stage='config'
        )

    config = _deep_merge(load_config(None), provenance['processing_parameters'])
    return config, provenance


def generate_pipeline_metadata(
    config: dict,
    result: PipelineResult,
    input_files: list[str],
) -> dict:
    """Provenance record for a pipeline run.

    Contains the package version, processing time, input files, sample
    summary, all processing parameters, the method log and the audit steps.
    """
    proteins = result.proteins
    sample_summary = {
        'n_samples': len(proteins.samples),
        'samples': [str(s) for s in proteins.samples],
    }

    return {
        'pipeline_version': __version__,
        'processing_date': datetime.now(timezone.utc).isoformat(),
        'source_files': input_files,
        'sample_metadata': sample_summary,
        'processing_parameters': config,
        'method_log': result.method_log,
        'filter_steps': [step.to_dict() for step in result.steps],
        'normalization_shifts': {str(k): float(v) for k, v in result.shifts.items()},
        'missing_value_filter': {
            'n_iterations': result.missing.n_iterations,
            'converged': result.missing.converged,
        },
        'aggregation': {
            'n_groups': proteins.n_features,
            'n_not_converged': result.aggregation.n_not_converged,
        },
    }


def cmd_run(args: argparse.Namespace) -> int:
    """Run the full pipeline on a PD export."""
    if args.from_provenance:
        config, _ = load_config_from_provenance(Path(args.from_provenance))
    else:
        config = load_config(Path(args.config) if args.config else None)

    input_path = Path(args.input)
    output_dir = Path(args.output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)
    input_files = [str(input_path)]

    data = load_pd_export(input_path, level=config['parse'].get('level', 'PSM'))

    contaminants_path = args.contaminants or config['data'].get('contaminants_fasta')
    contaminants = None
    if contaminants_path:
        contaminants = load_contaminant_accessions(Path(contaminants_path))
        input_files.append(str(contaminants_path))

    metadata_path = args.metadata or config['data'].get('sample_metadata')
    sample_metadata = None
    if metadata_path:
        sample_metadata = load_sample_metadata(Path(metadata_path))
        input_files.append(str(metadata_path))

    pipeline_config = PipelineConfig.from_dict(config)
    result = run_pipeline(
        data,
        config=pipeline_config,
        contaminants=contaminants,
        sample_metadata=sample_metadata,
    )

    # Outputs
    write_quant_bundle(result.proteins, output_dir / 'proteins', extra={'level': 'group'})
    if config['output'].get('write_features', True):
        write_quant_bundle(result.features, output_dir / 'features', extra={'level': 'feature'})
    write_flat_table(result.proteins, output_dir / 'proteins.tsv')
    steps_to_frame(result.steps).to_csv(output_dir / 'filter_steps.tsv', sep='\t', index=False)

    # Record the effective parameters, including dataclass defaults
    effective = _deep_merge(config, pipeline_config.to_dict())
    metadata = generate_pipeline_metadata(effective, result, input_files)
    metadata_output = output_dir / 'metadata.json'
    with open(metadata_output, 'w') as f:
        json.dump(metadata, f, indent=2, default=str)
    logger.info(f"Saved pipeline metadata to {metadata_output}")

    logger.info("=" * 60)
    logger.info("pd-rollup complete")
    logger.info("=" * 60)
    for step in result.method_log:
        logger.info(f"  {step}")
    logger.info(f"Output directory: {output_dir}")

    return 0


def cmd_validate(args: argparse.Namespace) -> int:
    """Check that an export has the columns the pipeline needs."""
    result = validate_pd_export(Path(args.input), level=args.level)
    if result.is_valid:
        logger.info(str(result))
        for col in result.abundance_columns:
            logger.debug(f"  abundance column: {col}")
    else:
        logger.error(str(result))
    for warning in result.warnings:
        logger.warning(warning)
    return 0 if result.is_valid else 1


def cmd_normalize(args: argparse.Namespace) -> int:
    """Re-normalize a stored bundle (e.g. against a reference subset)."""
    config = load_config(Path(args.config) if args.config else None)
    # Bundles written by `run` are already on log2 scale
    norm_config = NormalizationConfig(**{**config['normalization'], 'log2': args.log2})

    qm = read_quant_bundle(Path(args.input))
    result = normalize(qm, norm_config)

    output_dir = Path(args.output)
    write_quant_bundle(
        result.matrix,
        output_dir,
        extra={'normalization': config['normalization'],
               'shifts': {str(k): float(v) for k, v in result.shifts.items()}},
    )
    for sample, shift in result.shifts.items():
        logger.info(f"  {sample}: {shift:+.4f}")

    return 0


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        prog='pd-rollup',
        description='pd-rollup: PSM -> peptide -> protein roll-up for Proteome '
                    'Discoverer exports\n\n'
                    'Primary usage:\n'
                    '  pd-rollup run -i psms.txt -o output_dir/ -c config.yaml '
                    '--contaminants crap.fasta',
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument('-v', '--verbose', action='store_true', help='Verbose output')
    parser.add_argument('--version', action='version', version=f'%(prog)s {__version__}')

    subparsers = parser.add_subparsers(dest='command', help='Commands')

    run_parser = subparsers.add_parser(
        'run',
        help='Run the full pipeline',
        description='Parse, quality-filter, build the matrix, filter missing values, '
                    'aggregate and normalize. Writes parquet bundles, a flat TSV and '
                    'metadata.json provenance.'
    )
    run_parser.add_argument('-i', '--input', required=True, help='PD PSM or PeptideGroups export')
    run_parser.add_argument('-o', '--output-dir', required=True, help='Output directory')
    run_parser.add_argument('-c', '--config', help='Configuration YAML file')
    run_parser.add_argument('-m', '--metadata', help='Sample metadata TSV')
    run_parser.add_argument('--contaminants', help='Contaminant FASTA (e.g. cRAP)')
    run_parser.add_argument('--from-provenance',
                            help='Reuse the parameters of a previous run (metadata.json)')

    val_parser = subparsers.add_parser('validate', help='Check an export for required columns')
    val_parser.add_argument('-i', '--input', required=True, help='PD export')
    val_parser.add_argument('--level', default='PSM', choices=['PSM', 'peptide'])

    norm_parser = subparsers.add_parser('normalize', help='Normalize a stored matrix bundle')
    norm_parser.add_argument('-i', '--input', required=True, help='Input bundle directory')
    norm_parser.add_argument('-o', '--output', required=True, help='Output bundle directory')
    norm_parser.add_argument('-c', '--config', help='Configuration YAML')
    norm_parser.add_argument('--log2', action='store_true',
                             help='Log2-transform first (for bundles of raw intensities)')

    args = parser.parse_args(argv)

    setup_logging(args.verbose)

    commands = {
        'run': cmd_run,
        'validate': cmd_validate,
        'normalize': cmd_normalize,
    }
    if args.command not in commands:
        parser.print_help()
        return 1

    try:
        return commands[args.command](args)
    except PipelineError as e:
        logger.error(f"pd-rollup {args.command} failed: {e}")
        return 2


if __name__ == '__main__':
    sys.exit(main())
