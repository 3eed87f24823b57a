#!/usr/bin/env python3
"""
Extract gray matter, white matter and CSF signals from MNI-space images.

Writes compartment means, component scores and nuisance regressors as CSV,
plus QC plots and a JSON summary.

Usage:
    tissuecomp-extract \
        /data/derivatives/sub-01/func/sub-01_task-rest_space-MNI152_bold.nii.gz \
        --mask-dir /opt/canlab/CanlabCore/canlab_canonical_brains \
        --n-components 5 \
        --output-dir /data/analysis/tissue/sub-01
"""

import argparse
import json
import logging
import sys
from datetime import datetime
from pathlib import Path
from typing import List, Optional

from nibabel.filebasedimages import ImageFileError

from tissuecomp.config import ConfigurationError, load_config
from tissuecomp.extraction import confound_regressors, extract_tissue_signals
from tissuecomp.masks import MaskNotFoundError

logger = logging.getLogger(__name__)

LOG_FORMAT = '%(asctime)s - %(levelname)s - %(message)s'


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='tissuecomp-extract',
        description='Extract mean signal and top components from gray, white and CSF compartments',
    )
    parser.add_argument(
        'images', type=Path, nargs='+',
        help='3D or 4D images in MNI space (one 4D image or a list of 3D images)',
    )
    parser.add_argument(
        '--output-dir', type=Path, required=True,
        help='Output directory for CSV, NIfTI and QC files',
    )
    parser.add_argument(
        '--config', type=Path, default=None,
        help='YAML config merged over the packaged defaults',
    )
    parser.add_argument(
        '--mask-dir', type=Path, action='append', default=None,
        help='Directory containing the canonical masks (repeatable, searched first)',
    )
    parser.add_argument(
        '--brain-mask', type=Path, default=None,
        help='Brain mask restricting the voxel space (optional)',
    )
    parser.add_argument(
        '--n-components', type=int, default=None,
        help='Component scores per compartment (default from config: 5)',
    )
    parser.add_argument(
        '--save-full-data', action='store_true', default=None,
        help='Write the masked data of each compartment as NIfTI',
    )
    parser.add_argument(
        '--reinsert-removed', action='store_true', default=None,
        help='Keep rows for empty images (filled with NaN)',
    )
    parser.add_argument(
        '--no-plots', action='store_true',
        help='Skip QC plots',
    )
    parser.add_argument(
        '-v', '--verbose', action='store_true',
        help='Debug logging',
    )
    return parser


def write_outputs(result, output_dir: Path, save_full_data: bool, plots: bool) -> dict:
    """Save tables, optional masked images and plots. Returns output paths."""
    outputs = {}

    means_path = output_dir / 'tissue_means.csv'
    result.values_frame().to_csv(means_path)
    outputs['means_csv'] = str(means_path)

    comps_path = output_dir / 'tissue_components.csv'
    result.components_frame().to_csv(comps_path)
    outputs['components_csv'] = str(comps_path)

    confounds_path = output_dir / 'confound_regressors.csv'
    confound_regressors(result).to_csv(confounds_path)
    outputs['confounds_csv'] = str(confounds_path)

    logger.info(f"Saved tables: {means_path.name}, {comps_path.name}, {confounds_path.name}")

    if save_full_data and result.full_data is not None:
        outputs['masked_images'] = {}
        for tissue, obj in zip(result.tissues, result.full_data):
            nii_path = output_dir / f'{tissue}_masked.nii.gz'
            obj.to_nifti().to_filename(str(nii_path))
            outputs['masked_images'][tissue] = str(nii_path)
            logger.info(f"Saved masked data: {nii_path}")

    if plots:
        from tissuecomp.visualization import (
            plot_component_scores,
            plot_compartment_means,
            plot_scree,
        )

        qc_dir = output_dir / 'qc'
        outputs['qc'] = {
            'means': str(plot_compartment_means(result, qc_dir / 'compartment_means.png')),
            'components': str(plot_component_scores(result, qc_dir / 'component_scores.png')),
            'scree': str(plot_scree(result, qc_dir / 'scree.png')),
        }

    return outputs


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format=LOG_FORMAT,
    )

    args.output_dir.mkdir(parents=True, exist_ok=True)
    log_dir = args.output_dir / 'logs'
    log_dir.mkdir(exist_ok=True)

    fh = logging.FileHandler(log_dir / f'extraction_{datetime.now():%Y%m%d_%H%M%S}.log')
    fh.setFormatter(logging.Formatter(LOG_FORMAT))
    logging.getLogger().addHandler(fh)

    try:
        try:
            config = load_config(args.config)
        except ConfigurationError as e:
            logger.error(f"Configuration error: {e}")
            return 1

        if args.n_components is not None and args.n_components < 1:
            logger.error(f"--n-components must be >= 1, got {args.n_components}")
            return 1

        save_full_data = args.save_full_data
        if save_full_data is None:
            save_full_data = config['output'].get('save_full_data', False)
        plots = config['output'].get('plots', True) and not args.no_plots

        logger.info(f"Images: {[str(p) for p in args.images]}")
        logger.info(f"Output: {args.output_dir}")

        try:
            result = extract_tissue_signals(
                [str(p) for p in args.images],
                config=config,
                brain_mask=args.brain_mask,
                mask_dirs=args.mask_dir,
                n_components=args.n_components,
                return_full_data=save_full_data,
                reinsert_removed=args.reinsert_removed,
            )
        except MaskNotFoundError as e:
            logger.error(f"Exiting: {e}")
            return 1
        except (OSError, ValueError, ImageFileError) as e:
            logger.error(f"Could not read input: {e}")
            return 1

        outputs = write_outputs(result, args.output_dir, save_full_data, plots)

        summary = {
            'extraction_time': datetime.now().isoformat(),
            'images': [str(p) for p in args.images],
            'n_images': result.n_images,
            'tissues': list(result.tissues),
            'n_components': {
                t: int(c.shape[1]) for t, c in zip(result.tissues, result.components)
            },
            'explained_variance': {
                t: [float(v) for v in ev]
                for t, ev in zip(result.tissues, result.explained_variance)
            },
            'n_nan_voxels': dict(zip(result.tissues, result.n_nan_voxels)),
            'outputs': outputs,
        }
        summary_path = args.output_dir / 'extraction_summary.json'
        with open(summary_path, 'w') as f:
            json.dump(summary, f, indent=2)
        logger.info(f"Summary: {summary_path}")

        logger.info("Done.")
        return 0
    finally:
        logging.getLogger().removeHandler(fh)
        fh.close()


if __name__ == '__main__':
    sys.exit(main())
