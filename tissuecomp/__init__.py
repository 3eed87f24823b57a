"""
tissuecomp: tissue-compartment signal extraction for MNI-space images

Extracts mean signal and top principal component scores from the gray
matter, white matter and CSF compartments of an image collection.

Modules
-------
image : ImageData observation x voxel container (masking, empty removal)
stats : NaN-aware means, NaN removal/insertion, PCA scores
masks : Canonical tissue mask lookup
extraction : extract_gray_white_csf and nuisance regressors
visualization : QC plots
cli : tissuecomp-extract command

Usage
-----
>>> from tissuecomp import ImageData, extract_gray_white_csf
>>> obj = ImageData.from_nifti('sub-01_space-MNI152_bold.nii.gz')
>>> result = extract_gray_white_csf(obj)
>>> result.values_frame().head()
"""

__version__ = "0.1.0"

from tissuecomp.config import load_config
from tissuecomp.extraction import (
    TissueExtraction,
    confound_regressors,
    extract_gray_white_csf,
    extract_tissue_signals,
)
from tissuecomp.image import ImageData
from tissuecomp.masks import CANONICAL_MASKS, MaskLibrary, MaskNotFoundError

__all__ = [
    'ImageData',
    'MaskLibrary',
    'MaskNotFoundError',
    'CANONICAL_MASKS',
    'TissueExtraction',
    'extract_gray_white_csf',
    'extract_tissue_signals',
    'confound_regressors',
    'load_config',
]
