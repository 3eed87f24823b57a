"""
Shared fixtures: a small MNI-like grid with three non-overlapping tissue
masks stored as Analyze images, and a 4D image with known compartment
intensities.
"""

import nibabel as nib
import numpy as np
import pytest

GRID = (6, 6, 4)
N_IMAGES = 12

# Slabs along x: gray 0-1, white 2-3, csf 4-5
TISSUE_SLABS = {
    'gray': slice(0, 2),
    'white': slice(2, 4),
    'csf': slice(4, 6),
}
TISSUE_LEVELS = {'gray': 100.0, 'white': 50.0, 'csf': 20.0}

MASK_FILES = {
    'gray': 'gray_matter_mask.img',
    'white': 'canonical_white_matter.img',
    'csf': 'canonical_ventricles.img',
}


def _analyze_affine(shape, zooms=(2.0, 2.0, 2.0)):
    """Affine nibabel assigns to an Analyze image of this shape."""
    hdr = nib.AnalyzeHeader()
    hdr.set_data_dtype(np.float32)
    hdr.set_data_shape(shape)
    hdr.set_zooms(zooms)
    return hdr.get_base_affine()


@pytest.fixture
def grid_affine():
    return _analyze_affine(GRID)


def tissue_mask_array(tissue):
    mask = np.zeros(GRID, dtype=np.float32)
    mask[TISSUE_SLABS[tissue]] = 1.0
    return mask


@pytest.fixture
def mask_dir(tmp_path, grid_affine):
    """Directory holding the three canonical masks as Analyze .img/.hdr pairs."""
    directory = tmp_path / 'masks'
    directory.mkdir()
    for tissue, name in MASK_FILES.items():
        img = nib.AnalyzeImage(tissue_mask_array(tissue), grid_affine)
        nib.save(img, str(directory / name))
    return directory


@pytest.fixture
def bold_data():
    """4D array (x, y, z, t) with a distinct level per compartment."""
    rng = np.random.default_rng(42)
    data = np.zeros(GRID + (N_IMAGES,))
    for tissue, slab in TISSUE_SLABS.items():
        shape = data[slab].shape
        data[slab] = TISSUE_LEVELS[tissue] + rng.standard_normal(shape) * 5.0
    return data


@pytest.fixture
def bold_img(bold_data, grid_affine):
    return nib.Nifti1Image(bold_data.astype(np.float32), grid_affine)


@pytest.fixture
def bold_path(tmp_path, bold_img):
    path = tmp_path / 'sub-01_task-rest_space-MNI152_bold.nii.gz'
    nib.save(bold_img, str(path))
    return path


@pytest.fixture
def layout():
    """Grid, slab and intensity constants used to build the fixtures."""
    return {
        'grid': GRID,
        'n_images': N_IMAGES,
        'slabs': TISSUE_SLABS,
        'levels': TISSUE_LEVELS,
        'mask_files': MASK_FILES,
    }


@pytest.fixture(autouse=True)
def clean_mask_path(monkeypatch):
    """Keep a mask path from the calling shell out of the tests."""
    monkeypatch.delenv('TISSUECOMP_MASK_PATH', raising=False)
