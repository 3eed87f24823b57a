#!/usr/bin/env python3
"""
Unit tests for the canonical mask library.

Tests search path order, environment variable lookup, configured file
names, tissue aliases and caching.
"""

import os

import nibabel as nib
import numpy as np
import pytest

from tissuecomp.masks import (
    CANONICAL_MASKS,
    MASK_PATH_ENV,
    MaskLibrary,
    MaskNotFoundError,
    normalize_tissue,
)


class TestCanonicalMasks:
    def test_order_and_names(self):
        assert list(CANONICAL_MASKS) == ['gray', 'white', 'csf']
        assert CANONICAL_MASKS['gray'] == 'gray_matter_mask.img'
        assert CANONICAL_MASKS['white'] == 'canonical_white_matter.img'
        assert CANONICAL_MASKS['csf'] == 'canonical_ventricles.img'


class TestNormalizeTissue:
    @pytest.mark.parametrize("alias,key", [
        ('gm', 'gray'), ('GREY', 'gray'), ('wm', 'white'),
        ('ventricles', 'csf'), ('CSF', 'csf'),
    ])
    def test_aliases(self, alias, key):
        assert normalize_tissue(alias) == key

    def test_invalid(self):
        with pytest.raises(ValueError, match="tissue must be one of"):
            normalize_tissue('bone')


class TestResolve:
    def test_found_on_search_path(self, mask_dir):
        library = MaskLibrary(search_paths=[mask_dir])
        assert library.resolve('canonical_ventricles.img') == mask_dir / 'canonical_ventricles.img'

    def test_first_match_wins(self, tmp_path, mask_dir):
        first = tmp_path / 'first'
        first.mkdir()
        nib.save(nib.AnalyzeImage(np.ones((2, 2, 2), dtype=np.float32), np.eye(4)),
                 str(first / 'gray_matter_mask.img'))

        library = MaskLibrary(search_paths=[first, mask_dir])
        assert library.resolve('gray_matter_mask.img').parent == first

    def test_existing_path_returned(self, mask_dir):
        path = mask_dir / 'canonical_white_matter.img'
        assert MaskLibrary().resolve(path) == path

    def test_environment_variable(self, mask_dir, tmp_path, monkeypatch):
        monkeypatch.setenv(MASK_PATH_ENV, os.pathsep.join([str(tmp_path / "empty"), str(mask_dir)]))
        library = MaskLibrary()
        assert library.resolve('gray_matter_mask.img').parent == mask_dir

    def test_config_search_paths_after_explicit(self, mask_dir, tmp_path):
        config = {'masks': {'search_paths': [str(mask_dir)]}}
        library = MaskLibrary(config, search_paths=[tmp_path])
        assert library.search_paths == [tmp_path, mask_dir]

    def test_not_found(self, tmp_path):
        library = MaskLibrary(search_paths=[tmp_path])
        with pytest.raises(MaskNotFoundError, match="cannot be found on path"):
            library.resolve('gray_matter_mask.img')

    def test_not_found_is_file_not_found(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            MaskLibrary(search_paths=[tmp_path]).resolve('missing.img')


class TestGetTissueMask:
    def test_loads_mask(self, mask_dir, layout):
        library = MaskLibrary(search_paths=[mask_dir])
        img = library.get_tissue_mask('wm')
        data = np.asarray(img.dataobj)
        assert data.shape == layout['grid']
        assert data[layout['slabs']['white']].min() == 1
        assert data.sum() == data[layout['slabs']['white']].size

    def test_cached(self, mask_dir):
        library = MaskLibrary(search_paths=[mask_dir])
        first = library.get_tissue_mask('gray')
        assert library.get_tissue_mask('gm') is first
        library.clear_cache()
        assert library.get_tissue_mask('gray') is not first

    def test_configured_file_name(self, mask_dir):
        renamed = mask_dir / 'my_csf.nii'
        nib.save(nib.Nifti1Image(np.ones((2, 2, 2), dtype=np.float32), np.eye(4)), str(renamed))

        config = {'masks': {'files': {'csf': 'my_csf.nii'}}}
        library = MaskLibrary(config, search_paths=[mask_dir])
        assert library.files['gray'] == 'gray_matter_mask.img'
        assert library.mask_path('csf') == renamed

    def test_invalid_tissue(self, mask_dir):
        with pytest.raises(ValueError):
            MaskLibrary(search_paths=[mask_dir]).get_tissue_mask('bone')


class TestCheckAvailable:
    def test_all_available(self, mask_dir):
        assert MaskLibrary(search_paths=[mask_dir]).check_available() == {
            'gray': True, 'white': True, 'csf': True,
        }

    def test_partial(self, mask_dir):
        (mask_dir / 'canonical_white_matter.img').unlink()
        available = MaskLibrary(search_paths=[mask_dir]).check_available()
        assert available == {'gray': True, 'white': False, 'csf': True}
