#!/usr/bin/env python3
"""
Canonical tissue mask library.

Resolves the gray matter, white matter and CSF masks by file name on a
search path and loads them on demand.

The default masks are based on the SPM8 a priori tissue probability maps,
cleaned up and made symmetrical and/or eroded so that the white and CSF
compartments are unlikely to contain much gray matter. The gray compartment
is more inclusive. All three are in MNI space.
"""

import logging
import os
from collections import OrderedDict
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Union

import nibabel as nib
from nibabel.spatialimages import SpatialImage

from tissuecomp.config import TISSUE_KEYS, get_config_value

logger = logging.getLogger(__name__)

MASK_PATH_ENV = 'TISSUECOMP_MASK_PATH'

CANONICAL_MASKS = OrderedDict([
    ('gray', 'gray_matter_mask.img'),
    ('white', 'canonical_white_matter.img'),
    ('csf', 'canonical_ventricles.img'),
])

_TISSUE_ALIASES = {
    'gray': 'gray', 'grey': 'gray', 'gm': 'gray',
    'white': 'white', 'wm': 'white',
    'csf': 'csf', 'ventricles': 'csf',
}


class MaskNotFoundError(FileNotFoundError):
    """Raised when a mask image cannot be found on the search path."""
    pass


def normalize_tissue(tissue: str) -> str:
    """Map a tissue name or alias ('gm', 'wm', 'ventricles', ...) to its key."""
    key = _TISSUE_ALIASES.get(str(tissue).lower())
    if key is None:
        raise ValueError(
            f"tissue must be one of {list(TISSUE_KEYS)} "
            f"(or gm/wm/ventricles), got '{tissue}'"
        )
    return key


class MaskLibrary:
    """
    Locate and load the canonical tissue masks.

    Parameters
    ----------
    config : dict, optional
        Configuration with ``masks.search_paths`` and ``masks.files``
    search_paths : sequence of path, optional
        Directories searched before the configured ones

    Attributes
    ----------
    search_paths : list of Path
        Directories searched in order: explicit, configured, then the
        entries of ``$TISSUECOMP_MASK_PATH``
    files : dict
        Tissue key -> mask file name
    cache : dict
        Loaded mask images by resolved path

    Examples
    --------
    >>> masks = MaskLibrary(search_paths=['/opt/canlab/masks'])
    >>> gm = masks.get_tissue_mask('gm')
    >>> masks.resolve('canonical_ventricles.img')
    PosixPath('/opt/canlab/masks/canonical_ventricles.img')
    """

    def __init__(
        self,
        config: Optional[Dict[str, Any]] = None,
        search_paths: Optional[Sequence[Union[str, Path]]] = None,
    ):
        config = config or {}

        paths: List[Path] = [Path(p) for p in (search_paths or [])]
        paths += [Path(p) for p in (get_config_value(config, 'masks.search_paths') or [])]

        env_path = os.environ.get(MASK_PATH_ENV, '')
        paths += [Path(p) for p in env_path.split(os.pathsep) if p]

        self.search_paths = paths

        self.files = dict(CANONICAL_MASKS)
        self.files.update(get_config_value(config, 'masks.files') or {})

        self.cache: Dict[str, SpatialImage] = {}

        logger.debug(f"Mask search path: {[str(p) for p in self.search_paths]}")

    @property
    def tissues(self) -> List[str]:
        """Tissue keys in extraction order."""
        return list(CANONICAL_MASKS)

    def resolve(self, name: Union[str, Path]) -> Path:
        """
        Find a mask file.

        Existing paths (absolute or relative to the working directory) are
        returned as is; bare names are looked up on the search path, first
        match wins.

        Raises
        ------
        MaskNotFoundError
            If the file is not found
        """
        candidate = Path(name)
        if candidate.is_file():
            return candidate

        if not candidate.is_absolute():
            for directory in self.search_paths:
                path = directory / candidate
                if path.is_file():
                    return path

        raise MaskNotFoundError(
            f"Image {name} cannot be found on path "
            f"(searched: {[str(p) for p in self.search_paths]})"
        )

    def mask_path(self, tissue: str) -> Path:
        """Resolved path of the mask for a tissue key or alias."""
        return self.resolve(self.files[normalize_tissue(tissue)])

    def load(self, name: Union[str, Path]) -> SpatialImage:
        """Resolve and load a mask image, using the cache."""
        path = self.resolve(name)
        key = str(path.resolve())

        if key in self.cache:
            logger.debug(f"Using cached mask: {path.name}")
            return self.cache[key]

        logger.info(f"Loading mask: {path.name}")
        img = nib.load(str(path))
        self.cache[key] = img
        return img

    def get_tissue_mask(self, tissue: str) -> SpatialImage:
        """
        Get the mask image for a tissue compartment.

        Parameters
        ----------
        tissue : str
            'gray', 'white' or 'csf' (aliases 'gm', 'wm', 'ventricles')
        """
        return self.load(self.files[normalize_tissue(tissue)])

    def check_available(self) -> Dict[str, bool]:
        """Report which tissue masks can be resolved."""
        available = {}
        for tissue in self.tissues:
            try:
                self.mask_path(tissue)
                available[tissue] = True
            except MaskNotFoundError:
                available[tissue] = False
        return available

    def clear_cache(self):
        """Clear cached images to free memory."""
        self.cache.clear()
        logger.info("Cleared mask image cache")
