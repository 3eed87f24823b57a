"""
Gray matter, white matter and CSF signal extraction.

Extracts the mean signal and the top principal component scores from each
of the three canonical tissue compartments of an image collection. Images
must be in standard MNI space for the canonical masks to apply.

Signal in the white and CSF compartments is typically used as a nuisance
estimate to be removed from images prior to or during analysis.
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence, Union

import numpy as np
import pandas as pd

from tissuecomp.config import get_config_value
from tissuecomp.image import ImageData, ImageLike, load_image
from tissuecomp.masks import MaskLibrary, MaskNotFoundError, normalize_tissue
from tissuecomp.stats import (
    compartment_mean,
    naninsert,
    nanremove,
    pca_decomposition,
    zeros_to_nan,
)

logger = logging.getLogger(__name__)

DEFAULT_N_COMPONENTS = 5


@dataclass
class TissueExtraction:
    """
    Result of :func:`extract_gray_white_csf`.

    Attributes
    ----------
    values : ndarray, shape (n_images, n_tissues)
        Mean signal per image in each compartment
    components : list of ndarray
        Per compartment, component scores of shape (n_images, k)
    tissues : list of str
        Compartment names, in column order
    image_names : list of str
        Row labels for ``values`` and ``components``
    full_data : list of ImageData, optional
        Masked data per compartment with empty voxels and images removed
    explained_variance : list of ndarray
        Per compartment, explained variance ratio of each component
    n_nan_voxels : list of int
        Per compartment, voxels dropped before PCA for containing NaN
    """

    values: np.ndarray
    components: List[np.ndarray]
    tissues: List[str]
    image_names: List[str]
    full_data: Optional[List[ImageData]] = None
    explained_variance: List[np.ndarray] = field(default_factory=list)
    n_nan_voxels: List[int] = field(default_factory=list)

    @property
    def n_images(self) -> int:
        return self.values.shape[0]

    def values_frame(self) -> pd.DataFrame:
        """Compartment means, one column per tissue."""
        return pd.DataFrame(
            self.values,
            index=pd.Index(self.image_names, name='image'),
            columns=list(self.tissues),
        )

    def components_frame(self) -> pd.DataFrame:
        """Component scores, columns ``<tissue>_pc<k>``."""
        frames = []
        for tissue, scores in zip(self.tissues, self.components):
            frames.append(pd.DataFrame(
                scores,
                index=pd.Index(self.image_names, name='image'),
                columns=[f"{tissue}_pc{k + 1}" for k in range(scores.shape[1])],
            ))
        return pd.concat(frames, axis=1)

    def to_frame(self) -> pd.DataFrame:
        """Means followed by component scores."""
        return pd.concat([self.values_frame(), self.components_frame()], axis=1)


def _mask_sources(masks) -> List[tuple]:
    """Normalise the ``masks`` argument to (tissue, loader) pairs."""
    if masks is None:
        masks = MaskLibrary()

    if isinstance(masks, MaskLibrary):
        library = masks
        return [
            (tissue, library.files[tissue], lambda t=tissue: library.get_tissue_mask(t))
            for tissue in library.tissues
        ]

    if isinstance(masks, Mapping):
        if not masks:
            raise ValueError("No masks given")
        sources = []
        for tissue, source in masks.items():
            name = str(source) if isinstance(source, (str, Path)) else tissue

            def loader(source=source):
                # arrays are taken to be on the image grid
                if isinstance(source, np.ndarray):
                    return source
                try:
                    return load_image(source)
                except FileNotFoundError as e:
                    raise MaskNotFoundError(str(e)) from e

            sources.append((tissue, name, loader))
        return sources

    raise TypeError(
        f"masks must be a MaskLibrary or a mapping of tissue -> image, got {type(masks).__name__}"
    )


def extract_gray_white_csf(
    obj: ImageData,
    n_components: int = DEFAULT_N_COMPONENTS,
    masks: Optional[Union[MaskLibrary, Mapping[str, Union[ImageLike, np.ndarray]]]] = None,
    return_full_data: bool = False,
    reinsert_removed: bool = False,
) -> TissueExtraction:
    """
    Extract mean values and top component scores from gray, white and CSF.

    Empty voxels and images are removed first; results are returned in the
    reduced image space unless ``reinsert_removed`` is set.

    Within each compartment, zero voxels are treated as missing. The mean
    is taken over the remaining voxels of each image. For the components,
    voxels that are missing in any image are dropped and PCA is run with
    images as observations and voxels as variables.

    Parameters
    ----------
    obj : ImageData
        Image collection in MNI space
    n_components : int, default=5
        Number of component scores per compartment. Fewer are returned when
        the data has fewer images or voxels.
    masks : MaskLibrary or mapping, optional
        Where to get the compartment masks. Defaults to the canonical masks
        on the default search path. A mapping of tissue name to mask path,
        image or 3D array on the image grid extracts from those masks
        instead, in mapping order.
    return_full_data : bool, default=False
        Also return the masked data object of each compartment
    reinsert_removed : bool, default=False
        Insert NaN rows for images removed as empty, so rows line up with
        ``obj.image_names``

    Returns
    -------
    TissueExtraction

    Raises
    ------
    MaskNotFoundError
        If a mask cannot be found. Nothing is returned for any compartment.
    """
    if n_components < 1:
        raise ValueError(f"n_components must be >= 1, got {n_components}")

    sources = _mask_sources(masks)

    obj = obj.remove_empty()
    n_images = obj.n_images

    values = np.full((n_images, len(sources)), np.nan)
    components = []
    explained = []
    n_nan_voxels = []
    full_data = [] if return_full_data else None

    for i, (tissue, name, loader) in enumerate(sources):
        try:
            mask_img = loader()
        except MaskNotFoundError:
            logger.error(f"Image {name} cannot be found on path.")
            raise

        logger.info(f"Extracting from {name}.")

        masked = obj.apply_mask(mask_img)

        if return_full_data:
            full_data.append(masked.remove_empty())

        values[:, i] = compartment_mean(masked.data)

        # NaNs break the decomposition; drop them voxel-wise
        wasnan, dataforpca = nanremove(zeros_to_nan(masked.data))
        if wasnan.any():
            logger.info(f"Removing {int(wasnan.sum()):3d} voxels with one or more NaNs")
        if dataforpca.shape[1] == 0:
            logger.warning(f"No complete voxels in {name}; no components extracted")

        pca = pca_decomposition(dataforpca, n_components)
        components.append(pca["scores"])
        explained.append(pca["explained_variance_ratio"])
        n_nan_voxels.append(int(wasnan.sum()))

    image_names = obj.kept_image_names
    if reinsert_removed and obj.removed_images.any():
        values = naninsert(obj.removed_images, values)
        components = [naninsert(obj.removed_images, c) for c in components]
        image_names = list(obj.image_names)

    return TissueExtraction(
        values=values,
        components=components,
        tissues=[tissue for tissue, _, _ in sources],
        image_names=image_names,
        full_data=full_data,
        explained_variance=explained,
        n_nan_voxels=n_nan_voxels,
    )


def extract_tissue_signals(
    images: Union[ImageLike, Sequence[ImageLike]],
    config: Optional[Dict[str, Any]] = None,
    brain_mask: Optional[ImageLike] = None,
    mask_dirs: Optional[Sequence[Union[str, Path]]] = None,
    n_components: Optional[int] = None,
    return_full_data: Optional[bool] = None,
    reinsert_removed: Optional[bool] = None,
) -> TissueExtraction:
    """
    Load images and extract compartment signals using configured masks.

    Explicit arguments override the configuration.

    Parameters
    ----------
    images : path, nibabel image, or sequence of these
        3D or 4D images in MNI space
    config : dict, optional
        Configuration (see :func:`tissuecomp.config.load_config`)
    brain_mask : path or image, optional
        Restrict the voxel space before extraction
    mask_dirs : sequence of path, optional
        Directories searched for the canonical masks before configured ones
    """
    config = config or {}

    if n_components is None:
        n_components = get_config_value(config, 'extraction.n_components', DEFAULT_N_COMPONENTS)
    if return_full_data is None:
        return_full_data = get_config_value(config, 'output.save_full_data', False)
    if reinsert_removed is None:
        reinsert_removed = get_config_value(config, 'extraction.reinsert_removed', False)

    obj = ImageData.from_nifti(images, mask=brain_mask)
    library = MaskLibrary(config, search_paths=mask_dirs)

    return extract_gray_white_csf(
        obj,
        n_components=n_components,
        masks=library,
        return_full_data=return_full_data,
        reinsert_removed=reinsert_removed,
    )


def confound_regressors(
    result: TissueExtraction,
    tissues: Sequence[str] = ('white', 'csf'),
    include_components: bool = True,
) -> pd.DataFrame:
    """
    Nuisance regressors built from compartment signals.

    Parameters
    ----------
    result : TissueExtraction
    tissues : sequence of str, default=('white', 'csf')
        Compartments to include
    include_components : bool, default=True
        Add component scores after the means

    Returns
    -------
    DataFrame
        One row per image; columns ``<tissue>`` then ``<tissue>_pc<k>``
    """
    wanted = []
    for tissue in tissues:
        key = normalize_tissue(tissue) if tissue not in result.tissues else tissue
        if key not in result.tissues:
            raise ValueError(f"Tissue '{tissue}' not in extraction result {result.tissues}")
        wanted.append(key)

    frame = result.to_frame()
    columns = list(wanted)
    if include_components:
        for tissue in wanted:
            columns += [c for c in frame.columns if c.startswith(f"{tissue}_pc")]

    return frame[columns].copy()
