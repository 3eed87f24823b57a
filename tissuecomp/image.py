#!/usr/bin/env python3
"""
Masked image collection.

``ImageData`` holds a set of co-registered volumes as an observation x voxel
matrix together with the 3D voxel space it came from. Voxels and images can
be dropped (flagged as removed) and restored, and tissue masks can be applied
in the image's own space or resampled onto it.
"""

import logging
from pathlib import Path
from typing import List, Optional, Sequence, Tuple, Union

import nibabel as nib
import numpy as np
from nibabel.processing import resample_from_to
from nibabel.spatialimages import SpatialImage

logger = logging.getLogger(__name__)

ImageLike = Union[str, Path, SpatialImage]


def _strip_extension(path: Path) -> str:
    name = path.name
    for ext in ('.nii.gz', '.nii', '.img.gz', '.img', '.hdr', '.mgz'):
        if name.endswith(ext):
            return name[:-len(ext)]
    return path.stem


def load_image(image: ImageLike) -> SpatialImage:
    """
    Load an image from disk, or pass an already loaded nibabel image through.

    Raises
    ------
    FileNotFoundError
        If a path is given and does not exist
    """
    if isinstance(image, SpatialImage):
        return image

    path = Path(image)
    if not path.exists():
        raise FileNotFoundError(f"Image not found: {path}")

    return nib.load(str(path))


def _image_name(image: ImageLike, index: int) -> str:
    if isinstance(image, (str, Path)):
        return _strip_extension(Path(image))
    return f"image{index:04d}"


class ImageData:
    """
    Collection of co-registered volumes stored as observations x voxels.

    Parameters
    ----------
    data : ndarray, shape (n_images, n_voxels)
        Values for the non-removed images (rows) and voxels (columns)
    mask : ndarray of bool, 3D
        Voxel space. In-mask voxels are enumerated in C order.
    affine : ndarray, shape (4, 4)
        Voxel-to-world transform of the voxel space
    removed_voxels : ndarray of bool, optional
        One flag per in-mask voxel, True when dropped from ``data``
    removed_images : ndarray of bool, optional
        One flag per image, True when dropped from ``data``
    image_names : list of str, optional
        One name per image (removed images included)
    header : nibabel header, optional
        Header of the source image, kept for reference

    Examples
    --------
    >>> obj = ImageData.from_nifti('sub-01_task-rest_space-MNI_bold.nii.gz')
    >>> obj = obj.remove_empty()
    >>> gray = obj.apply_mask('gray_matter_mask.img')
    >>> gray.data.shape
    (240, 51234)
    """

    def __init__(
        self,
        data: np.ndarray,
        mask: np.ndarray,
        affine: np.ndarray,
        removed_voxels: Optional[np.ndarray] = None,
        removed_images: Optional[np.ndarray] = None,
        image_names: Optional[List[str]] = None,
        header=None,
    ):
        self.mask = np.asarray(mask, dtype=bool)
        if self.mask.ndim != 3:
            raise ValueError(f"mask must be 3D, got shape {self.mask.shape}")

        self.affine = np.asarray(affine, dtype=np.float64)
        if self.affine.shape != (4, 4):
            raise ValueError(f"affine must be 4x4, got shape {self.affine.shape}")

        data = np.asarray(data, dtype=np.float64)
        if data.ndim != 2:
            raise ValueError(f"data must be 2D (images x voxels), got shape {data.shape}")

        n_mask_voxels = int(self.mask.sum())

        if removed_voxels is None:
            removed_voxels = np.zeros(n_mask_voxels, dtype=bool)
        self.removed_voxels = np.asarray(removed_voxels, dtype=bool)
        if self.removed_voxels.shape != (n_mask_voxels,):
            raise ValueError(
                f"removed_voxels must have one flag per in-mask voxel ({n_mask_voxels}), "
                f"got {self.removed_voxels.shape}"
            )

        if removed_images is None:
            removed_images = np.zeros(data.shape[0], dtype=bool)
        self.removed_images = np.asarray(removed_images, dtype=bool)

        expected = (int((~self.removed_images).sum()), int((~self.removed_voxels).sum()))
        if data.shape != expected:
            raise ValueError(
                f"data shape {data.shape} does not match non-removed images x voxels {expected}"
            )
        self.data = data

        if image_names is None:
            image_names = [f"image{i:04d}" for i in range(self.removed_images.size)]
        if len(image_names) != self.removed_images.size:
            raise ValueError(
                f"Got {len(image_names)} image names for {self.removed_images.size} images"
            )
        self.image_names = list(image_names)
        self.header = header

    @classmethod
    def from_nifti(
        cls,
        images: Union[ImageLike, Sequence[ImageLike]],
        mask: Optional[ImageLike] = None,
    ) -> "ImageData":
        """
        Load a 4D image, a 3D image, or a list of 3D/4D images.

        Parameters
        ----------
        images : path, nibabel image, or sequence of these
            Volumes in a common voxel grid
        mask : path or nibabel image, optional
            Brain mask on the same grid. Voxels where the mask is non-zero
            define the voxel space. Defaults to the full grid.

        Returns
        -------
        ImageData
        """
        if isinstance(images, (str, Path, SpatialImage)):
            images = [images]
        if len(images) == 0:
            raise ValueError("No images given")

        volumes = []
        names = []
        grid_shape = None
        affine = None
        header = None

        for i, image in enumerate(images):
            img = load_image(image)
            vol = np.asarray(img.get_fdata(dtype=np.float64))
            base_name = _image_name(image, i)

            if vol.ndim == 3:
                vol = vol[..., np.newaxis]
                vol_names = [base_name]
            elif vol.ndim == 4:
                vol_names = [f"{base_name}_vol{t:04d}" for t in range(vol.shape[3])]
            else:
                raise ValueError(f"Expected 3D or 4D image, got shape {vol.shape} for {base_name}")

            if grid_shape is None:
                grid_shape = vol.shape[:3]
                affine = img.affine
                header = img.header
            elif vol.shape[:3] != grid_shape:
                raise ValueError(
                    f"Image {base_name} has grid {vol.shape[:3]}, expected {grid_shape}"
                )

            volumes.append(vol)
            names.extend(vol_names)

        stacked = np.concatenate(volumes, axis=3)

        if mask is None:
            mask_data = np.ones(grid_shape, dtype=bool)
        else:
            mask_img = load_image(mask)
            mask_arr = np.asarray(mask_img.dataobj, dtype=np.float64)
            if mask_arr.ndim > 3:
                mask_arr = mask_arr.reshape(mask_arr.shape[:3])
            if mask_arr.shape != grid_shape:
                raise ValueError(
                    f"Brain mask grid {mask_arr.shape} does not match image grid {grid_shape}"
                )
            mask_data = np.isfinite(mask_arr) & (mask_arr != 0)

        data = stacked[mask_data].T

        logger.info(
            f"Loaded {data.shape[0]} images x {data.shape[1]} voxels "
            f"(grid {grid_shape})"
        )

        return cls(data, mask_data, affine, image_names=names, header=header)

    @property
    def shape(self) -> Tuple[int, int, int]:
        """3D grid shape of the voxel space."""
        return self.mask.shape

    @property
    def n_images(self) -> int:
        return self.data.shape[0]

    @property
    def n_voxels(self) -> int:
        return self.data.shape[1]

    @property
    def kept_image_names(self) -> List[str]:
        return [n for n, removed in zip(self.image_names, self.removed_images) if not removed]

    def copy(self) -> "ImageData":
        return ImageData(
            self.data.copy(),
            self.mask.copy(),
            self.affine.copy(),
            removed_voxels=self.removed_voxels.copy(),
            removed_images=self.removed_images.copy(),
            image_names=list(self.image_names),
            header=self.header,
        )

    def remove_empty(self) -> "ImageData":
        """
        Drop voxels and images with no non-zero finite value.

        A voxel is empty when it is zero or NaN in every image; an image is
        empty when it is zero or NaN in every voxel. Existing removal flags
        are kept.
        """
        blank = (self.data == 0) | np.isnan(self.data)
        empty_voxels = blank.all(axis=0)
        empty_images = blank.all(axis=1)

        removed_voxels = self.removed_voxels.copy()
        removed_voxels[np.flatnonzero(~self.removed_voxels)[empty_voxels]] = True

        removed_images = self.removed_images.copy()
        removed_images[np.flatnonzero(~self.removed_images)[empty_images]] = True

        if empty_voxels.any() or empty_images.any():
            logger.debug(
                f"Removing {int(empty_voxels.sum())} empty voxels and "
                f"{int(empty_images.sum())} empty images"
            )

        data = self.data[~empty_images][:, ~empty_voxels]

        return ImageData(
            data,
            self.mask.copy(),
            self.affine.copy(),
            removed_voxels=removed_voxels,
            removed_images=removed_images,
            image_names=list(self.image_names),
            header=self.header,
        )

    def replace_empty(self) -> "ImageData":
        """Reinsert removed voxels and images as zeros and clear the flags."""
        full = np.zeros((self.removed_images.size, self.removed_voxels.size))
        full[np.ix_(~self.removed_images, ~self.removed_voxels)] = self.data

        return ImageData(
            full,
            self.mask.copy(),
            self.affine.copy(),
            image_names=list(self.image_names),
            header=self.header,
        )

    def _mask_on_grid(self, mask: Union[ImageLike, np.ndarray]) -> np.ndarray:
        """Return ``mask`` as a 3D float array on this object's grid."""
        if isinstance(mask, np.ndarray):
            arr = np.asarray(mask, dtype=np.float64)
            if arr.ndim > 3:
                arr = arr.reshape(arr.shape[:3])
            if arr.shape != self.shape:
                raise ValueError(
                    f"Mask array shape {arr.shape} does not match image grid {self.shape}"
                )
            return arr

        mask_img = load_image(mask)
        if len(mask_img.shape) > 3:
            if any(s != 1 for s in mask_img.shape[3:]):
                raise ValueError(f"Mask must be a single 3D volume, got shape {mask_img.shape}")
            mask_img = nib.Nifti1Image(
                np.asarray(mask_img.dataobj).reshape(mask_img.shape[:3]),
                mask_img.affine,
            )

        same_grid = (
            tuple(mask_img.shape[:3]) == tuple(self.shape)
            and np.allclose(mask_img.affine, self.affine, atol=1e-4)
        )
        if not same_grid:
            logger.info(
                f"Resampling mask from grid {tuple(mask_img.shape[:3])} to {tuple(self.shape)}"
            )
            # Analyze images have no qform/sform; wrap so resampling accepts them
            src = nib.Nifti1Image(
                np.asarray(mask_img.dataobj, dtype=np.float32), mask_img.affine
            )
            mask_img = resample_from_to(src, (self.shape, self.affine), order=0, cval=0.0)

        return np.asarray(mask_img.dataobj, dtype=np.float64)

    def apply_mask(self, mask: Union[ImageLike, np.ndarray]) -> "ImageData":
        """
        Restrict the object to voxels inside a mask.

        Parameters
        ----------
        mask : path, nibabel image, or 3D ndarray
            Binary or probabilistic mask. Voxels where the mask is non-zero
            and finite are kept. Masks on a different grid are resampled
            onto this object's grid (nearest neighbour).

        Returns
        -------
        ImageData
            New object with out-of-mask voxels flagged as removed
        """
        mask_arr = self._mask_on_grid(mask)
        in_mask = np.isfinite(mask_arr) & (mask_arr != 0)

        # Per in-mask voxel of the voxel space
        keep_space = in_mask[self.mask]
        keep_current = keep_space[~self.removed_voxels]

        removed_voxels = self.removed_voxels | ~keep_space

        logger.debug(
            f"Mask retains {int(keep_current.sum())} of {self.n_voxels} voxels"
        )

        return ImageData(
            self.data[:, keep_current],
            self.mask.copy(),
            self.affine.copy(),
            removed_voxels=removed_voxels,
            removed_images=self.removed_images.copy(),
            image_names=list(self.image_names),
            header=self.header,
        )

    def voxel_values_full(self) -> np.ndarray:
        """Data expanded to every in-mask voxel (removed voxels are zero)."""
        full = np.zeros((self.n_images, self.removed_voxels.size))
        full[:, ~self.removed_voxels] = self.data
        return full

    def to_nifti(self) -> nib.Nifti1Image:
        """
        Rebuild a 4D NIfTI image over the full voxel grid.

        Removed voxels, removed images and voxels outside the voxel space
        are zero.
        """
        full = self.replace_empty().data
        vol = np.zeros(self.shape + (full.shape[0],), dtype=np.float32)
        vol[self.mask] = full.T
        return nib.Nifti1Image(vol, self.affine)

    def __repr__(self) -> str:
        return (
            f"ImageData({self.n_images} images x {self.n_voxels} voxels, "
            f"grid={self.shape}, removed_images={int(self.removed_images.sum())}, "
            f"removed_voxels={int(self.removed_voxels.sum())})"
        )
