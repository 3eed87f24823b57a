"""
NaN-aware statistics for compartment summaries.

All routines take observation-by-voxel matrices, shape (n_images, n_voxels).
"""

import logging
from typing import Tuple

import numpy as np
from sklearn.decomposition import PCA

logger = logging.getLogger(__name__)


def zeros_to_nan(data: np.ndarray) -> np.ndarray:
    """Return a float copy of ``data`` with exact zeros replaced by NaN."""
    out = np.array(data, dtype=np.float64, copy=True)
    out[out == 0] = np.nan
    return out


def nanremove(data: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """
    Drop voxel columns that contain a NaN in any observation.

    Parameters
    ----------
    data : ndarray, shape (n_images, n_voxels)

    Returns
    -------
    wasnan : ndarray of bool, shape (n_voxels,)
        True for columns that were removed
    cleaned : ndarray, shape (n_images, n_voxels - wasnan.sum())
    """
    data = np.asarray(data, dtype=np.float64)
    if data.ndim != 2:
        raise ValueError(f"Expected 2D observation x voxel matrix, got shape {data.shape}")

    wasnan = np.isnan(data).any(axis=0)
    return wasnan, data[:, ~wasnan]


def naninsert(removed: np.ndarray, values: np.ndarray) -> np.ndarray:
    """
    Reinsert NaN rows at removed positions.

    Parameters
    ----------
    removed : ndarray of bool, shape (n_total,)
        True where a row was removed
    values : ndarray, shape (n_kept, ...)
        Rows for the kept positions, in order

    Returns
    -------
    ndarray, shape (n_total, ...)
    """
    removed = np.asarray(removed, dtype=bool)
    values = np.asarray(values, dtype=np.float64)
    n_kept = int((~removed).sum())

    if values.shape[0] != n_kept:
        raise ValueError(
            f"values has {values.shape[0]} rows but {n_kept} positions are not removed"
        )

    out = np.full((removed.size,) + values.shape[1:], np.nan)
    out[~removed] = values
    return out


def compartment_mean(data: np.ndarray) -> np.ndarray:
    """
    Per-observation mean over voxels, treating zeros as missing.

    Parameters
    ----------
    data : ndarray, shape (n_images, n_voxels)

    Returns
    -------
    ndarray, shape (n_images,)
        NaN where an observation has no non-zero finite voxel
    """
    masked = zeros_to_nan(data)
    if masked.ndim != 2:
        raise ValueError(f"Expected 2D observation x voxel matrix, got shape {masked.shape}")

    valid = np.isfinite(masked)
    counts = valid.sum(axis=1)
    totals = np.where(valid, masked, 0.0).sum(axis=1)

    means = np.full(masked.shape[0], np.nan)
    np.divide(totals, counts, out=means, where=counts > 0)
    return means


def pca_decomposition(data: np.ndarray, n_components: int = 5) -> dict:
    """
    Principal component analysis with observations as samples.

    Voxels are the variables; each voxel is centred across observations.
    At most ``min(n_components, n_images - 1, n_voxels)`` components are
    returned, matching an economy-size decomposition.

    Parameters
    ----------
    data : ndarray, shape (n_images, n_voxels)
        Must not contain NaN (see :func:`nanremove`)
    n_components : int
        Requested number of components

    Returns
    -------
    dict with keys:
        scores : ndarray, shape (n_images, k)
        explained_variance_ratio : ndarray, shape (k,)
        loadings : ndarray, shape (n_voxels, k)
    """
    if n_components < 1:
        raise ValueError(f"n_components must be >= 1, got {n_components}")

    data = np.asarray(data, dtype=np.float64)
    if data.ndim != 2:
        raise ValueError(f"Expected 2D observation x voxel matrix, got shape {data.shape}")
    if np.isnan(data).any():
        raise ValueError("PCA input contains NaN; remove NaN voxels first")

    n_images, n_voxels = data.shape
    k = max(min(n_components, n_images - 1, n_voxels), 0)

    if k < n_components:
        logger.debug(
            f"Requested {n_components} components, {k} available "
            f"({n_images} images x {n_voxels} voxels)"
        )

    if k == 0:
        return {
            "scores": np.zeros((n_images, 0)),
            "explained_variance_ratio": np.zeros(0),
            "loadings": np.zeros((n_voxels, 0)),
        }

    # No variance to decompose; sklearn would divide by zero
    if not np.ptp(data, axis=0).any():
        logger.warning(
            f"All {n_voxels} voxels are constant across images; component scores are zero"
        )
        return {
            "scores": np.zeros((n_images, k)),
            "explained_variance_ratio": np.zeros(k),
            "loadings": np.zeros((n_voxels, k)),
        }

    pca = PCA(n_components=k, svd_solver="full")
    scores = pca.fit_transform(data)

    return {
        "scores": scores,
        "explained_variance_ratio": pca.explained_variance_ratio_,
        "loadings": pca.components_.T,
    }


def pca_scores(data: np.ndarray, n_components: int = 5) -> np.ndarray:
    """Component scores, shape (n_images, k). See :func:`pca_decomposition`."""
    return pca_decomposition(data, n_components)["scores"]
