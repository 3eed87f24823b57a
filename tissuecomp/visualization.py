"""
QC plots for tissue-compartment extraction.

Mean signal per compartment across images, component score series, and
per-compartment scree plots.
"""

import logging
from pathlib import Path
from typing import Optional

import matplotlib

matplotlib.use("Agg")
import matplotlib.pyplot as plt
import numpy as np

from tissuecomp.extraction import TissueExtraction

logger = logging.getLogger(__name__)

TISSUE_COLORS = {
    "gray": "#7f7f7f",
    "white": "#d95f02",
    "csf": "#1f78b4",
}

_FALLBACK_COLORS = ["#1b9e77", "#7570b3", "#e7298a", "#66a61e", "#e6ab02"]

_DPI = 150


def _tissue_color(tissue: str, index: int) -> str:
    return TISSUE_COLORS.get(tissue, _FALLBACK_COLORS[index % len(_FALLBACK_COLORS)])


def _save(fig, out_path: Optional[Path], what: str) -> Optional[Path]:
    if out_path is not None:
        out_path = Path(out_path)
        out_path.parent.mkdir(parents=True, exist_ok=True)
        fig.savefig(out_path, dpi=_DPI, bbox_inches="tight")
        logger.info("Saved %s: %s", what, out_path)
    plt.close(fig)
    return out_path


def plot_compartment_means(
    result: TissueExtraction,
    out_path: Optional[Path] = None,
    title: str = "Tissue compartment means",
) -> Optional[Path]:
    """Line plot of the mean signal of each compartment across images.

    Each series is z-scored so compartments with different intensity
    ranges share one axis; raw means are in ``result.values``.
    """
    x = np.arange(1, result.n_images + 1)

    fig, ax = plt.subplots(figsize=(9, 3.5))
    for i, tissue in enumerate(result.tissues):
        series = result.values[:, i]
        sd = np.nanstd(series) if np.isfinite(series).any() else 0.0
        if sd > 0:
            series = (series - np.nanmean(series)) / sd
        ax.plot(x, series, color=_tissue_color(tissue, i), linewidth=1.2, label=tissue)

    ax.set_xlabel("Image")
    ax.set_ylabel("Mean signal (z)")
    ax.set_title(title, fontsize=12)
    ax.legend(loc="upper right", fontsize=9)
    fig.tight_layout()

    return _save(fig, out_path, "compartment means plot")


def plot_component_scores(
    result: TissueExtraction,
    out_path: Optional[Path] = None,
    title: str = "Tissue compartment components",
) -> Optional[Path]:
    """One panel per compartment with the component score series."""
    n_tissues = len(result.tissues)
    x = np.arange(1, result.n_images + 1)

    fig, axes = plt.subplots(n_tissues, 1, figsize=(9, 2.5 * n_tissues), sharex=True,
                             squeeze=False)

    for i, (tissue, scores) in enumerate(zip(result.tissues, result.components)):
        ax = axes[i, 0]
        if scores.shape[1] == 0:
            ax.text(0.5, 0.5, "no components", ha="center", va="center",
                    transform=ax.transAxes, color="#888")
        ratios = result.explained_variance[i] if i < len(result.explained_variance) else []
        for k in range(scores.shape[1]):
            label = f"PC{k + 1}"
            if k < len(ratios):
                label += f" ({ratios[k] * 100:.1f}%)"
            ax.plot(x, scores[:, k], linewidth=1.0, label=label)
        ax.set_ylabel(tissue)
        if scores.shape[1]:
            ax.legend(loc="upper right", fontsize=7, ncol=min(scores.shape[1], 5))

    axes[-1, 0].set_xlabel("Image")
    fig.suptitle(title, fontsize=12)
    fig.tight_layout()

    return _save(fig, out_path, "component scores plot")


def plot_scree(
    result: TissueExtraction,
    out_path: Optional[Path] = None,
    title: str = "Variance explained by compartment",
) -> Optional[Path]:
    """Grouped bars of explained variance per component and compartment."""
    fig, ax = plt.subplots(figsize=(7, 4.5))

    n_tissues = len(result.tissues)
    width = 0.8 / max(n_tissues, 1)

    for i, tissue in enumerate(result.tissues):
        ratios = result.explained_variance[i] if i < len(result.explained_variance) else np.zeros(0)
        x = np.arange(1, len(ratios) + 1)
        ax.bar(x + (i - (n_tissues - 1) / 2) * width, ratios * 100, width=width,
               color=_tissue_color(tissue, i), alpha=0.8, label=tissue)

    ax.set_xlabel("Component")
    ax.set_ylabel("Variance Explained (%)")
    ax.set_title(title, fontsize=12)
    ax.legend(loc="upper right", fontsize=9)
    fig.tight_layout()

    return _save(fig, out_path, "scree plot")
