"""
fingerprint.py — persistence-image fingerprint of an interatomic distance matrix.

The fingerprint is a cheap, labelling-invariant summary of a geometry.
Zero-dimensional persistence of the Vietoris–Rips filtration is read off the
minimum spanning tree of the distance matrix (every component is born at 0
and dies at an MST edge length); the resulting (birth, death) pairs are
rendered as a Gaussian persistence image.
"""

from __future__ import annotations

from dataclasses import dataclass

import numpy as np
from scipy.sparse import csr_matrix
from scipy.sparse.csgraph import minimum_spanning_tree
from scipy.spatial.distance import pdist, squareform


@dataclass(frozen=True)
class FingerprintParams:
    xmin: float = 0.0
    xmax: float = 4.0
    ymin: float = 0.0
    ymax: float = 4.0
    bins: int = 10
    std: float = 10.0
    scaling: float = 0.1

    @classmethod
    def from_config(cls, cfg) -> "FingerprintParams":
        return cls(
            xmin=cfg.fp_xmin, xmax=cfg.fp_xmax,
            ymin=cfg.fp_ymin, ymax=cfg.fp_ymax,
            bins=cfg.fp_bins, std=cfg.fp_std, scaling=cfg.fp_scaling,
        )


def lower_distance_vector(coords: np.ndarray) -> np.ndarray:
    """Condensed (lower-triangle) interatomic distance vector."""
    return pdist(np.asarray(coords, dtype=float))


def persistence_pairs(coords: np.ndarray) -> np.ndarray:
    """H0 persistence pairs as an ``(n-1, 2)`` array of (birth, death)."""
    coords = np.asarray(coords, dtype=float)
    if len(coords) < 2:
        return np.zeros((0, 2))
    dist = squareform(lower_distance_vector(coords))
    mst = minimum_spanning_tree(csr_matrix(dist))
    deaths = np.sort(mst.data)
    return np.column_stack([np.zeros_like(deaths), deaths])


def persistence_image(coords: np.ndarray,
                      params: FingerprintParams | None = None) -> np.ndarray:
    """Render the H0 persistence pairs of *coords* into a ``bins x bins`` image."""
    if params is None:
        params = FingerprintParams()
    pairs = persistence_pairs(coords)
    image = np.zeros((params.bins, params.bins))
    if len(pairs) == 0 or not np.all(np.isfinite(pairs)):
        return image

    xs = np.linspace(params.xmin, params.xmax, params.bins)
    ys = np.linspace(params.ymin, params.ymax, params.bins)
    sigma_x = (params.xmax - params.xmin) / params.std
    sigma_y = (params.ymax - params.ymin) / params.std

    births, deaths = pairs[:, 0], pairs[:, 1]
    weights = deaths - births
    gx = np.exp(-((xs[None, :] - births[:, None]) ** 2) / (2 * sigma_x ** 2))
    gy = np.exp(-((ys[None, :] - deaths[:, None]) ** 2) / (2 * sigma_y ** 2))
    # sum_k w_k * gx[k, i] * gy[k, j]
    image = np.einsum("k,ki,kj->ij", weights, gx, gy)
    return image * params.scaling


def fingerprint_difference(fp_a: np.ndarray, fp_b: np.ndarray) -> float:
    return float(np.abs(np.asarray(fp_a) - np.asarray(fp_b)).sum())
